"""User-facing output sink.

Every line the CLI shows the user goes through an Output instance, so tests
can swap the underlying stream for a buffer.
"""

from __future__ import annotations

from typing import TextIO

import click


class Output:
    """Line-oriented writer over a text stream.

    When no stream is given, writes go to whatever ``sys.stdout`` is at call
    time (which is what click's test runner captures).
    """

    def __init__(self, stream: TextIO | None = None):
        self._stream = stream

    def say(self, text: str) -> None:
        """Write text without a trailing newline."""
        click.echo(text, file=self._stream, nl=False)

    def say_line(self, text: str = "") -> None:
        """Write text followed by a newline."""
        click.echo(text, file=self._stream)

    def new_line(self) -> None:
        self.say_line()

    def say_incorrect_usage(self, message: str = "") -> None:
        """Report a usage problem in the standard format."""
        if message:
            self.say_line(f"Incorrect Usage: {message}")
        else:
            self.say_line("Incorrect Usage")

    def say_table(self, rows: list[list[str]], padding: int = 2) -> None:
        """Write rows as left-aligned columns.

        Column widths ignore ANSI styling so colored cells line up with
        plain ones.
        """
        if not rows:
            return
        widths: list[int] = []
        for row in rows:
            for i, cell in enumerate(row):
                width = len(click.unstyle(cell))
                if i >= len(widths):
                    widths.append(width)
                elif width > widths[i]:
                    widths[i] = width

        for row in rows:
            cells = []
            for i, cell in enumerate(row):
                if i == len(row) - 1:
                    cells.append(cell)
                else:
                    cells.append(cell + " " * (widths[i] - len(click.unstyle(cell)) + padding))
            self.say_line("".join(cells).rstrip())
