"""Terminal styling for user-facing output.

Styles wrap a string at format time only; values passed around the
program are always plain text.
"""

from __future__ import annotations

import click

# Color names callers may carry around, mapped to click.style arguments.
STYLES: dict[str, dict[str, object]] = {
    "red": {"fg": "bright_red"},
    "cyan": {"fg": "cyan"},
    "green": {"fg": "green"},
    "yellow": {"fg": "yellow"},
    "gray": {"fg": "bright_black"},
    "bold": {"bold": True},
}


def style(color_name: str | None, text: str) -> str:
    """Apply a style by name; unknown or missing names leave text plain.

    Blank strings are returned untouched so that empty table cells stay
    empty.
    """
    if color_name is None or color_name not in STYLES or not text.strip():
        return text
    return click.style(text, **STYLES[color_name])


def red(text: str) -> str:
    return style("red", text)


def cyan(text: str) -> str:
    return style("cyan", text)


def green(text: str) -> str:
    return style("green", text)


def yellow(text: str) -> str:
    return style("yellow", text)


def gray(text: str) -> str:
    return style("gray", text)


def bold(text: str) -> str:
    return style("bold", text)
