"""Interrupt handling for the CLI.

Cleanup callbacks and OS signals arrive on one queue and are consumed by a
single background loop, so the callback list is only ever touched by that
loop. On SIGINT every callback runs in registration order and the process
then exits with code 130.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import sys
import threading
from typing import Any, Callable

from lattice.errors import ExitCode

logger = logging.getLogger(__name__)

_REGISTER = "register"
_SIGNAL = "signal"
_CLOSE = "close"


def _terminate(code: int) -> None:
    """Flush the standard streams and end the process immediately."""
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            logger.debug("Could not flush stream before exit")
    os._exit(code)


class ExitHandler:
    """Registry of cleanup callbacks driven by interrupt signals.

    Callbacks may be registered before or after ``start()``; registrations
    are queued and applied by the handler loop in arrival order.

    Example:
        handler = ExitHandler()
        handler.start()
        handler.on_exit(lambda: stop_event.set())
    """

    def __init__(
        self,
        system_exit: Callable[[int], Any] | None = None,
        exit_code: int = ExitCode.SIGNAL,
        interrupt_signal: int = signal.SIGINT,
    ):
        """Initialize the handler.

        Args:
            system_exit: Called with the exit code once callbacks have run.
                Defaults to flushing output and terminating the process.
            exit_code: Code passed to ``system_exit`` on interrupt.
            interrupt_signal: The only signal that triggers shutdown.
        """
        self._events: queue.Queue[tuple[str, Any]] = queue.Queue()
        self._callbacks: list[Callable[[], Any]] = []
        self._system_exit = system_exit or _terminate
        self._exit_code = int(exit_code)
        self._interrupt_signal = interrupt_signal
        self._thread: threading.Thread | None = None
        self._sealed = False
        self._previous_handler: Any = None

    @property
    def sealed(self) -> bool:
        """True once ``start()`` has installed the signal listener."""
        return self._sealed

    def on_exit(self, func: Callable[[], Any]) -> None:
        """Register a cleanup callback."""
        self._events.put((_REGISTER, func))

    def notify(self, signum: int) -> None:
        """Deliver a signal number to the handler loop."""
        self._events.put((_SIGNAL, signum))

    def close(self) -> None:
        """Stop the handler loop after pending events are processed.

        The signal disposition in place before ``start()`` is restored.
        """
        if self._previous_handler is not None:
            signal.signal(self._interrupt_signal, self._previous_handler)
            self._previous_handler = None
        self._events.put((_CLOSE, None))

    def run(self) -> None:
        """Process registrations and signals until ``close()`` is called."""
        while True:
            kind, payload = self._events.get()
            if kind == _CLOSE:
                return
            if kind == _REGISTER:
                self._callbacks.append(payload)
            elif kind == _SIGNAL:
                if payload == self._interrupt_signal:
                    self._exit()
                else:
                    logger.debug(f"Ignoring signal {payload}")

    def start(self) -> None:
        """Install the signal listener and run the loop in the background.

        Raises:
            RuntimeError: If the handler was already started.
        """
        if self._sealed:
            raise RuntimeError("Exit handler is already running")
        self._sealed = True
        self._previous_handler = signal.signal(self._interrupt_signal, self._handle_signal)
        self._thread = threading.Thread(target=self.run, name="exit-handler", daemon=True)
        self._thread.start()

    def _handle_signal(self, signum: int, frame: Any) -> None:
        self.notify(signum)

    def _exit(self) -> None:
        for callback in self._callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Exit callback failed")
        self._system_exit(self._exit_code)
