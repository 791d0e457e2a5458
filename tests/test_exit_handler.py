"""Tests for interrupt-driven cleanup."""

from __future__ import annotations

import signal
import threading
from unittest.mock import MagicMock

import pytest

from lattice.exit_handler import ExitHandler


def _run_in_background(handler: ExitHandler) -> threading.Thread:
    thread = threading.Thread(target=handler.run, daemon=True)
    thread.start()
    return thread


class TestExitHandler:
    """Tests for ExitHandler."""

    def test_interrupt_runs_callbacks_in_order_then_exits(self):
        """On SIGINT, callbacks MUST run in registration order before exit(130)."""
        calls = []
        exited = threading.Event()

        def system_exit(code):
            calls.append(("exit", code))
            exited.set()

        handler = ExitHandler(system_exit=system_exit)
        handler.on_exit(lambda: calls.append("first"))
        handler.on_exit(lambda: calls.append("second"))
        thread = _run_in_background(handler)

        handler.notify(signal.SIGINT)
        assert exited.wait(timeout=5)
        handler.close()
        thread.join(timeout=5)

        assert calls == ["first", "second", ("exit", 130)]

    def test_other_signals_ignored(self):
        """Signals other than the interrupt MUST NOT trigger shutdown."""
        system_exit = MagicMock()
        handler = ExitHandler(system_exit=system_exit)
        thread = _run_in_background(handler)

        handler.notify(signal.SIGUSR1)
        handler.close()
        thread.join(timeout=5)

        system_exit.assert_not_called()

    def test_failing_callback_does_not_stop_others(self):
        """A raising callback MUST NOT prevent later callbacks or the exit."""
        later = MagicMock()
        system_exit = MagicMock()
        handler = ExitHandler(system_exit=system_exit)
        handler.on_exit(MagicMock(side_effect=RuntimeError("boom")))
        handler.on_exit(later)
        thread = _run_in_background(handler)

        handler.notify(signal.SIGINT)
        handler.close()
        thread.join(timeout=5)

        later.assert_called_once()
        system_exit.assert_called_once_with(130)

    def test_start_seals_and_restores_handler(self):
        """start MUST install a listener once; close MUST restore the previous one."""
        previous = signal.getsignal(signal.SIGINT)
        handler = ExitHandler(system_exit=MagicMock())

        handler.start()
        try:
            assert handler.sealed
            assert signal.getsignal(signal.SIGINT) != previous
            with pytest.raises(RuntimeError):
                handler.start()
        finally:
            handler.close()

        assert signal.getsignal(signal.SIGINT) == previous
