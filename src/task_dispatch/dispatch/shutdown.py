"""Cooperative stop flag shared by the long-running loops."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager

logger = logging.getLogger(__name__)


class StopController:
    """Stop flag set by SIGINT/SIGTERM or by another thread.

    Loops check the flag between units of work, so an in-flight task always
    runs to completion.
    """

    def __init__(self) -> None:
        self._stop_requested = False
        self.signal_name: str | None = None

    @property
    def requested(self) -> bool:
        return self._stop_requested

    def request(self, *, signal_name: str = "manual") -> None:
        if self._stop_requested:
            return
        self._stop_requested = True
        self.signal_name = signal_name
        logger.info("shutdown requested signal=%s", signal_name)

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return False if stop was requested."""

        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))
        return not self._stop_requested

    @contextmanager
    def signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
