"""Cooperative cancellation for long-running pipeline steps.

A CancellationToken is shared between the CLI signal handlers and the
orchestration code. Steps call `raise_if_cancelled()` between network
operations so an external signal aborts the run with a distinct outcome.
"""

from __future__ import annotations

import logging
import signal
import threading
from types import FrameType

logger = logging.getLogger(__name__)


class Cancelled(Exception):
    """Raised when a run is aborted by an external cancellation request."""

    def __init__(self, message: str = "Operation cancelled", code: str = "cancelled") -> None:
        super().__init__(message)
        self.code = code


class CancellationToken:
    """Thread-safe cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            logger.warning("Cancellation requested: %s", reason)
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, step: str | None = None) -> None:
        """Raise Cancelled if cancellation was requested.

        Args:
            step: Optional step name included in the error message.
        """
        if self._event.is_set():
            where = f" during {step}" if step else ""
            raise Cancelled(f"Cancelled{where}: {self.reason}")


def install_signal_handlers(token: CancellationToken) -> None:
    """Route SIGINT and SIGTERM to the given token."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        token.cancel(signal.Signals(signum).name)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


__all__ = ["CancellationToken", "Cancelled", "install_signal_handlers"]
