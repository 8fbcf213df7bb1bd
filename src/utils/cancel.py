from __future__ import annotations

import threading


class CancelledError(RuntimeError):
    """Raised when a cancellation request should abort a long-running backend call."""


class CancellationToken:
    """Cooperative cancellation shared between a caller and an in-flight operation."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def request_cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError(self.reason or "cancelled")
