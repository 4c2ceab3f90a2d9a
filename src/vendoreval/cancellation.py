"""Cooperative cancellation for long read-only computations."""

from __future__ import annotations

import threading

from vendoreval.errors import OperationCancelledError


class CancellationToken:
    """Set from any thread; long computations poll it between units of work."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancel() has been called."""
        if self._event.is_set():
            raise OperationCancelledError(
                self._reason or "Operation cancelled", {"reason": self._reason}
            )


def check_cancelled(token: CancellationToken | None) -> None:
    """Raise if token is set; a None token never cancels."""
    if token is not None:
        token.raise_if_cancelled()
