"""Cooperative cancellation between the steps of long operations."""
from __future__ import annotations

import threading


class OperationCancelledError(RuntimeError):
    """Raised when an operation is cancelled between two steps."""

    def __init__(self, operation: str, before_step: str) -> None:
        """Record which step was not started."""
        super().__init__(f"{operation} cancelled before step '{before_step}'.")
        self.operation = operation
        self.before_step = before_step


class CancelToken:
    """Thread-safe flag checked by engines before each step.

    A step that has already started (an in-flight ``pg_dump`` or ``psql``
    replay, an extraction, an ACME order) is never interrupted; cancellation
    only prevents the *next* step from starting.
    """

    def __init__(self) -> None:
        """Create an un-cancelled token."""
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation."""
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return True once :meth:`cancel` has been called."""
        return self._event.is_set()

    def check(self, operation: str, step: str) -> None:
        """Raise :class:`OperationCancelledError` if cancellation was requested."""
        if self._event.is_set():
            raise OperationCancelledError(operation, step)


def check_cancelled(token: CancelToken | None, operation: str, step: str) -> None:
    """Check *token* when one was supplied."""
    if token is not None:
        token.check(operation, step)


__all__ = ["CancelToken", "OperationCancelledError", "check_cancelled"]
