from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import CancelledError


class OperationContext:
    """Cooperative cancellation token with an optional deadline.

    Long-running operations call :meth:`check` at loop boundaries (once per
    file or per copied chunk). Nothing is interrupted preemptively, so the
    caller's cleanup always runs.
    """

    def __init__(self, timeout: Optional[float] = None, *, deadline: Optional[float] = None, parent: Optional["OperationContext"] = None):
        self._event = threading.Event()
        self._reason = ""
        self.parent = parent
        if timeout is not None:
            candidate = time.monotonic() + timeout
            deadline = candidate if deadline is None else min(deadline, candidate)
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

    def cancel(self, reason: str = "operation cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.cancel("deadline exceeded")
            return True
        if self.parent is not None and self.parent.cancelled:
            self.cancel(self.parent.reason)
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, operation: str = "", path: Optional[str] = None) -> None:
        """Raise :class:`CancelledError` if cancelled or past the deadline."""
        if self.cancelled:
            raise CancelledError(self._reason or "operation cancelled", operation=operation, path=path)

    def child(self, timeout: Optional[float] = None) -> "OperationContext":
        return OperationContext(timeout, parent=self)


def background() -> OperationContext:
    """A context that is never cancelled unless someone cancels it."""
    return OperationContext()


def ensure_context(ctx: Optional[OperationContext]) -> OperationContext:
    return ctx if ctx is not None else background()
