"""Cooperative cancellation tokens."""

import threading
import time
from typing import List, Optional

from ..errors import ExecutionCancelledError


class CancellationToken:
    """Cancellation signal passed into every long-running call.

    Executors check it at yield points (between nodes, inside loops, while
    sleeping for backoff). Child tokens are cancelled with their parent, which
    lets a timed-out action be cancelled without cancelling the whole run.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self._children: List["CancellationToken"] = []
        self._lock = threading.Lock()
        if parent is not None:
            parent._add_child(self)

    def _add_child(self, child: "CancellationToken") -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
            reason = self._reason
        if cancelled:
            child.cancel(reason)

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason or "cancelled"
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(max(0.0, timeout))

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExecutionCancelledError(self._reason or "cancelled")


class Deadline:
    """Absolute wall-clock deadline (monotonic)."""

    def __init__(self, seconds: Optional[float]):
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    @property
    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def cap(self, seconds: float) -> float:
        """The smaller of ``seconds`` and the time left before this deadline."""
        remaining = self.remaining
        return seconds if remaining is None else min(seconds, remaining)
