"""Cooperative cancellation for the batch operations.

Segmentation and alignment both invoke long-running external processes, so
callers may pass a token with an optional deadline. The operations poll the
token between items and hand the remaining time to every subprocess call.
"""

import threading
import time
from typing import Optional

from models import OperationCancelled


class CancellationToken:
    """Explicit cancel flag plus an optional deadline (seconds from creation)."""

    def __init__(self, timeout: Optional[float] = None, clock=time.monotonic):
        self._clock = clock
        self._deadline = clock() + timeout if timeout is not None else None
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancel requested") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.reason = self.reason or "deadline exceeded"
            return True
        return False

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def check(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason or "cancelled")

    def subprocess_timeout(self, default: Optional[float]) -> Optional[float]:
        """Timeout for the next subprocess: the smaller of `default` and the time left."""
        left = self.remaining()
        if left is None:
            return default
        if default is None:
            return left
        return min(default, left)


def check(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.check()


def subprocess_timeout(token: Optional[CancellationToken], default: Optional[float]) -> Optional[float]:
    if token is None:
        return default
    return token.subprocess_timeout(default)
