# menuscan/deadline.py
"""
Overall scan deadline + explicit cancellation signal.

One Deadline is created per scan by the caller and handed down through every
stage. Stages call check() at their boundaries and bound() to clamp the
timeout of any single network call to what is left of the overall budget.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .errors import ScanCancelled


class Deadline:
    def __init__(
        self,
        seconds: Optional[float] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + float(seconds)
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when there is no overall time budget."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        left = self.remaining()
        return left is not None and left <= 0.0

    def check(self, stage: str) -> None:
        if self.cancelled:
            raise ScanCancelled(stage, "cancelled")
        if self.expired():
            raise ScanCancelled(stage, "deadline")

    def bound(self, timeout: float) -> float:
        left = self.remaining()
        if left is None:
            return timeout
        return min(timeout, left)
