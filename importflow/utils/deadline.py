"""Monotonic deadlines for polling loops and long-running jobs."""

from __future__ import annotations

import time
from typing import Callable, Optional


class Deadline:
    """
    A point in monotonic time after which work should stop.

    ``Deadline(None)`` never expires.
    """

    def __init__(
        self,
        seconds: Optional[float],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def remaining(self) -> Optional[float]:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def __repr__(self) -> str:
        return f"Deadline(seconds={self.seconds}, remaining={self.remaining()})"
