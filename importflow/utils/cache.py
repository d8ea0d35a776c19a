"""In-process TTL cache with an injectable clock."""

from __future__ import annotations

import time
from typing import Any, Callable, Hashable, Optional

from importflow.utils.logging import get_logger

logger = get_logger("cache")


class TTLCache:
    """
    Small expiring key-value cache.

    Each instance owns its entries, so two detectors (or two tests) never
    observe each other's cached results.
    """

    def __init__(
        self,
        ttl: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the cache.

        Args:
            ttl: Seconds an entry stays valid
            clock: Monotonic time source
        """
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, Any]] = {}

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None

        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            logger.debug("cache_expired", key=str(key))
            return None
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (self._clock(), value)

    def invalidate(self, key: Hashable) -> bool:
        """Drop one entry. Returns True if it was present."""
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
