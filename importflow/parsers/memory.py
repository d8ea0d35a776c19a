"""Resident memory probing and the escalation policy used while parsing."""

from __future__ import annotations

import gc
import os
import resource
import sys
from typing import Callable, Optional

from importflow.config.settings import ParserConfig
from importflow.errors import MemoryLimitExceededError
from importflow.utils.logging import get_logger

logger = get_logger("parsers.memory")


def current_rss() -> int:
    """Resident set size of this process in bytes."""
    try:
        with open("/proc/self/statm", encoding="ascii") as f:
            resident_pages = int(f.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        # Peak RSS is the best portable fallback; kilobytes on Linux, bytes on macOS
        peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
        return peak if sys.platform == "darwin" else peak * 1024


def suggest_batch_size(
    limit_bytes: Optional[int],
    row_bytes: int = 2048,
    budget_ratio: float = 0.1,
    floor: int = 50,
    ceiling: int = 5000,
) -> int:
    """
    Derive a batch size from the memory limit.

    One batch may use ``budget_ratio`` of the limit, assuming ``row_bytes``
    per parsed row.
    """
    if not limit_bytes:
        return ceiling
    size = int(limit_bytes * budget_ratio // row_bytes)
    return max(floor, min(ceiling, size))


class MemoryGovernor:
    """
    Escalating memory policy, called periodically by parsers.

    Above the warning ratio it logs; above the critical ratio it forces a
    collection and, if usage is still above the abort ratio, raises.
    """

    def __init__(
        self,
        limit_bytes: Optional[int],
        warning_ratio: float = 0.70,
        critical_ratio: float = 0.85,
        abort_ratio: float = 0.80,
        probe: Callable[[], int] = current_rss,
        collector: Callable[[], object] = gc.collect,
    ) -> None:
        self.limit_bytes = limit_bytes
        self.warning_ratio = warning_ratio
        self.critical_ratio = critical_ratio
        self.abort_ratio = abort_ratio
        self._probe = probe
        self._collector = collector
        self.peak = 0
        self.warnings = 0
        self.collections = 0

    @classmethod
    def from_config(cls, config: ParserConfig, **kwargs) -> "MemoryGovernor":
        return cls(
            limit_bytes=config.memory_limit_bytes,
            warning_ratio=config.memory_warning_ratio,
            critical_ratio=config.memory_critical_ratio,
            abort_ratio=config.memory_abort_ratio,
            **kwargs,
        )

    def __call__(self) -> int:
        """
        Check usage once.

        Returns:
            Usage in bytes after any forced collection

        Raises:
            MemoryLimitExceededError: If usage stays above the abort ratio
        """
        usage = self._probe()
        self.peak = max(self.peak, usage)
        if not self.limit_bytes:
            return usage

        ratio = usage / self.limit_bytes
        if ratio >= self.critical_ratio:
            self.collections += 1
            self._collector()
            after = self._probe()
            logger.error(
                "memory_critical_forced_gc",
                usage_mb=round(usage / 1048576, 1),
                after_mb=round(after / 1048576, 1),
                limit_mb=round(self.limit_bytes / 1048576, 1),
            )
            if after / self.limit_bytes >= self.abort_ratio:
                raise MemoryLimitExceededError(after, self.limit_bytes)
            return after

        if ratio >= self.warning_ratio:
            self.warnings += 1
            logger.warning(
                "memory_high",
                usage_mb=round(usage / 1048576, 1),
                limit_mb=round(self.limit_bytes / 1048576, 1),
                ratio=round(ratio, 3),
            )
        return usage
