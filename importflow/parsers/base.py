"""Streaming parser base: batching, progress and memory checks."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from importflow.records.models import ImportRecord
from importflow.sources.resolver import SourceResolver
from importflow.staging.base import StagingStore
from importflow.utils.logging import get_logger

ProgressCallback = Callable[[int, Optional[int]], None]
MemoryCallback = Callable[[], Any]

# Errors and warnings kept on the stats object; the rest are only counted
MAX_RECORDED_MESSAGES = 100


@dataclass
class ParseStats:
    """Aggregate outcome of one parse."""

    counts: dict[str, int] = field(default_factory=dict)
    rows: int = 0
    failed: int = 0
    skipped: int = 0
    bytes_processed: int = 0
    elapsed_seconds: float = 0.0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    error_count: int = 0
    warning_count: int = 0
    batches_flushed: int = 0
    max_buffered_rows: int = 0
    memory_peak: Optional[int] = None

    def add_error(self, message: str) -> None:
        self.error_count += 1
        if len(self.errors) < MAX_RECORDED_MESSAGES:
            self.errors.append(message)

    def add_warning(self, message: str) -> None:
        self.warning_count += 1
        if len(self.warnings) < MAX_RECORDED_MESSAGES:
            self.warnings.append(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "counts": dict(self.counts),
            "rows": self.rows,
            "failed": self.failed,
            "skipped": self.skipped,
            "bytes_processed": self.bytes_processed,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "batches_flushed": self.batches_flushed,
            "max_buffered_rows": self.max_buffered_rows,
            "memory_peak": self.memory_peak,
        }


class StreamingParser(ABC):
    """
    Reads a source forward-only and stages rows in bounded batches.

    Subclasses call ``_emit`` for every parsed row. Each table's buffer is
    flushed through ``insert_batch`` as soon as it holds ``batch_size`` rows
    and is then dropped, so no table ever buffers more than one batch.
    """

    format_name: str = ""

    def __init__(
        self,
        batch_size: int = 100,
        progress_callback: Optional[ProgressCallback] = None,
        memory_callback: Optional[MemoryCallback] = None,
        memory_check_interval: int = 100,
        estimate_total: bool = True,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self.batch_size = batch_size
        self.progress_callback = progress_callback
        self.memory_callback = memory_callback
        self.memory_check_interval = max(1, memory_check_interval)
        self.estimate_total = estimate_total
        self.logger = get_logger(f"parsers.{self.format_name or 'base'}")

        self.stats = ParseStats()
        self._staging: Optional[StagingStore] = None
        self._buffers: dict[str, list[dict[str, Any]]] = {}
        self._processed = 0
        self._total: Optional[int] = None
        self._started = 0.0

    @abstractmethod
    def parse(
        self,
        record: ImportRecord,
        staging: StagingStore,
        resolver: SourceResolver,
    ) -> ParseStats:
        """
        Parse the record's source into staging.

        Returns:
            Aggregate stats for the parse
        """
        ...

    def _begin(self, staging: StagingStore, total: Optional[int]) -> None:
        self.stats = ParseStats()
        self._staging = staging
        self._buffers = {}
        self._processed = 0
        self._total = total
        self._started = time.monotonic()

    def _emit(self, table: str, row: dict[str, Any]) -> None:
        """Buffer a row for ``table``, flushing when the batch is full."""
        buffer = self._buffers.setdefault(table, [])
        buffer.append(row)
        if len(buffer) > self.stats.max_buffered_rows:
            self.stats.max_buffered_rows = len(buffer)
        if len(buffer) >= self.batch_size:
            self._flush(table)

    def _flush(self, table: str) -> None:
        buffer = self._buffers.get(table)
        if not buffer:
            return
        inserted = self._staging.insert_batch(buffer, table)
        self._buffers[table] = []
        self.stats.batches_flushed += 1
        self.stats.counts[table] = self.stats.counts.get(table, 0) + inserted
        self.logger.debug("batch_flushed", table=table, rows=inserted)
        self._report_progress()

    def _flush_all(self) -> None:
        for table in list(self._buffers):
            self._flush(table)

    def _advance(self, units: int = 1) -> None:
        """Count processed source units and run the periodic memory check."""
        self._processed += units
        if self.memory_callback is not None and self._processed % self.memory_check_interval == 0:
            usage = self.memory_callback()
            if isinstance(usage, int):
                if self.stats.memory_peak is None or usage > self.stats.memory_peak:
                    self.stats.memory_peak = usage

    def _report_progress(self) -> None:
        if self.progress_callback is not None:
            self.progress_callback(self._processed, self._total)

    def _finish(self) -> ParseStats:
        self._flush_all()
        self._report_progress()
        self.stats.elapsed_seconds = time.monotonic() - self._started
        self.logger.info(
            "parse_completed",
            format=self.format_name,
            rows=self.stats.rows,
            failed=self.stats.failed,
            counts=self.stats.counts,
            elapsed_seconds=round(self.stats.elapsed_seconds, 3),
        )
        return self.stats
