"""Run a driver's parser against an import's staging store."""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Optional

from importflow.parsers.base import ParseStats, ProgressCallback
from importflow.parsers.memory import MemoryGovernor, suggest_batch_size
from importflow.records.models import ImportRecord
from importflow.utils.logging import get_logger, log_extraction_summary

if TYPE_CHECKING:
    from importflow.drivers.base import Driver
    from importflow.processor.services import ImportServices

logger = get_logger("processor.extraction")


class Extractor:
    """
    One full extraction pass, shared by inline runs and background jobs.

    Staged tables left by an interrupted earlier pass are dropped first, so
    a restart redoes the extraction from the beginning.
    """

    def __init__(self, services: "ImportServices") -> None:
        self.services = services

    def batch_size(self) -> int:
        parser_config = self.services.settings.parser
        if parser_config.adaptive_batch_size:
            return suggest_batch_size(parser_config.memory_limit_bytes)
        return parser_config.batch_size

    def run(
        self,
        record: ImportRecord,
        driver: "Driver",
        on_progress: Optional[ProgressCallback] = None,
        governor: Optional[MemoryGovernor] = None,
    ) -> ParseStats:
        """
        Parse the record's source into its staging store.

        Raises:
            Any of ``EXTRACTION_ERRORS`` on source, parse, memory or staging failure
        """
        settings = self.services.settings
        staging = self.services.staging.open(record)
        governor = governor or MemoryGovernor.from_config(settings.parser)

        stale = [table for table in staging.get_tables() if staging.count(table) > 0]
        for table in staging.get_tables():
            staging.destroy(table)
        if stale:
            logger.info("staging_reset", import_id=record.id, tables=stale)

        parser = driver.create_parser(
            record,
            settings.parser,
            batch_size=self.batch_size(),
            progress_callback=on_progress,
            memory_callback=governor,
        )

        started = time.monotonic()
        try:
            stats = parser.parse(record, staging, self.services.resolver)
        finally:
            staging.close()

        stats.memory_peak = max(stats.memory_peak or 0, governor.peak) or None
        log_extraction_summary(
            import_id=record.id,
            driver=driver.name,
            rows=stats.rows,
            failed=stats.failed,
            duration_seconds=time.monotonic() - started,
        )
        return stats
