"""Extraction state: inline run or background job, with polling."""

from __future__ import annotations

import time
from datetime import datetime, timedelta
from typing import Optional

from importflow.errors import EXTRACTION_ERRORS, QueueError, SourceError
from importflow.processor.context import ExtractionProgress, ExtractionStatus
from importflow.processor.extraction import Extractor
from importflow.queue.base import select_queue
from importflow.queue.detector import WorkerStatus, format_guidance
from importflow.states.base import State
from importflow.utils.timeutil import to_iso

EXTRACT_JOB = "extract"

# Seconds between progress writes during an inline extraction
INLINE_PROGRESS_INTERVAL = 1.0


class ExtractState(State):
    """
    Move the source into staging, once.

    Small sources (or a non-shareable staging backend) are parsed inline.
    Larger ones go to a background job when workers are present; without
    workers the import waits, re-checking on every poll. A dispatched job
    is watched through the record's metadata and the queue's failed-job
    log, and re-dispatched when it never started.

    Progress lives in the record metadata and is read through
    ``ExtractionProgress``. ``extraction_job_dispatched`` guards against
    double dispatch across polls.
    """

    name = "extract"
    prompt = "importer.extract.progress"

    def execute(self) -> bool:
        self.services.records.refresh(self.record)
        progress = ExtractionProgress.from_metadata(self.record.metadata)

        if progress.is_complete:
            self.logger.info(
                "extraction_already_complete",
                import_id=self.record.id,
                rows=progress.stats.get("rows"),
            )
            return self.transition_to_next_state()

        status = progress.status
        if status is ExtractionStatus.COMPLETED:
            return self.transition_to_next_state()
        if status is ExtractionStatus.FAILED:
            message = progress.error or "Extraction failed"
            return self.fail(f"Extraction failed: {message}")
        if status is ExtractionStatus.WAITING_FOR_WORKERS:
            return self._recheck_workers(progress)
        if progress.job_dispatched:
            return self._monitor(progress)
        return self._start(progress)

    # Starting

    def _start(self, progress: ExtractionProgress) -> bool:
        settings = self.services.settings
        try:
            source = self.services.resolver.metadata(
                self.record.source_type, self.record.source_detail
            )
        except SourceError as e:
            return self._fail_extraction(f"Source unavailable: {e}", str(e))

        self.persist_metadata(source_info=source.to_dict())

        if settings.extraction.force_sync:
            return self._run_inline(progress, reason="forced")
        if source.size_mb < settings.extraction.sync_threshold_mb:
            return self._run_inline(progress, reason="small_file")
        if not self.services.staging.is_shareable():
            return self._run_inline(progress, reason="staging_not_shareable")

        queue_name = select_queue(source.size, settings.queue)
        status = self._check_workers(queue_name)
        if status.has_workers:
            return self._dispatch(progress, queue_name)
        if settings.extraction.sync_when_no_workers:
            return self._run_inline(progress, reason="no_workers")
        return self._wait_for_workers(progress, status)

    def _check_workers(self, queue_name: str) -> WorkerStatus:
        status = self.services.detector.check(queue_name)
        self.persist_metadata(
            queue_check=status.to_dict(),
            last_worker_check=to_iso(self.services.clock()),
        )
        return status

    def _wait_for_workers(self, progress: ExtractionProgress, status: WorkerStatus) -> bool:
        progress.status = ExtractionStatus.WAITING_FOR_WORKERS
        progress.queue = status.queue
        progress.guidance = format_guidance(
            status, self.services.settings.detection.worker_command
        )
        self.persist_metadata(**progress.to_metadata())
        self.logger.warning(
            "waiting_for_workers",
            import_id=self.record.id,
            queue=status.queue,
            check_method=status.check_method,
        )
        return True

    def _recheck_workers(self, progress: ExtractionProgress) -> bool:
        queue_name = progress.queue or self.services.settings.queue.queue
        status = self._check_workers(queue_name)
        if status.has_workers:
            self.logger.info("workers_detected", import_id=self.record.id, queue=queue_name)
            progress.status = ExtractionStatus.WORKERS_DETECTED
            progress.job_dispatched = False
            progress.guidance = None
            return self._dispatch(progress, queue_name)
        if self.services.settings.extraction.sync_when_no_workers:
            return self._run_inline(progress, reason="no_workers")
        return True

    # Background

    def _dispatch(self, progress: ExtractionProgress, queue_name: str) -> bool:
        now = self.services.clock()
        progress.status = ExtractionStatus.QUEUED
        progress.job_dispatched = True
        progress.dispatched_at = now
        progress.last_update = now
        progress.attempts += 1
        progress.queue = queue_name
        progress.mode = "background"
        progress.error = None
        progress.guidance = None
        self.persist_metadata(**progress.to_metadata())

        records = self.services.records
        payload = {"import_id": self.record.id, "driver": self.machine.driver.name}
        try:
            job_id = self.services.queue.dispatch(
                EXTRACT_JOB,
                payload,
                queue=queue_name,
                delay=self.services.settings.queue.dispatch_delay,
            )
        except QueueError as e:
            records.refresh(self.record)
            return self._fail_extraction(f"Could not dispatch extraction job: {e}", str(e))
        except EXTRACTION_ERRORS as e:
            # A sync queue runs the job during dispatch
            records.refresh(self.record)
            return self._fail_extraction(f"Extraction failed: {e}", str(e))

        self.persist_metadata(extraction_job_id=job_id)
        self.logger.info(
            "extraction_dispatched",
            import_id=self.record.id,
            queue=queue_name,
            job_id=job_id,
            attempt=progress.attempts,
        )

        if ExtractionProgress.from_metadata(self.record.metadata).is_complete:
            return self.transition_to_next_state()
        return True

    def _monitor(self, progress: ExtractionProgress) -> bool:
        cfg = self.services.settings.extraction
        queue = self.services.queue
        now = self.services.clock()

        since = now - timedelta(minutes=cfg.failure_lookback_minutes)
        failure = queue.find_failure(self.record.id, since.timestamp())
        if failure is not None:
            details = dict(failure)
            details["failed_at"] = to_iso(datetime.fromtimestamp(failure["failed_at"], now.tzinfo))
            summary = (failure.get("exception") or "").strip().splitlines()
            message = summary[-1] if summary else "unknown error"
            return self._fail_extraction(
                f"Extraction job failed: {message}",
                message,
                job_failure_details=details,
            )

        # The job may have finished since execute() read the record
        self.services.records.refresh(self.record)
        progress = ExtractionProgress.from_metadata(self.record.metadata)
        if progress.is_complete:
            return self.transition_to_next_state()
        if progress.status is ExtractionStatus.FAILED:
            message = progress.error or "Extraction failed"
            return self.fail(f"Extraction failed: {message}")

        if self._is_running(progress, now):
            self.persist_metadata(last_progress_check=to_iso(now))
            return True

        if progress.attempts < cfg.max_dispatch_attempts:
            dropped = queue.discard_pending_for(self.record.id)
            self.logger.warning(
                "extraction_stalled",
                import_id=self.record.id,
                status=progress.status.value if progress.status else None,
                attempts=progress.attempts,
                dropped_jobs=dropped,
            )
            progress.status = ExtractionStatus.RESTARTING
            return self._dispatch(progress, progress.queue or self.services.settings.queue.queue)

        return self._fail_extraction(
            f"Extraction job did not run after {progress.attempts} attempts",
            "extraction stalled",
        )

    def _is_running(self, progress: ExtractionProgress, now: datetime) -> bool:
        """Whether a dispatched job is plausibly still alive."""
        cfg = self.services.settings.extraction
        dispatched_age = self._age(progress.dispatched_at, now)

        if (
            progress.status in (ExtractionStatus.QUEUED, ExtractionStatus.RESTARTING)
            and dispatched_age is not None
            and dispatched_age > cfg.stall_minutes * 60
        ):
            return False
        if dispatched_age is not None and dispatched_age < cfg.startup_grace_seconds:
            return True

        update_age = self._age(progress.last_update, now)
        if update_age is not None and update_age < cfg.progress_stall_minutes * 60:
            return True

        return self.services.queue.has_job_for(self.record.id)

    @staticmethod
    def _age(value: Optional[datetime], now: datetime) -> Optional[float]:
        if value is None:
            return None
        return (now - value).total_seconds()

    # Inline

    def _run_inline(self, progress: ExtractionProgress, reason: str) -> bool:
        now = self.services.clock()
        progress.status = ExtractionStatus.PROCESSING
        progress.mode = "inline"
        progress.started_at = now
        progress.last_update = now
        progress.error = None
        progress.guidance = None
        self.persist_metadata(**progress.to_metadata())
        self.logger.info("extraction_inline", import_id=self.record.id, reason=reason)

        last_write = 0.0

        def on_progress(current: int, total: Optional[int]) -> None:
            nonlocal last_write
            if time.monotonic() - last_write < INLINE_PROGRESS_INTERVAL:
                return
            last_write = time.monotonic()
            self.persist_metadata(
                extraction_current=current,
                extraction_total=total,
                extraction_last_update=to_iso(self.services.clock()),
            )

        try:
            stats = Extractor(self.services).run(self.record, self.machine.driver, on_progress)
        except EXTRACTION_ERRORS as e:
            return self._fail_extraction(f"Extraction failed: {e}", str(e))

        progress = ExtractionProgress.from_metadata(self.record.metadata)
        progress.current = stats.rows
        progress.mark_completed(stats.to_dict(), self.services.clock())
        self.record.update_metadata(progress.to_metadata())
        return self.transition_to_next_state()

    def _fail_extraction(self, message: str, error: str, **metadata) -> bool:
        return self.fail(
            message,
            extraction_status=ExtractionStatus.FAILED.value,
            extraction_error=error,
            extraction_last_update=to_iso(self.services.clock()),
            **metadata,
        )
