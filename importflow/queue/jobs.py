"""Job handlers executed by workers or by the sync queue."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Optional

from importflow.drivers import get_driver
from importflow.errors import JobTimeoutError, QueueError, RecordNotFoundError
from importflow.processor.context import ExtractionProgress, ExtractionStatus
from importflow.processor.extraction import Extractor
from importflow.utils.deadline import Deadline
from importflow.utils.logging import get_logger, set_import_context
from importflow.utils.timeutil import to_iso

if TYPE_CHECKING:
    from importflow.processor.services import ImportServices

logger = get_logger("queue.jobs")

# Seconds between progress writes to the record from a background job
PROGRESS_WRITE_INTERVAL = 1.0


class JobHandler(ABC):
    """A named unit of background work."""

    name: str = ""

    def __init__(self, services: "ImportServices") -> None:
        self.services = services

    @property
    def tries(self) -> int:
        return 1

    @property
    def timeout(self) -> Optional[float]:
        return None

    @abstractmethod
    def handle(self, payload: dict[str, Any]) -> None:
        ...

    def failed(self, payload: dict[str, Any], error: BaseException) -> None:
        """Called once the job has exhausted its tries."""
        pass


class ExtractionJob(JobHandler):
    """
    Extract one import in the background.

    Progress is merged into the record's metadata so the driving loop can
    watch it. The wall-clock timeout is enforced at batch granularity.
    """

    name = "extract"

    @property
    def tries(self) -> int:
        return self.services.settings.queue.job_tries

    @property
    def timeout(self) -> Optional[float]:
        return self.services.settings.queue.job_timeout

    def handle(self, payload: dict[str, Any]) -> None:
        import_id = payload["import_id"]
        records = self.services.records
        record = records.get(import_id)
        set_import_context(import_id, record.state or "")

        now = to_iso(self.services.clock())
        records.merge_metadata(
            import_id,
            extraction_status=ExtractionStatus.PROCESSING.value,
            extraction_started_at=now,
            extraction_last_update=now,
            extraction_mode="background",
        )
        logger.info("extraction_job_started", import_id=import_id, driver=record.driver)

        deadline = Deadline(self.timeout)
        last_write = 0.0

        def on_progress(current: int, total: Optional[int]) -> None:
            nonlocal last_write
            if deadline.expired():
                raise JobTimeoutError(self.timeout)
            if time.monotonic() - last_write < PROGRESS_WRITE_INTERVAL:
                return
            last_write = time.monotonic()
            records.merge_metadata(
                import_id,
                extraction_current=current,
                extraction_total=total,
                extraction_last_update=to_iso(self.services.clock()),
            )

        stats = Extractor(self.services).run(record, get_driver(record.driver), on_progress)

        progress = ExtractionProgress.from_metadata(records.get(import_id).metadata)
        progress.current = stats.rows
        progress.mark_completed(stats.to_dict(), self.services.clock())
        records.merge_metadata(import_id, **progress.to_metadata())
        logger.info("extraction_job_completed", import_id=import_id, rows=stats.rows)

    def failed(self, payload: dict[str, Any], error: BaseException) -> None:
        import_id = payload.get("import_id")
        if not import_id:
            return
        now = to_iso(self.services.clock())
        try:
            self.services.records.merge_metadata(
                import_id,
                extraction_status=ExtractionStatus.FAILED.value,
                extraction_error=str(error),
                extraction_last_update=now,
                job_failure_details={
                    "exception": type(error).__name__,
                    "message": str(error),
                    "failed_at": now,
                },
            )
        except RecordNotFoundError:
            logger.warning("extraction_job_orphaned", import_id=import_id, error=str(error))
            return
        logger.error("extraction_job_failed", import_id=import_id, error=str(error))


class ProbeJob(JobHandler):
    """Answers a worker presence probe."""

    name = "probe"

    def handle(self, payload: dict[str, Any]) -> None:
        backend = self.services.database_queue
        if backend is None:
            raise QueueError("Probe jobs need the database queue")
        backend.complete_probe(payload["probe_id"])


JOB_REGISTRY: dict[str, type[JobHandler]] = {
    ExtractionJob.name: ExtractionJob,
    ProbeJob.name: ProbeJob,
}


def get_job(name: str, services: "ImportServices") -> JobHandler:
    """
    Factory function to get a job handler by name.

    Raises:
        QueueError: If the job name is not registered
    """
    if name not in JOB_REGISTRY:
        available = ", ".join(JOB_REGISTRY.keys())
        raise QueueError(f"Unknown job: {name}. Available: {available}")
    return JOB_REGISTRY[name](services)


def run_job(name: str, payload: dict[str, Any], services: "ImportServices") -> None:
    """Run a job once in this process; a failure is final."""
    handler = get_job(name, services)
    try:
        handler.handle(payload)
    except Exception as e:
        handler.failed(payload, e)
        raise
