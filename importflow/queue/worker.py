"""Worker loop consuming the database queue."""

from __future__ import annotations

import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

from importflow.queue.database import DatabaseQueue, ReservedJob
from importflow.queue.jobs import get_job
from importflow.utils.logging import clear_import_context, get_logger

if TYPE_CHECKING:
    from importflow.processor.services import ImportServices

logger = get_logger("queue.worker")

SUCCEEDED = "succeeded"
RELEASED = "released"
FAILED = "failed"


@dataclass
class WorkerRunStats:
    """What one worker run did."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    released: int = 0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "released": self.released,
            "duration_seconds": round(time.time() - self.started_at, 3),
        }


class QueueWorker:
    """
    Reserves jobs oldest first and runs them.

    A failing job is released for another attempt while it has tries left;
    after that its handler's ``failed`` hook runs and the job moves to the
    failed-job log.
    """

    def __init__(
        self,
        backend: DatabaseQueue,
        services: "ImportServices",
        queues: list[str],
        sleep_seconds: float = 3.0,
        sleep: Callable[[float], Any] = time.sleep,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.backend = backend
        self.services = services
        self.queues = list(queues)
        self.sleep_seconds = sleep_seconds
        self.sleep = sleep
        self.stop_event = stop_event or threading.Event()

    def run_next(self) -> Optional[str]:
        """
        Process one job if any is available.

        Returns:
            None when the queues are empty, else the job outcome
        """
        job = self.backend.reserve(self.queues)
        if job is None:
            return None
        return self.process(job)

    def process(self, job: ReservedJob) -> str:
        """Run one reserved job; returns succeeded, released or failed."""
        logger.info(
            "job_started",
            job=job.job,
            job_id=job.id,
            queue=job.queue,
            attempt=job.attempts,
        )
        handler = None
        try:
            handler = get_job(job.job, self.services)
            handler.handle(job.payload)
        except Exception as e:
            tries = handler.tries if handler is not None else 1
            logger.error(
                "job_error",
                job=job.job,
                job_id=job.id,
                attempt=job.attempts,
                tries=tries,
                error=str(e),
            )
            if job.attempts < tries:
                self.backend.release(job.id)
                return RELEASED
            if handler is not None:
                handler.failed(job.payload, e)
            self.backend.fail(job, "".join(traceback.format_exception(type(e), e, e.__traceback__)))
            return FAILED
        finally:
            clear_import_context()

        self.backend.delete(job.id)
        logger.info("job_completed", job=job.job, job_id=job.id, queue=job.queue)
        return SUCCEEDED

    def work(
        self,
        once: bool = False,
        stop_when_empty: bool = False,
        max_jobs: Optional[int] = None,
    ) -> WorkerRunStats:
        """
        Run the worker loop.

        Args:
            once: Process at most one job, then return
            stop_when_empty: Return as soon as no job is available
            max_jobs: Return after this many jobs
        """
        stats = WorkerRunStats()
        logger.info("worker_started", queues=self.queues, once=once, max_jobs=max_jobs)

        while not self.stop_event.is_set():
            outcome = self.run_next()
            if outcome is None:
                if once or stop_when_empty:
                    break
                self.sleep(self.sleep_seconds)
                continue

            stats.processed += 1
            if outcome == SUCCEEDED:
                stats.succeeded += 1
            elif outcome == RELEASED:
                stats.released += 1
            else:
                stats.failed += 1

            if once or (max_jobs is not None and stats.processed >= max_jobs):
                break

        logger.info("worker_stopped", **stats.to_dict())
        return stats
