"""Queue backend contract, the inline sync queue and queue routing."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from importflow.config.settings import QueueConfig
from importflow.errors import QueueError
from importflow.utils.logging import get_logger

logger = get_logger("queue")

JobRunner = Callable[[str, dict[str, Any]], None]

BYTES_PER_MB = 1024 * 1024


class Queue(ABC):
    """
    Somewhere extraction jobs can be dispatched to.

    Backends that keep a durable job table also answer the introspection
    questions the detector and the extract state ask; the rest report that
    nothing is known.
    """

    driver: str = ""
    supports_introspection: bool = False

    @abstractmethod
    def dispatch(
        self,
        job: str,
        payload: dict[str, Any],
        queue: str = "default",
        delay: float = 0,
    ) -> str:
        """
        Hand a job to the backend.

        Returns:
            Backend job identifier
        """
        ...

    def find_failure(self, subject: str, since: float) -> Optional[dict[str, Any]]:
        """Most recent failed-job entry for a subject since an epoch time."""
        return None

    def has_job_for(self, subject: str) -> bool:
        """Whether a pending or reserved job exists for a subject."""
        return False

    def discard_pending_for(self, subject: str) -> int:
        """Drop unreserved jobs for a subject; returns how many were dropped."""
        return 0


class SyncQueue(Queue):
    """Runs every dispatched job immediately in the calling process."""

    driver = "sync"

    def __init__(self, runner: Optional[JobRunner] = None) -> None:
        self.runner = runner

    def dispatch(
        self,
        job: str,
        payload: dict[str, Any],
        queue: str = "default",
        delay: float = 0,
    ) -> str:
        if self.runner is None:
            raise QueueError("Sync queue has no job runner bound")
        job_id = f"sync-{uuid.uuid4().hex[:8]}"
        logger.info("job_running_inline", job=job, job_id=job_id, queue=queue)
        self.runner(job, payload)
        return job_id


class UnsupportedQueue(Queue):
    """
    Placeholder for drivers that can be probed but not dispatched to.

    Worker detection still works for these names; dispatch fails loudly.
    """

    def __init__(self, driver: str) -> None:
        self.driver = driver

    def dispatch(
        self,
        job: str,
        payload: dict[str, Any],
        queue: str = "default",
        delay: float = 0,
    ) -> str:
        raise QueueError(
            f"Queue driver '{self.driver}' cannot dispatch jobs; use 'sync' or 'database'"
        )


def select_queue(file_size: int, config: QueueConfig) -> str:
    """Route large files to the dedicated heavy and medium queues."""
    size_mb = file_size / BYTES_PER_MB
    if size_mb > config.heavy_threshold_mb:
        return config.heavy_queue
    if size_mb > config.medium_threshold_mb:
        return config.medium_queue
    return config.queue
