"""Decide whether background workers are consuming a queue right now."""

from __future__ import annotations

import sqlite3
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from importflow.config.settings import DetectionConfig, QueueConfig
from importflow.errors import QueueError
from importflow.queue.database import DatabaseQueue
from importflow.utils.cache import TTLCache
from importflow.utils.logging import get_logger
from importflow.utils.timeutil import to_iso, utcnow

logger = get_logger("queue.detector")

# Remote services with no introspection API; delivery is guaranteed by the service
ASSUMED_DRIVERS = ("sqs",)

WorkerCount = Union[int, str]


class CheckMethod(str, Enum):
    """How a WorkerStatus was obtained."""

    SYNC_DRIVER = "sync_driver"
    DATABASE_COMPREHENSIVE = "database_comprehensive"
    UNKNOWN_DRIVER_ASSUMED = "unknown_driver_assumed"
    ERROR = "error"

    @staticmethod
    def assumed(driver: str) -> str:
        return f"{driver}_assumed"

    @staticmethod
    def failed(driver: str) -> str:
        return f"{driver}_error"


@dataclass
class WorkerStatus:
    """Outcome of one worker presence check."""

    has_workers: bool
    worker_count: WorkerCount
    queue: str
    check_method: str
    checked_at: str
    details: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "has_workers": self.has_workers,
            "worker_count": self.worker_count,
            "queue": self.queue,
            "check_method": self.check_method,
            "checked_at": self.checked_at,
            **self.details,
        }
        if self.error is not None:
            data["error"] = self.error
        return data


def list_processes() -> list[str]:
    """Command lines of running processes, via ``ps``."""
    result = subprocess.run(
        ["ps", "-eo", "args"],
        capture_output=True,
        text=True,
        timeout=5,
        check=True,
    )
    return result.stdout.splitlines()[1:]


def format_guidance(status: WorkerStatus, command: str = "importflow worker") -> str:
    """Actionable message for an import waiting on absent workers."""
    return (
        f"No queue workers detected for queue '{status.queue}'. "
        f"The extraction job will not start until a worker consumes this queue. "
        f"Start a worker with: {command} --queue={status.queue}"
    )


class WorkerPresenceDetector:
    """
    Layered worker presence heuristics.

    Checks run in order and the first applicable one answers: the inline
    sync driver, the durable database queue, assumed remote services, and
    finally unknown drivers. A failure while probing is reported as "no
    workers" with the error attached. Results are cached per queue.
    """

    def __init__(
        self,
        queue_config: QueueConfig,
        config: Optional[DetectionConfig] = None,
        backend: Optional[DatabaseQueue] = None,
        cache: Optional[TTLCache] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        process_lister: Callable[[], list[str]] = list_processes,
    ) -> None:
        """
        Initialize the detector.

        Args:
            queue_config: Queue driver and default queue name
            config: Detection windows, probe and process-check settings
            backend: Database queue to inspect when the driver is 'database'
            cache: Result cache, one per detector
            clock: Epoch time source shared with the backend
            sleep: Used while waiting for probe replies
            process_lister: Returns running process command lines
        """
        self.queue_config = queue_config
        self.config = config or DetectionConfig()
        self.backend = backend
        self.cache = cache if cache is not None else TTLCache(self.config.cache_ttl)
        self.clock = clock
        self.sleep = sleep
        self.process_lister = process_lister
        self._last_probe: dict[str, float] = {}

    @property
    def driver(self) -> str:
        return self.queue_config.driver

    def check(self, queue: Optional[str] = None) -> WorkerStatus:
        """
        Are workers consuming ``queue`` right now?

        Args:
            queue: Queue name (defaults to the configured queue)

        Returns:
            WorkerStatus, possibly served from the cache
        """
        queue = queue or self.queue_config.queue
        cached = self.cache.get(queue)
        if cached is not None:
            return cached

        status = self._detect(queue)
        self.cache.set(queue, status)
        logger.info(
            "worker_check",
            queue=queue,
            has_workers=status.has_workers,
            worker_count=status.worker_count,
            check_method=status.check_method,
            error=status.error,
        )
        return status

    def clear_cache(self, queue: Optional[str] = None) -> None:
        if queue is None:
            self.cache.clear()
        else:
            self.cache.invalidate(queue)

    def queue_status_report(self, queues: list[str]) -> dict[str, Any]:
        """Worker status for several queues plus a summary."""
        statuses = {queue: self.check(queue) for queue in queues}
        missing = [queue for queue, status in statuses.items() if not status.has_workers]
        return {
            "driver": self.driver,
            "queues": {queue: status.to_dict() for queue, status in statuses.items()},
            "all_have_workers": not missing,
            "queues_without_workers": missing,
            "checked_at": to_iso(utcnow()),
        }

    def _detect(self, queue: str) -> WorkerStatus:
        driver = self.driver
        if driver == "sync":
            return self._status(
                queue, True, "sync", CheckMethod.SYNC_DRIVER.value,
                details={"message": "Sync driver runs jobs inline"},
            )

        if driver == "database":
            try:
                return self._check_database(queue)
            except (sqlite3.Error, QueueError, OSError) as e:
                logger.error("worker_check_failed", queue=queue, driver=driver, error=str(e))
                return self._status(
                    queue, False, 0, CheckMethod.failed(driver), error=str(e),
                )

        if driver in ASSUMED_DRIVERS:
            return self._status(
                queue, True, "unknown", CheckMethod.assumed(driver),
                details={"message": f"{driver} has no worker introspection; workers assumed"},
            )

        return self._status(
            queue, True, "unknown", CheckMethod.UNKNOWN_DRIVER_ASSUMED.value,
            details={"driver": driver, "message": "Unknown queue driver; workers assumed"},
        )

    def _check_database(self, queue: str) -> WorkerStatus:
        if self.backend is None:
            raise QueueError("Database queue backend is not configured")

        now = self.clock()
        cfg = self.config
        processing = self.backend.count_processing(queue, now - cfg.reservation_window_minutes * 60)
        pending = self.backend.count_pending(queue)
        recent_failures = self.backend.count_failures_since(queue, now - cfg.failure_window_minutes * 60)
        recent_activity = self.backend.count_created_since(queue, now - cfg.activity_window_minutes * 60)

        probe_responsive = self._probe(queue) if cfg.probe_enabled else None
        process_count = self._count_processes(queue) if cfg.process_check else None

        # A large backlog of unreserved jobs means nobody is consuming, even if recent
        has_workers = (
            processing > 0
            or bool(probe_responsive)
            or bool(process_count)
            or recent_failures > 0
            or (recent_activity > 0 and pending < cfg.backlog_threshold)
        )

        if processing > 0:
            worker_count: WorkerCount = processing
        elif process_count:
            worker_count = process_count
        elif probe_responsive:
            worker_count = 1
        elif has_workers:
            worker_count = "unknown"
        else:
            worker_count = 0

        return self._status(
            queue,
            has_workers,
            worker_count,
            CheckMethod.DATABASE_COMPREHENSIVE.value,
            details={
                "processing_jobs": processing,
                "pending_jobs": pending,
                "recent_failures": recent_failures,
                "recent_activity": recent_activity,
                "probe_responsive": probe_responsive,
                "process_count": process_count,
            },
        )

    def _probe(self, queue: str) -> Optional[bool]:
        """
        Round-trip a probe job through the queue.

        Returns None when the per-queue rate limit skipped the probe.
        """
        now = self.clock()
        last = self._last_probe.get(queue)
        if last is not None and now - last < self.config.probe_rate_limit:
            return None
        self._last_probe[queue] = now

        probe_id = self.backend.create_probe(queue)
        waited = 0.0
        while waited < self.config.probe_timeout:
            if self.backend.probe_completed(probe_id):
                logger.debug("probe_answered", queue=queue, waited=round(waited, 2))
                return True
            self.sleep(self.config.probe_interval)
            waited += self.config.probe_interval

        answered = self.backend.probe_completed(probe_id)
        if not answered:
            self.backend.discard_probe(probe_id)
            logger.info("probe_unanswered", queue=queue, timeout=self.config.probe_timeout)
        return answered

    def _count_processes(self, queue: str) -> Optional[int]:
        try:
            lines = self.process_lister()
        except (OSError, subprocess.SubprocessError) as e:
            logger.warning("process_check_failed", error=str(e))
            return None

        marker = self.config.worker_command
        count = 0
        for line in lines:
            if marker not in line:
                continue
            if "--queue" not in line or f"--queue={queue}" in line or f"--queue {queue}" in line:
                count += 1
        return count

    def _status(
        self,
        queue: str,
        has_workers: bool,
        worker_count: WorkerCount,
        method: str,
        details: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> WorkerStatus:
        return WorkerStatus(
            has_workers=has_workers,
            worker_count=worker_count,
            queue=queue,
            check_method=method,
            checked_at=to_iso(utcnow()),
            details=details or {},
            error=error,
        )
