"""Wire the collaborators states and jobs need."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Optional

from importflow.config.settings import ImporterConfig
from importflow.queue.base import Queue, SyncQueue, UnsupportedQueue
from importflow.queue.database import DatabaseQueue
from importflow.queue.detector import WorkerPresenceDetector
from importflow.queue.jobs import run_job
from importflow.records.store import JsonRecordStore, RecordStore
from importflow.sources.resolver import SourceResolver
from importflow.staging.manager import StagingManager
from importflow.utils.cache import TTLCache


@dataclass
class ImportServices:
    """Everything a State or a job handler may touch."""

    settings: ImporterConfig
    records: RecordStore
    staging: StagingManager
    resolver: SourceResolver
    queue: Queue
    detector: WorkerPresenceDetector
    epoch_clock: Callable[[], float] = time.time

    def clock(self) -> datetime:
        return datetime.fromtimestamp(self.epoch_clock(), timezone.utc)

    @property
    def database_queue(self) -> Optional[DatabaseQueue]:
        return self.queue if isinstance(self.queue, DatabaseQueue) else None


def build_services(
    settings: ImporterConfig,
    records: Optional[RecordStore] = None,
    resolver: Optional[SourceResolver] = None,
    epoch_clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> ImportServices:
    """
    Build the service container from configuration.

    Args:
        settings: Importer configuration
        records: Record store (defaults to JSON files under the data dir)
        resolver: Source resolver (defaults to one built from settings)
        epoch_clock: Time source shared by the queue, detector and states
        sleep: Used by the detector while waiting for probe replies
    """
    records = records or JsonRecordStore(settings.records_dir)
    staging = StagingManager(settings.staging.driver, settings.staging_dir)
    resolver = resolver or SourceResolver(settings.sources, settings.download_dir)

    backend: Optional[DatabaseQueue] = None
    driver = settings.queue.driver
    if driver == "sync":
        queue: Queue = SyncQueue()
    elif driver == "database":
        backend = DatabaseQueue(
            settings.queue_database,
            retry_after=settings.queue.retry_after,
            clock=epoch_clock,
        )
        queue = backend
    else:
        queue = UnsupportedQueue(driver)

    detector = WorkerPresenceDetector(
        settings.queue,
        settings.detection,
        backend=backend,
        cache=TTLCache(settings.detection.cache_ttl),
        clock=epoch_clock,
        sleep=sleep,
    )

    services = ImportServices(
        settings=settings,
        records=records,
        staging=staging,
        resolver=resolver,
        queue=queue,
        detector=detector,
        epoch_clock=epoch_clock,
    )
    if isinstance(queue, SyncQueue):
        queue.runner = partial(run_job, services=services)
    return services
