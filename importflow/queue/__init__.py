"""Job queues, worker presence detection and background workers."""

from importflow.queue.base import Queue, SyncQueue, UnsupportedQueue, select_queue
from importflow.queue.database import DatabaseQueue, ReservedJob
from importflow.queue.detector import (
    CheckMethod,
    WorkerPresenceDetector,
    WorkerStatus,
    format_guidance,
)

__all__ = [
    "Queue",
    "SyncQueue",
    "UnsupportedQueue",
    "select_queue",
    "DatabaseQueue",
    "ReservedJob",
    "CheckMethod",
    "WorkerPresenceDetector",
    "WorkerStatus",
    "format_guidance",
]
