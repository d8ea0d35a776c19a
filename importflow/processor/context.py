"""Typed views over the import record's metadata map.

States work with these value objects; they are converted to and from the
persisted metadata keys only at the record boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from importflow.utils.timeutil import parse_timestamp, to_iso


class ExtractionStatus(str, Enum):
    """Lifecycle of one extraction, stored under ``extraction_status``."""

    DISPATCHING = "dispatching"
    WAITING_FOR_WORKERS = "waiting_for_workers"
    WORKERS_DETECTED = "workers_detected"
    QUEUED = "queued"
    PROCESSING = "processing"
    RESTARTING = "restarting"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, value: Any) -> Optional["ExtractionStatus"]:
        if value is None or value == "":
            return None
        try:
            return cls(value)
        except ValueError:
            return None


# Persisted metadata key for each ExtractionProgress attribute
_PROGRESS_KEYS = {
    "status": "extraction_status",
    "job_dispatched": "extraction_job_dispatched",
    "dispatched_at": "extraction_dispatched_at",
    "last_update": "extraction_last_update",
    "started_at": "extraction_started_at",
    "completed_at": "extraction_completed_at",
    "completed": "extraction_completed",
    "parsing_completed": "parsing_completed",
    "error": "extraction_error",
    "current": "extraction_current",
    "total": "extraction_total",
    "attempts": "extraction_attempts",
    "queue": "extraction_queue",
    "job_id": "extraction_job_id",
    "mode": "extraction_mode",
    "stats": "parsing_stats",
    "guidance": "worker_guidance",
}

_TIMESTAMP_FIELDS = ("dispatched_at", "last_update", "started_at", "completed_at")


@dataclass
class ExtractionProgress:
    """Where an extraction stands, as recorded on the import."""

    status: Optional[ExtractionStatus] = None
    job_dispatched: bool = False
    dispatched_at: Optional[datetime] = None
    last_update: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completed: bool = False
    parsing_completed: bool = False
    error: Optional[str] = None
    current: int = 0
    total: Optional[int] = None
    attempts: int = 0
    queue: Optional[str] = None
    job_id: Optional[str] = None
    mode: Optional[str] = None
    stats: dict[str, Any] = field(default_factory=dict)
    guidance: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.completed or self.parsing_completed

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> "ExtractionProgress":
        progress = cls()
        for attr, key in _PROGRESS_KEYS.items():
            if key not in metadata:
                continue
            value = metadata[key]
            if attr == "status":
                value = ExtractionStatus.parse(value)
            elif attr in _TIMESTAMP_FIELDS:
                value = parse_timestamp(value)
            elif attr in ("job_dispatched", "completed", "parsing_completed"):
                value = bool(value)
            elif attr in ("current", "attempts"):
                value = int(value or 0)
            elif attr == "stats":
                value = dict(value or {})
            setattr(progress, attr, value)
        return progress

    def to_metadata(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for attr, key in _PROGRESS_KEYS.items():
            value = getattr(self, attr)
            if attr == "status":
                value = value.value if value is not None else None
            elif attr in _TIMESTAMP_FIELDS:
                value = to_iso(value)
            data[key] = value
        return data

    def mark_completed(self, stats: dict[str, Any], now: datetime) -> None:
        self.status = ExtractionStatus.COMPLETED
        self.completed = True
        self.parsing_completed = True
        self.completed_at = now
        self.last_update = now
        self.stats = stats
        self.error = None
        self.guidance = None


@dataclass
class StorageInfo:
    """Which staging backend an import uses and where it lives."""

    driver: str
    path: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> Optional["StorageInfo"]:
        driver = metadata.get("storage_driver")
        if not driver:
            return None
        return cls(
            driver=driver,
            path=metadata.get("storage_path"),
            created_at=parse_timestamp(metadata.get("storage_created_at")),
        )

    def to_metadata(self) -> dict[str, Any]:
        return {
            "storage_driver": self.driver,
            "storage_path": self.path,
            "storage_created_at": to_iso(self.created_at),
        }
