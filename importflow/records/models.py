"""Import record data model."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Optional

from importflow.utils.timeutil import to_iso, utcnow


@dataclass
class ImportRecord:
    """
    One import and everything states persist about it.

    ``metadata`` is the open map every state reads and writes; typed views
    over it live in ``importflow.processor.context``.
    """

    id: str
    driver: str
    source_type: str
    source_detail: str
    state: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None

    def get_meta(self, key: str, default: Any = None) -> Any:
        return self.metadata.get(key, default)

    def set_meta(self, key: str, value: Any) -> None:
        self.metadata[key] = value

    def update_metadata(self, values: Optional[dict[str, Any]] = None, **kwargs: Any) -> None:
        """Merge values into metadata."""
        if values:
            self.metadata.update(values)
        self.metadata.update(kwargs)

    def forget_meta(self, *keys: str) -> None:
        for key in keys:
            self.metadata.pop(key, None)

    def mark_failed(self, message: str) -> None:
        self.error_message = message
        self.failed_at = to_iso(utcnow())

    def copy_from(self, other: "ImportRecord") -> None:
        """Overwrite this record in place with another's persisted fields."""
        for name in self.__dataclass_fields__:
            setattr(self, name, copy.deepcopy(getattr(other, name)))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "driver": self.driver,
            "state": self.state,
            "source_type": self.source_type,
            "source_detail": self.source_detail,
            "metadata": self.metadata,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportRecord":
        """Create from dictionary."""
        return cls(
            id=data["id"],
            driver=data["driver"],
            state=data.get("state"),
            source_type=data["source_type"],
            source_detail=data["source_detail"],
            metadata=dict(data.get("metadata") or {}),
            error_message=data.get("error_message"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            completed_at=data.get("completed_at"),
            failed_at=data.get("failed_at"),
        )
