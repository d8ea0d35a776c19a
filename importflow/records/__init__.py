"""Import record model and persistence."""

from importflow.records.models import ImportRecord
from importflow.records.store import (
    InMemoryRecordStore,
    JsonRecordStore,
    RecordStore,
    new_import_id,
)

__all__ = [
    "ImportRecord",
    "RecordStore",
    "InMemoryRecordStore",
    "JsonRecordStore",
    "new_import_id",
]
