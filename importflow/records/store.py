"""Record stores: where import records persist between steps."""

from __future__ import annotations

import copy
import fcntl
import json
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from importflow.errors import RecordNotFoundError
from importflow.records.models import ImportRecord
from importflow.utils.atomic import atomic_write_json
from importflow.utils.logging import get_logger
from importflow.utils.timeutil import to_iso, utcnow

logger = get_logger("records.store")


def new_import_id() -> str:
    return uuid.uuid4().hex[:12]


class RecordStore(ABC):
    """
    Persistence for import records.

    A ``get`` after ``save`` always observes the saved values. ``save`` and
    ``merge_metadata`` hold the record's lock, so a merge never interleaves
    with another write to the same record.
    """

    def create(
        self,
        driver: str,
        source_type: str,
        source_detail: str,
        metadata: Optional[dict[str, Any]] = None,
        state: Optional[str] = None,
    ) -> ImportRecord:
        """Create and persist a fresh record."""
        now = to_iso(utcnow())
        record = ImportRecord(
            id=new_import_id(),
            driver=driver,
            state=state,
            source_type=source_type,
            source_detail=source_detail,
            metadata=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        self._write(record)
        logger.info(
            "import_created",
            import_id=record.id,
            driver=driver,
            source_type=source_type,
        )
        return record

    def save(self, record: ImportRecord) -> None:
        """Write every field of the record."""
        with self._locked(record.id):
            record.updated_at = to_iso(utcnow())
            self._write(record)

    def refresh(self, record: ImportRecord) -> ImportRecord:
        """Reload a record in place from the store."""
        record.copy_from(self.get(record.id))
        return record

    def merge_metadata(self, record_id: str, **values: Any) -> ImportRecord:
        """
        Read, merge metadata keys and write back under the record's lock.

        Only the given metadata keys change; state, error and every other
        key keep their stored values. Background jobs and polling states
        write through here so neither side clobbers the other.
        """
        with self._locked(record_id):
            record = self.get(record_id)
            record.update_metadata(values)
            record.updated_at = to_iso(utcnow())
            self._write(record)
        return record

    @contextmanager
    def _locked(self, record_id: str) -> Iterator[None]:
        yield

    @abstractmethod
    def get(self, record_id: str) -> ImportRecord:
        """
        Load a record.

        Raises:
            RecordNotFoundError: If no such record exists
        """
        ...

    @abstractmethod
    def list(self) -> list[ImportRecord]:
        ...

    @abstractmethod
    def delete(self, record_id: str) -> bool:
        ...

    @abstractmethod
    def _write(self, record: ImportRecord) -> None:
        ...


class InMemoryRecordStore(RecordStore):
    """Record store for tests and single-process runs."""

    def __init__(self) -> None:
        self._records: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def _locked(self, record_id: str) -> Iterator[None]:
        with self._lock:
            yield

    def get(self, record_id: str) -> ImportRecord:
        if record_id not in self._records:
            raise RecordNotFoundError(f"Import not found: {record_id}")
        return ImportRecord.from_dict(copy.deepcopy(self._records[record_id]))

    def list(self) -> list[ImportRecord]:
        return [self.get(record_id) for record_id in self._records]

    def delete(self, record_id: str) -> bool:
        return self._records.pop(record_id, None) is not None

    def _write(self, record: ImportRecord) -> None:
        self._records[record.id] = copy.deepcopy(record.to_dict())


class JsonRecordStore(RecordStore):
    """
    One JSON file per import under a directory.

    Files are replaced atomically and writers take an exclusive ``flock`` on
    a sibling ``.lock`` file, so a worker process and the driving loop can
    share the directory.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, record_id: str) -> Path:
        return self.directory / f"{record_id}.json"

    def _lock_path(self, record_id: str) -> Path:
        return self.directory / f".{record_id}.lock"

    @contextmanager
    def _locked(self, record_id: str) -> Iterator[None]:
        with open(self._lock_path(record_id), "a") as handle:
            fcntl.flock(handle, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def get(self, record_id: str) -> ImportRecord:
        path = self._path(record_id)
        if not path.exists():
            raise RecordNotFoundError(f"Import not found: {record_id}")

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise RecordNotFoundError(f"Import record {record_id} is corrupt: {e}") from e
        return ImportRecord.from_dict(data)

    def list(self) -> list[ImportRecord]:
        records = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                records.append(self.get(path.stem))
            except RecordNotFoundError as e:
                logger.warning("record_unreadable", path=str(path), error=str(e))
        return sorted(records, key=lambda r: r.created_at or "")

    def delete(self, record_id: str) -> bool:
        path = self._path(record_id)
        if not path.exists():
            return False
        path.unlink()
        self._lock_path(record_id).unlink(missing_ok=True)
        return True

    def _write(self, record: ImportRecord) -> None:
        atomic_write_json(self._path(record.id), record.to_dict())
