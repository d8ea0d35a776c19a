"""Open the right staging store for an import."""

from __future__ import annotations

from pathlib import Path

from importflow.errors import StagingError
from importflow.processor.context import StorageInfo
from importflow.records.models import ImportRecord
from importflow.staging.base import StagingStore
from importflow.staging.memory import InMemoryStagingStore
from importflow.staging.sqlite import SqliteStagingStore
from importflow.utils.logging import get_logger
from importflow.utils.timeutil import utcnow

logger = get_logger("staging.manager")

STAGING_DRIVERS = ("sqlite", "memory")


class StagingManager:
    """
    Creates and reopens per-import staging stores.

    In-memory stores only live as long as this manager, so they are reused
    for repeated opens of the same import within one process.
    """

    def __init__(self, driver: str, directory: Path) -> None:
        if driver not in STAGING_DRIVERS:
            raise StagingError(
                f"Unknown staging driver: {driver}. Available: {', '.join(STAGING_DRIVERS)}"
            )
        self.driver = driver
        self.directory = Path(directory)
        self._memory_stores: dict[str, InMemoryStagingStore] = {}

    def path_for(self, record: ImportRecord) -> Path:
        return self.directory / f"import_{record.id}.sqlite"

    def create_for(self, record: ImportRecord) -> tuple[StagingStore, StorageInfo]:
        """
        Allocate staging for a record using the configured driver.

        Returns:
            The opened store and the storage info to persist on the record
        """
        if self.driver == "memory":
            info = StorageInfo(driver="memory", path=None, created_at=utcnow())
        else:
            info = StorageInfo(driver="sqlite", path=str(self.path_for(record)), created_at=utcnow())

        store = self._open(record.id, info)
        logger.info(
            "staging_created",
            import_id=record.id,
            driver=info.driver,
            path=info.path,
        )
        return store, info

    def open(self, record: ImportRecord) -> StagingStore:
        """
        Reopen the staging store recorded on an import.

        Raises:
            StagingError: If the import has no staging yet
        """
        info = StorageInfo.from_metadata(record.metadata)
        if info is None:
            raise StagingError(f"Import {record.id} has no staging storage yet")
        return self._open(record.id, info)

    def _open(self, import_id: str, info: StorageInfo) -> StagingStore:
        if info.driver == "memory":
            return self._memory_stores.setdefault(import_id, InMemoryStagingStore())
        if info.driver == "sqlite":
            if not info.path:
                raise StagingError(f"Import {import_id} has no staging path")
            return SqliteStagingStore(Path(info.path))
        raise StagingError(f"Unknown staging driver on import {import_id}: {info.driver}")

    def is_shareable(self) -> bool:
        """Whether another process can see what this manager stages."""
        return self.driver != "memory"
