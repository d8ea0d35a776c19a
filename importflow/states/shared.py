"""States shared by every driver."""

from __future__ import annotations

from importflow.errors import StagingError
from importflow.processor.context import StorageInfo
from importflow.staging.inference import infer_table_types
from importflow.states.base import State
from importflow.utils.timeutil import to_iso


class PendingState(State):
    name = "pending"


class CreateStorageState(State):
    """Allocate the import's staging store and declare its tables."""

    name = "create_storage"

    def execute(self) -> bool:
        staging_manager = self.services.staging
        if StorageInfo.from_metadata(self.record.metadata) is not None:
            self.logger.info("staging_exists", import_id=self.record.id)
            return self.transition_to_next_state()

        try:
            store, info = staging_manager.create_for(self.record)
            try:
                store.create_many(self.machine.driver.tables(self.record))
            finally:
                store.close()
        except (StagingError, OSError) as e:
            return self.fail(f"Could not create staging storage: {e}")

        self.record.update_metadata(info.to_metadata())
        return self.transition_to_next_state()


class AnalyzingState(State):
    """Summarise what was staged: row counts and inferred column types."""

    name = "analyzing"

    def execute(self) -> bool:
        sample_rows = self.services.settings.extraction.analysis_sample_rows
        try:
            store = self.services.staging.open(self.record)
            try:
                results = {}
                for table in store.get_tables():
                    results[table] = {
                        "rows": store.count(table),
                        "columns": infer_table_types(store, table, sample_rows=sample_rows),
                    }
            finally:
                store.close()
        except StagingError as e:
            return self.fail(f"Could not analyze staged data: {e}")

        self.record.update_metadata(
            analysis_results=results,
            analyzed_at=to_iso(self.services.clock()),
        )
        self.logger.info(
            "analysis_completed",
            import_id=self.record.id,
            tables={name: info["rows"] for name, info in results.items()},
        )
        return self.transition_to_next_state()


class CompletedState(State):
    name = "completed"
    terminal = True

    def execute(self) -> bool:
        if not self.record.completed_at:
            self.record.completed_at = to_iso(self.services.clock())
            self.save()
            self.logger.info("import_completed", import_id=self.record.id)
        return True


class FailedState(State):
    name = "failed"
    terminal = True

    def execute(self) -> bool:
        return False
