"""
Unit tests for the shared, CSV and detection states.
"""

import pytest

from importflow.drivers import AutoDriver, CsvDriver, WordPressDriver, detect_driver, get_driver
from importflow.errors import ConfigurationRequiredError, NoPreferredTransitionError, UnknownDriverError
from importflow.processor.driver_config import DriverConfig
from importflow.processor.machine import StateMachine
from importflow.states import (
    AnalyzingState,
    CompletedState,
    ConfigureHeadersState,
    CreateStorageState,
    DetectDriverState,
    PendingState,
)


def load(services, import_id, driver=None):
    record = services.records.get(import_id)
    machine = StateMachine(record, driver or get_driver(record.driver), services)
    return record, machine, machine.get_current_state()


def create_csv(services, path, state, **metadata):
    return services.records.create(
        driver="csv",
        source_type="file",
        source_detail=str(path),
        metadata=metadata,
        state=state,
    )


class TestStateBase:
    """Tests for behaviour every state inherits."""

    def test_pending_follows_preferred_edge(self, services, csv_file):
        record = create_csv(services, csv_file, "pending")
        _, _, state = load(services, record.id)

        assert isinstance(state, PendingState)
        assert state.execute() is True
        assert services.records.get(record.id).state == "configure_headers"

    def test_missing_preferred_edge_raises(self, services, csv_file):
        record = create_csv(services, csv_file, "pending")
        driver = CsvDriver()
        driver._config = DriverConfig().default("pending").allow_transition("pending", "failed").validate()
        _, _, state = load(services, record.id, driver)

        with pytest.raises(NoPreferredTransitionError):
            state.execute()

    def test_fail_records_error_and_moves_to_failed(self, services, csv_file):
        record = create_csv(services, csv_file, "create_storage")
        _, _, state = load(services, record.id)

        assert state.fail("disk full", reason="io") is False

        fresh = services.records.get(record.id)
        assert fresh.state == "failed"
        assert fresh.error_message == "disk full"
        assert fresh.failed_at is not None
        assert fresh.get_meta("reason") == "io"

    def test_should_continue_polling(self, services, csv_file):
        record = create_csv(services, csv_file, "extract")
        _, _, state = load(services, record.id)

        assert state.should_continue_polling() is True


class TestConfigureHeadersState:
    """Tests for CSV header configuration."""

    def test_needs_configuration_until_answered(self, services, csv_file):
        record = create_csv(services, csv_file, "configure_headers")
        _, _, state = load(services, record.id)

        assert isinstance(state, ConfigureHeadersState)
        assert state.needs_configuration() is True
        with pytest.raises(ConfigurationRequiredError):
            state.execute()

    def test_explicit_headers_satisfy(self, services, csv_file):
        record = create_csv(services, csv_file, "configure_headers", headers=["a", "b", "c"])
        _, _, state = load(services, record.id)

        assert state.needs_configuration() is False
        assert state.execute() is True
        assert services.records.get(record.id).state == "create_storage"

    def test_headers_read_from_first_row(self, services, csv_file):
        record = create_csv(services, csv_file, "configure_headers", headers_first_row=True)
        _, _, state = load(services, record.id)

        state.execute()

        fresh = services.records.get(record.id)
        assert fresh.get_meta("headers") == ["name", "email", "age"]
        assert fresh.state == "create_storage"

    def test_no_header_row_generates_later(self, services, csv_file):
        record = create_csv(services, csv_file, "configure_headers", headers_first_row=False)
        _, _, state = load(services, record.id)

        state.execute()

        fresh = services.records.get(record.id)
        assert fresh.get_meta("headers") is None
        assert fresh.state == "create_storage"

    def test_empty_source_fails(self, services, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("\n\n", encoding="utf-8")
        record = create_csv(services, path, "configure_headers", headers_first_row=True)
        _, _, state = load(services, record.id)

        assert state.execute() is False
        assert services.records.get(record.id).state == "failed"


class TestCreateStorageState:
    """Tests for staging allocation."""

    def test_allocates_and_declares_tables(self, services, csv_file):
        record = create_csv(services, csv_file, "create_storage", headers=["name", "email", "age"])
        _, _, state = load(services, record.id)

        assert isinstance(state, CreateStorageState)
        assert state.execute() is True

        fresh = services.records.get(record.id)
        assert fresh.state == "extract"
        assert fresh.get_meta("storage_driver") == "sqlite"
        store = services.staging.open(fresh)
        try:
            assert store.get_headers("data") == ["name", "email", "age"]
        finally:
            store.close()

    def test_existing_storage_reused(self, services, csv_file):
        record = create_csv(
            services, csv_file, "create_storage",
            storage_driver="memory", storage_path=None,
        )
        _, _, state = load(services, record.id)

        state.execute()

        fresh = services.records.get(record.id)
        assert fresh.state == "extract"
        assert fresh.get_meta("storage_driver") == "memory"

    def test_wordpress_tables_declared(self, services, wxr_file):
        record = services.records.create(
            driver="wordpress_xml", source_type="file", source_detail=str(wxr_file), state="create_storage",
        )
        _, _, state = load(services, record.id)

        state.execute()

        store = services.staging.open(services.records.get(record.id))
        try:
            assert set(store.get_tables()) == {
                "posts", "postmeta", "comments", "terms", "term_relationships", "users",
            }
        finally:
            store.close()


class TestAnalyzingState:
    """Tests for post-extraction analysis."""

    def test_counts_and_types(self, services, csv_file):
        record = create_csv(services, csv_file, "analyzing")
        store, info = services.staging.create_for(record)
        store.create(["name", "age"])
        store.insert_batch([{"name": "Alice", "age": "30"}, {"name": "Bob", "age": "25"}])
        store.close()
        record.update_metadata(info.to_metadata())
        services.records.save(record)
        _, _, state = load(services, record.id)

        assert isinstance(state, AnalyzingState)
        assert state.execute() is True

        fresh = services.records.get(record.id)
        assert fresh.state == "completed"
        assert fresh.get_meta("analysis_results") == {
            "data": {"rows": 2, "columns": {"name": "string", "age": "integer"}},
        }
        assert fresh.get_meta("analyzed_at") is not None

    def test_missing_staging_fails(self, services, csv_file):
        record = create_csv(services, csv_file, "analyzing")
        _, _, state = load(services, record.id)

        assert state.execute() is False
        assert services.records.get(record.id).state == "failed"


class TestTerminalStates:
    """Tests for completed and failed."""

    def test_completed_sets_timestamp_once(self, services, csv_file):
        record = create_csv(services, csv_file, "completed")
        _, _, state = load(services, record.id)

        assert isinstance(state, CompletedState)
        assert state.execute() is True
        first = services.records.get(record.id).completed_at
        _, _, state = load(services, record.id)
        state.execute()

        assert first is not None
        assert services.records.get(record.id).completed_at == first
        assert state.should_continue_polling() is False

    def test_failed_returns_false(self, services, csv_file):
        record = create_csv(services, csv_file, "failed")
        _, _, state = load(services, record.id)

        assert state.execute() is False


class TestDriverDetection:
    """Tests for picking a concrete driver from the source."""

    def make_auto(self, services, path):
        return services.records.create(
            driver="auto", source_type="file", source_detail=str(path), state="detect_driver",
        )

    def test_detect_driver_prefers_wordpress(self, services, wxr_file, csv_file):
        wxr = self.make_auto(services, wxr_file)
        csv = self.make_auto(services, csv_file)

        assert detect_driver(wxr, services.resolver).name == "wordpress_xml"
        assert detect_driver(csv, services.resolver).name == "csv"

    def test_plain_xml_not_wordpress(self, services, tmp_path):
        path = tmp_path / "feed.xml"
        path.write_text("<rss><channel/></rss>", encoding="utf-8")

        assert detect_driver(self.make_auto(services, path), services.resolver) is None

    def test_state_switches_driver_and_resets(self, services, csv_file):
        record = self.make_auto(services, csv_file)
        _, _, state = load(services, record.id, AutoDriver())

        assert isinstance(state, DetectDriverState)
        assert state.execute() is True

        fresh = services.records.get(record.id)
        assert fresh.driver == "csv"
        assert fresh.state == "pending"
        assert fresh.get_meta("detected_driver") == "csv"

    def test_tsv_seeds_delimiter(self, services, tmp_path):
        path = tmp_path / "people.tsv"
        path.write_text("a\tb\n1\t2\n", encoding="utf-8")
        record = self.make_auto(services, path)
        _, _, state = load(services, record.id, AutoDriver())

        state.execute()

        assert services.records.get(record.id).get_meta("delimiter") == "\t"

    def test_undetectable_source_fails(self, services, tmp_path):
        path = tmp_path / "image.png"
        path.write_bytes(b"\x89PNG")
        record = self.make_auto(services, path)
        _, _, state = load(services, record.id, AutoDriver())

        assert state.execute() is False

        fresh = services.records.get(record.id)
        assert fresh.state == "failed"
        assert fresh.get_meta("detection_failed") is True

    def test_missing_source_fails(self, services, tmp_path):
        record = self.make_auto(services, tmp_path / "gone.csv")
        _, _, state = load(services, record.id, AutoDriver())

        assert state.execute() is False
        assert "Could not read source" in services.records.get(record.id).error_message


class TestDriverRegistry:
    """Tests for driver lookup."""

    def test_unknown_driver(self):
        with pytest.raises(UnknownDriverError, match="Available: auto, csv, wordpress_xml"):
            get_driver("excel")

    def test_wordpress_accepts_only_wxr(self, wxr_file, csv_file):
        driver = WordPressDriver()

        assert driver.accepts(wxr_file) is True
        assert driver.accepts(csv_file) is False

    def test_csv_tables_need_headers(self, services, csv_file):
        record = create_csv(services, csv_file, "pending")
        driver = CsvDriver()

        assert driver.tables(record) == {}
        record.update_metadata(headers=["a", "a"], target_table="people")
        assert driver.tables(record) == {"people": ["a", "a_2"]}
