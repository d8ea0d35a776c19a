"""
Unit tests for import record persistence.
"""

import json
import threading

import pytest

from importflow.errors import RecordNotFoundError
from importflow.records import InMemoryRecordStore, ImportRecord, JsonRecordStore
from importflow.utils.atomic import atomic_write, atomic_write_json


@pytest.fixture(params=["memory", "json"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryRecordStore()
    return JsonRecordStore(tmp_path / "records")


class TestRecordStore:
    """Behaviour shared by every record store."""

    def test_create_and_get(self, store):
        record = store.create("csv", "file", "/data/people.csv", metadata={"headers_first_row": True})

        loaded = store.get(record.id)

        assert loaded.driver == "csv"
        assert loaded.state is None
        assert loaded.get_meta("headers_first_row") is True
        assert loaded.created_at is not None

    def test_get_missing(self, store):
        with pytest.raises(RecordNotFoundError):
            store.get("nope")

    def test_get_returns_copies(self, store):
        record = store.create("csv", "file", "x.csv")

        loaded = store.get(record.id)
        loaded.set_meta("headers", ["a"])

        assert store.get(record.id).get_meta("headers") is None

    def test_save_then_get(self, store):
        record = store.create("csv", "file", "x.csv")
        record.state = "extract"
        record.update_metadata(headers=["a", "b"])

        store.save(record)

        loaded = store.get(record.id)
        assert loaded.state == "extract"
        assert loaded.get_meta("headers") == ["a", "b"]

    def test_merge_metadata_keeps_other_keys(self, store):
        record = store.create("csv", "file", "x.csv", metadata={"delimiter": ";"})

        store.merge_metadata(record.id, extraction_status="processing")

        loaded = store.get(record.id)
        assert loaded.get_meta("delimiter") == ";"
        assert loaded.get_meta("extraction_status") == "processing"

    def test_refresh_in_place(self, store):
        record = store.create("csv", "file", "x.csv")
        store.merge_metadata(record.id, extraction_completed=True)

        same = store.refresh(record)

        assert same is record
        assert record.get_meta("extraction_completed") is True

    def test_list_and_delete(self, store):
        first = store.create("csv", "file", "a.csv")
        second = store.create("auto", "file", "b.xml")

        assert {r.id for r in store.list()} == {first.id, second.id}
        assert store.delete(first.id) is True
        assert store.delete(first.id) is False
        assert [r.id for r in store.list()] == [second.id]


class TestJsonRecordStore:
    """Tests specific to the file-backed store."""

    def test_one_file_per_record(self, tmp_path):
        store = JsonRecordStore(tmp_path / "records")
        record = store.create("csv", "file", "x.csv")

        data = json.loads((tmp_path / "records" / f"{record.id}.json").read_text())

        assert data["id"] == record.id
        assert data["source_detail"] == "x.csv"

    def test_shared_between_instances(self, tmp_path):
        writer = JsonRecordStore(tmp_path / "records")
        reader = JsonRecordStore(tmp_path / "records")
        record = writer.create("csv", "file", "x.csv")

        writer.merge_metadata(record.id, extraction_status="completed")

        assert reader.get(record.id).get_meta("extraction_status") == "completed"

    def test_merge_waits_for_lock_and_keeps_state(self, tmp_path):
        store = JsonRecordStore(tmp_path / "records")
        record = store.create("csv", "file", "x.csv", state="extract")
        merged = threading.Event()

        def worker_progress():
            store.merge_metadata(record.id, extraction_current=10)
            merged.set()

        with store._locked(record.id):
            thread = threading.Thread(target=worker_progress)
            thread.start()
            assert not merged.wait(0.2)
            record.state = "failed"
            record.error_message = "stopped"
            store._write(record)
        thread.join(5)

        loaded = store.get(record.id)
        assert merged.is_set()
        assert loaded.state == "failed"
        assert loaded.error_message == "stopped"
        assert loaded.get_meta("extraction_current") == 10

    def test_lock_files_not_listed(self, tmp_path):
        store = JsonRecordStore(tmp_path / "records")
        record = store.create("csv", "file", "x.csv")
        store.merge_metadata(record.id, a=1)

        assert [r.id for r in store.list()] == [record.id]
        assert store.delete(record.id) is True
        assert list((tmp_path / "records").iterdir()) == []

    def test_corrupt_file(self, tmp_path):
        store = JsonRecordStore(tmp_path / "records")
        (tmp_path / "records" / "broken.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(RecordNotFoundError, match="corrupt"):
            store.get("broken")
        assert store.list() == []


class TestImportRecord:
    """Tests for the record model."""

    def test_round_trip_dict(self):
        record = ImportRecord(id="a", driver="csv", source_type="file", source_detail="x.csv")
        record.mark_failed("boom")

        restored = ImportRecord.from_dict(record.to_dict())

        assert restored == record
        assert restored.failed_at is not None

    def test_forget_meta(self):
        record = ImportRecord(id="a", driver="csv", source_type="file", source_detail="x.csv")
        record.update_metadata({"a": 1}, b=2)

        record.forget_meta("a", "missing")

        assert record.metadata == {"b": 2}


class TestAtomicWrite:
    """Tests for atomic JSON writes."""

    def test_writes_and_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "nested" / "data.json"

        atomic_write_json(target, {"x": 1})

        assert json.loads(target.read_text()) == {"x": 1}
        assert [p.name for p in target.parent.iterdir()] == ["data.json"]

    def test_failed_write_keeps_old_content(self, tmp_path):
        target = tmp_path / "data.json"
        atomic_write_json(target, {"x": 1})

        with pytest.raises(TypeError):
            with atomic_write(target) as f:
                f.write("{partial")
                raise TypeError("serialization failed")

        assert json.loads(target.read_text()) == {"x": 1}
        assert [p.name for p in tmp_path.iterdir()] == ["data.json"]

    def test_unwritable_directory(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("", encoding="utf-8")

        with pytest.raises(OSError):
            atomic_write_json(blocker / "data.json", {})
