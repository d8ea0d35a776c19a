"""
Unit tests for worker presence detection.
"""

import sqlite3
from unittest.mock import Mock

import pytest

from importflow.config.settings import DetectionConfig, QueueConfig
from importflow.queue import CheckMethod, DatabaseQueue, WorkerPresenceDetector, format_guidance
from importflow.utils.cache import TTLCache


@pytest.fixture
def backend(tmp_path, clock):
    return DatabaseQueue(tmp_path / "queue.sqlite", clock=clock)


def make_detector(driver="database", backend=None, clock=None, **detection):
    detection.setdefault("cache_ttl", 0)
    return WorkerPresenceDetector(
        QueueConfig(driver=driver),
        DetectionConfig(**detection),
        backend=backend,
        clock=clock or (lambda: 0.0),
        sleep=clock.advance if clock is not None else (lambda seconds: None),
        process_lister=lambda: [],
    )


class TestDriverChecks:
    """Tests for the non-database drivers."""

    def test_sync_driver_always_has_workers(self):
        status = make_detector("sync").check("q")

        assert status.has_workers
        assert status.worker_count == "sync"
        assert status.check_method == CheckMethod.SYNC_DRIVER.value

    def test_sqs_is_assumed(self):
        status = make_detector("sqs").check("q")

        assert status.has_workers
        assert status.worker_count == "unknown"
        assert status.check_method == "sqs_assumed"

    def test_unknown_driver_is_assumed(self):
        status = make_detector("beanstalkd").check("q")

        assert status.has_workers
        assert status.check_method == CheckMethod.UNKNOWN_DRIVER_ASSUMED.value
        assert status.details["driver"] == "beanstalkd"

    def test_default_queue_used(self):
        assert make_detector("sync").check().queue == "default"


class TestDatabaseChecks:
    """Tests for the layered heuristics on the database queue."""

    def test_recent_reservation_means_workers(self, backend, clock):
        """One job reserved two minutes ago."""
        backend.dispatch("extract", {"import_id": "a"}, queue="q")
        backend.reserve(["q"])
        clock.advance(120)

        status = make_detector(backend=backend, clock=clock).check("q")

        assert status.has_workers is True
        assert status.check_method == "database_comprehensive"
        assert status.worker_count == 1
        assert status.details["processing_jobs"] == 1

    def test_large_stale_backlog_means_no_workers(self, backend, clock):
        """Fifteen unreserved jobs, all more than five minutes old."""
        for i in range(15):
            backend.dispatch("extract", {"import_id": f"imp{i}"}, queue="q")
        clock.advance(6 * 60)

        status = make_detector(backend=backend, clock=clock).check("q")

        assert status.has_workers is False
        assert status.worker_count == 0
        assert status.details["pending_jobs"] == 15

    def test_old_reservation_outside_window_ignored(self, backend, clock):
        backend.dispatch("extract", {"import_id": "a"}, queue="q")
        backend.reserve(["q"])
        clock.advance(20 * 60)

        status = make_detector(backend=backend, clock=clock).check("q")

        assert status.has_workers is False

    def test_small_recent_backlog_means_workers(self, backend, clock):
        backend.dispatch("extract", {"import_id": "a"}, queue="q")
        clock.advance(60)

        status = make_detector(backend=backend, clock=clock).check("q")

        assert status.has_workers is True
        assert status.worker_count == "unknown"

    def test_recent_failure_means_workers(self, backend, clock):
        backend.dispatch("extract", {"import_id": "a"}, queue="q")
        job = backend.reserve(["q"])
        backend.fail(job, "boom")
        clock.advance(20 * 60)
        backend.dispatch("extract", {"import_id": "b"}, queue="other")
        failed_again = backend.reserve(["other"])
        backend.fail(failed_again, "boom")

        assert make_detector(backend=backend, clock=clock).check("other").has_workers
        assert not make_detector(backend=backend, clock=clock).check("q").has_workers

    def test_empty_queue_means_no_workers(self, backend, clock):
        assert make_detector(backend=backend, clock=clock).check("q").has_workers is False

    def test_backend_error_reported_as_no_workers(self, clock):
        broken = Mock()
        broken.count_processing.side_effect = sqlite3.OperationalError("database is locked")

        status = make_detector(backend=broken, clock=clock).check("q")

        assert status.has_workers is False
        assert status.check_method == "database_error"
        assert "locked" in status.error

    def test_missing_backend_reported_as_error(self, clock):
        status = make_detector(backend=None, clock=clock).check("q")

        assert status.has_workers is False
        assert status.check_method == "database_error"


class TestProbes:
    """Tests for round-trip probe jobs."""

    def test_answered_probe(self, backend, clock):
        detector = make_detector(backend=backend, clock=clock, probe_enabled=True)

        def answer(seconds):
            job = backend.reserve(["q"])
            if job is not None:
                backend.complete_probe(job.payload["probe_id"])
                backend.delete(job.id)
            clock.advance(seconds)

        detector.sleep = answer
        status = detector.check("q")

        assert status.has_workers
        assert status.details["probe_responsive"] is True

    def test_unanswered_probe_is_discarded(self, backend, clock):
        detector = make_detector(backend=backend, clock=clock, probe_enabled=True, probe_timeout=0.3)

        status = detector.check("q")

        assert status.details["probe_responsive"] is False
        assert backend.count_pending("q") == 0

    def test_probe_rate_limited(self, backend, clock):
        detector = make_detector(backend=backend, clock=clock, probe_enabled=True, probe_timeout=0.1)

        detector.check("q")
        status = detector.check("q")

        assert status.details["probe_responsive"] is None


class TestProcessCheck:
    """Tests for the optional process listing check."""

    def test_counts_matching_workers(self, backend, clock):
        detector = make_detector(backend=backend, clock=clock, process_check=True)
        detector.process_lister = lambda: [
            "/usr/bin/python importflow worker --queue=q",
            "/usr/bin/python importflow worker",
            "/usr/bin/python importflow worker --queue=other",
            "vim notes.txt",
        ]

        status = detector.check("q")

        assert status.has_workers
        assert status.worker_count == 2

    def test_lister_failure_is_ignored(self, backend, clock):
        detector = make_detector(backend=backend, clock=clock, process_check=True)
        detector.process_lister = Mock(side_effect=OSError("no ps"))

        status = detector.check("q")

        assert status.details["process_count"] is None


class TestCaching:
    """Tests for the per-queue result cache."""

    def test_result_cached_per_queue(self):
        detector = make_detector("sync")
        detector.cache = TTLCache(60)
        detector._detect = Mock(wraps=detector._detect)

        detector.check("q")
        detector.check("q")
        detector.check("other")

        assert detector._detect.call_count == 2

    def test_clear_cache(self):
        detector = make_detector("sync")
        detector.cache = TTLCache(60)
        detector._detect = Mock(wraps=detector._detect)

        detector.check("q")
        detector.clear_cache("q")
        detector.check("q")

        assert detector._detect.call_count == 2

    def test_ttl_expiry(self):
        now = [0.0]
        cache = TTLCache(30, clock=lambda: now[0])
        cache.set("q", "value")

        now[0] = 29
        assert cache.get("q") == "value"
        now[0] = 30
        assert cache.get("q") is None


class TestReporting:
    """Tests for status output helpers."""

    def test_queue_status_report(self):
        report = make_detector("sync").queue_status_report(["a", "b"])

        assert report["all_have_workers"] is True
        assert report["queues_without_workers"] == []
        assert set(report["queues"]) == {"a", "b"}

    def test_guidance_names_queue_and_command(self, backend, clock):
        status = make_detector(backend=backend, clock=clock).check("heavy-imports")

        guidance = format_guidance(status, "importflow worker")

        assert "heavy-imports" in guidance
        assert "importflow worker --queue=heavy-imports" in guidance
