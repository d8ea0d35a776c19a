"""Durable queue backed by a SQLite jobs table."""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Generator, Optional

from importflow.errors import QueueError
from importflow.queue.base import Queue
from importflow.utils.logging import get_logger

logger = get_logger("queue.database")

PROBE_JOB = "probe"

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue TEXT NOT NULL,
    job TEXT NOT NULL,
    payload TEXT NOT NULL,
    subject TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    reserved_at REAL,
    available_at REAL NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_jobs_queue ON jobs (queue, reserved_at, available_at);
CREATE INDEX IF NOT EXISTS ix_jobs_subject ON jobs (subject);

CREATE TABLE IF NOT EXISTS failed_jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    uuid TEXT NOT NULL,
    queue TEXT NOT NULL,
    job TEXT NOT NULL,
    payload TEXT NOT NULL,
    subject TEXT,
    exception TEXT NOT NULL,
    failed_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_failed_jobs_subject ON failed_jobs (subject, failed_at);

CREATE TABLE IF NOT EXISTS worker_probes (
    probe_id TEXT PRIMARY KEY,
    queue TEXT NOT NULL,
    created_at REAL NOT NULL,
    completed_at REAL
);
"""


@dataclass
class ReservedJob:
    """A job leased to one worker."""

    id: int
    queue: str
    job: str
    payload: dict[str, Any]
    attempts: int
    reserved_at: float


def job_subject(payload: dict[str, Any]) -> Optional[str]:
    """The import or probe a job is about, indexed for failure lookups."""
    subject = payload.get("import_id") or payload.get("probe_id")
    return str(subject) if subject is not None else None


class DatabaseQueue(Queue):
    """
    Jobs, failed jobs and worker probes in one SQLite file.

    Several processes share the file: the driving loop dispatches and
    inspects, workers reserve and complete. Every call opens its own
    connection and reservation happens inside ``BEGIN IMMEDIATE``.
    """

    driver = "database"
    supports_introspection = True

    def __init__(
        self,
        path: Path,
        retry_after: float = 7260,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the queue.

        Args:
            path: SQLite file holding the queue tables
            retry_after: Seconds after which a reservation is considered abandoned
            clock: Epoch time source
        """
        self.path = Path(path)
        self.retry_after = retry_after
        self.clock = clock
        self._init_schema()

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(str(self.path), timeout=30, isolation_level=None)
        except sqlite3.Error as e:
            raise QueueError(f"Cannot open queue database {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def dispatch(
        self,
        job: str,
        payload: dict[str, Any],
        queue: str = "default",
        delay: float = 0,
    ) -> str:
        now = self.clock()
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT INTO jobs (queue, job, payload, subject, attempts, available_at, created_at) "
                "VALUES (?, ?, ?, ?, 0, ?, ?)",
                (queue, job, json.dumps(payload), job_subject(payload), now + delay, now),
            )
            job_id = str(cursor.lastrowid)

        logger.info("job_dispatched", job=job, job_id=job_id, queue=queue, delay=delay)
        return job_id

    def reserve(self, queues: list[str]) -> Optional[ReservedJob]:
        """Lease the oldest available job on any of ``queues``."""
        if not queues:
            return None
        now = self.clock()
        placeholders = ", ".join("?" for _ in queues)

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    f"SELECT * FROM jobs WHERE queue IN ({placeholders}) AND ("
                    "(reserved_at IS NULL AND available_at <= ?) OR reserved_at <= ?"
                    ") ORDER BY id LIMIT 1",
                    (*queues, now, now - self.retry_after),
                ).fetchone()
                if row is None:
                    conn.execute("COMMIT")
                    return None
                conn.execute(
                    "UPDATE jobs SET reserved_at = ?, attempts = attempts + 1 WHERE id = ?",
                    (now, row["id"]),
                )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise

        return ReservedJob(
            id=row["id"],
            queue=row["queue"],
            job=row["job"],
            payload=json.loads(row["payload"]),
            attempts=row["attempts"] + 1,
            reserved_at=now,
        )

    def delete(self, job_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))

    def release(self, job_id: int, delay: float = 0) -> None:
        """Return a reserved job to the queue for another attempt."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE jobs SET reserved_at = NULL, available_at = ? WHERE id = ?",
                (self.clock() + delay, job_id),
            )

    def fail(self, job: ReservedJob, exception: str) -> None:
        """Move a job to the failed-job log."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "INSERT INTO failed_jobs (uuid, queue, job, payload, subject, exception, failed_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        str(uuid.uuid4()),
                        job.queue,
                        job.job,
                        json.dumps(job.payload),
                        job_subject(job.payload),
                        exception,
                        self.clock(),
                    ),
                )
                conn.execute("DELETE FROM jobs WHERE id = ?", (job.id,))
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        logger.warning("job_failed", job=job.job, job_id=job.id, queue=job.queue)

    # Introspection used by worker detection and stall checks

    def _scalar(self, sql: str, params: tuple) -> int:
        with self._connect() as conn:
            return int(conn.execute(sql, params).fetchone()[0])

    def count_processing(self, queue: str, since: float) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM jobs WHERE queue = ? AND reserved_at IS NOT NULL AND reserved_at >= ?",
            (queue, since),
        )

    def count_pending(self, queue: str) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM jobs WHERE queue = ? AND reserved_at IS NULL",
            (queue,),
        )

    def count_failures_since(self, queue: str, since: float) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM failed_jobs WHERE queue = ? AND failed_at >= ?",
            (queue, since),
        )

    def count_created_since(self, queue: str, since: float) -> int:
        return self._scalar(
            "SELECT COUNT(*) FROM jobs WHERE queue = ? AND created_at >= ?",
            (queue, since),
        )

    def oldest_pending_age(self, queue: str) -> Optional[float]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MIN(created_at) FROM jobs WHERE queue = ? AND reserved_at IS NULL",
                (queue,),
            ).fetchone()
        return None if row[0] is None else self.clock() - row[0]

    def find_failure(self, subject: str, since: float) -> Optional[dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM failed_jobs WHERE subject = ? AND failed_at >= ? "
                "ORDER BY failed_at DESC, id DESC LIMIT 1",
                (subject, since),
            ).fetchone()
        if row is None:
            return None
        return {
            "uuid": row["uuid"],
            "queue": row["queue"],
            "job": row["job"],
            "exception": row["exception"],
            "failed_at": row["failed_at"],
        }

    def has_job_for(self, subject: str) -> bool:
        return self._scalar("SELECT COUNT(*) FROM jobs WHERE subject = ?", (subject,)) > 0

    def discard_pending_for(self, subject: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM jobs WHERE subject = ? AND reserved_at IS NULL", (subject,)
            )
            return cursor.rowcount

    def queue_stats(self, queue: str) -> dict[str, Any]:
        now = self.clock()
        return {
            "queue": queue,
            "pending": self.count_pending(queue),
            "reserved": self._scalar(
                "SELECT COUNT(*) FROM jobs WHERE queue = ? AND reserved_at IS NOT NULL", (queue,)
            ),
            "failed_last_hour": self.count_failures_since(queue, now - 3600),
            "oldest_pending_seconds": self.oldest_pending_age(queue),
        }

    # Worker probes

    def create_probe(self, queue: str) -> str:
        """Record a probe and dispatch the job that will complete it."""
        probe_id = uuid.uuid4().hex
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO worker_probes (probe_id, queue, created_at) VALUES (?, ?, ?)",
                (probe_id, queue, self.clock()),
            )
        self.dispatch(PROBE_JOB, {"probe_id": probe_id}, queue=queue)
        return probe_id

    def complete_probe(self, probe_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE worker_probes SET completed_at = ? WHERE probe_id = ?",
                (self.clock(), probe_id),
            )

    def probe_completed(self, probe_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT completed_at FROM worker_probes WHERE probe_id = ?",
                (probe_id,),
            ).fetchone()
        return row is not None and row[0] is not None

    def discard_probe(self, probe_id: str) -> None:
        """Drop an unanswered probe and its job if no worker took it."""
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM jobs WHERE subject = ? AND job = ? AND reserved_at IS NULL",
                (probe_id, PROBE_JOB),
            )
            conn.execute("DELETE FROM worker_probes WHERE probe_id = ?", (probe_id,))
