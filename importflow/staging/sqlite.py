"""Embedded single-file staging backend on SQLite."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional

from importflow.errors import StagingError
from importflow.staging.base import DEFAULT_TABLE, Row, StagingStore
from importflow.utils.logging import get_logger

logger = get_logger("staging.sqlite")

# Hidden key column that fixes row order; staged columns may not use the name
SEQUENCE_COLUMN = "_staging_seq"


def quote_identifier(name: str) -> str:
    """Quote a table or column name for SQLite."""
    return '"' + str(name).replace('"', '""') + '"'


class SqliteStagingStore(StagingStore):
    """
    One SQLite file per import, one TEXT-column table per staged entity.

    Each ``insert_batch`` call is a single transaction. Pages are read with
    keyset pagination on a hidden ``_staging_seq`` key rather than rowid,
    which a staged column named ``rowid`` or ``oid`` would shadow.
    """

    driver_name = "sqlite"

    def __init__(self, path: Path) -> None:
        """
        Open or create the staging file.

        Args:
            path: Location of the SQLite file
        """
        self.path = Path(path)
        self.conn: Optional[sqlite3.Connection] = None
        self._headers: dict[str, list[str]] = {}
        self._connect()

    def _connect(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.conn = sqlite3.connect(str(self.path), check_same_thread=False)
        except sqlite3.Error as e:
            raise StagingError(f"Cannot open staging file {self.path}: {e}") from e
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        logger.debug("staging_opened", path=str(self.path))

    @property
    def _db(self) -> sqlite3.Connection:
        if self.conn is None:
            self._connect()
        return self.conn

    def create(self, columns: list[str], table: str = DEFAULT_TABLE) -> None:
        columns = self._validate_columns(columns, table)
        if any(c.lower() == SEQUENCE_COLUMN for c in columns):
            raise StagingError(f"Column name '{SEQUENCE_COLUMN}' is reserved for table '{table}'")
        existing = self._load_headers(table)
        if existing:
            self._check_columns(table, existing, columns)
            return

        column_sql = ", ".join(
            [f"{SEQUENCE_COLUMN} INTEGER PRIMARY KEY"]
            + [f"{quote_identifier(c)} TEXT" for c in columns]
        )
        try:
            with self._db:
                self._db.execute(f"CREATE TABLE {quote_identifier(table)} ({column_sql})")
        except sqlite3.Error as e:
            raise StagingError(f"Cannot create table '{table}': {e}") from e

        self._headers[table] = columns
        logger.debug("staging_table_created", table=table, columns=len(columns))

    def insert_batch(self, rows: Iterable[dict[str, Any]], table: str = DEFAULT_TABLE) -> int:
        headers = self._require(table)
        prepared = [
            tuple(self._normalise_row(row, headers, table)[c] for c in headers)
            for row in rows
        ]
        if not prepared:
            return 0

        placeholders = ", ".join("?" for _ in headers)
        column_sql = ", ".join(quote_identifier(c) for c in headers)
        sql = f"INSERT INTO {quote_identifier(table)} ({column_sql}) VALUES ({placeholders})"
        try:
            with self._db:
                self._db.executemany(sql, prepared)
        except sqlite3.Error as e:
            raise StagingError(f"Batch insert into '{table}' failed: {e}") from e
        return len(prepared)

    def count(self, table: str = DEFAULT_TABLE) -> int:
        if not self.exists(table):
            return 0
        cursor = self._db.execute(f"SELECT COUNT(*) FROM {quote_identifier(table)}")
        return int(cursor.fetchone()[0])

    def get_headers(self, table: str = DEFAULT_TABLE) -> list[str]:
        return list(self._load_headers(table))

    def exists(self, table: str = DEFAULT_TABLE) -> bool:
        return bool(self._load_headers(table))

    def get_tables(self) -> list[str]:
        cursor = self._db.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY rowid"
        )
        return [row[0] for row in cursor.fetchall()]

    def chunk(
        self,
        size: int,
        callback: Callable[[list[Row]], Any],
        table: str = DEFAULT_TABLE,
    ) -> int:
        if size < 1:
            raise StagingError("Chunk size must be at least 1")
        headers = self._require(table)

        sql = (
            self._select_sql(table, headers)
            + f" WHERE {SEQUENCE_COLUMN} > ? ORDER BY {SEQUENCE_COLUMN} LIMIT ?"
        )
        last_seq = 0
        pages = 0
        while True:
            fetched = self._db.execute(sql, (last_seq, size)).fetchall()
            if not fetched:
                break
            last_seq = fetched[-1][0]
            pages += 1
            page = [dict(zip(headers, row[1:])) for row in fetched]
            if callback(page) is False or len(fetched) < size:
                break
        return pages

    def all(self, table: str = DEFAULT_TABLE) -> Iterator[Row]:
        headers = self._require(table)
        cursor = self._db.execute(self._select_sql(table, headers) + f" ORDER BY {SEQUENCE_COLUMN}")
        try:
            for row in cursor:
                yield dict(zip(headers, row[1:]))
        finally:
            cursor.close()

    def destroy(self, table: Optional[str] = None) -> None:
        if table is not None:
            with self._db:
                self._db.execute(f"DROP TABLE IF EXISTS {quote_identifier(table)}")
            self._headers.pop(table, None)
            logger.info("staging_table_destroyed", table=table)
            return

        self.close()
        for suffix in ("", "-wal", "-shm", "-journal"):
            candidate = Path(f"{self.path}{suffix}")
            if candidate.exists():
                candidate.unlink()
        self._headers.clear()
        logger.info("staging_destroyed", path=str(self.path))

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def info(self) -> dict[str, Any]:
        data = super().info()
        data["path"] = str(self.path)
        data["size_bytes"] = self.path.stat().st_size if self.path.exists() else 0
        return data

    def _select_sql(self, table: str, headers: list[str]) -> str:
        column_sql = ", ".join(quote_identifier(c) for c in headers)
        return f"SELECT {SEQUENCE_COLUMN}, {column_sql} FROM {quote_identifier(table)}"

    def _load_headers(self, table: str) -> list[str]:
        if table in self._headers:
            return self._headers[table]
        cursor = self._db.execute(f"PRAGMA table_info({quote_identifier(table)})")
        columns = [row[1] for row in cursor.fetchall() if row[1] != SEQUENCE_COLUMN]
        if columns:
            self._headers[table] = columns
        return columns

    def _require(self, table: str) -> list[str]:
        headers = self._load_headers(table)
        if not headers:
            raise StagingError(f"Table '{table}' has not been created")
        return headers
