"""In-process staging backend."""

from __future__ import annotations

from typing import Any, Callable, Iterable, Iterator, Optional

from importflow.errors import StagingError
from importflow.staging.base import DEFAULT_TABLE, Row, StagingStore


class InMemoryStagingStore(StagingStore):
    """Multi-table staging held in plain lists. Nothing survives the process."""

    driver_name = "memory"

    def __init__(self) -> None:
        self._headers: dict[str, list[str]] = {}
        self._rows: dict[str, list[Row]] = {}

    def create(self, columns: list[str], table: str = DEFAULT_TABLE) -> None:
        columns = self._validate_columns(columns, table)
        if table in self._headers:
            self._check_columns(table, self._headers[table], columns)
            return
        self._headers[table] = columns
        self._rows[table] = []

    def insert_batch(self, rows: Iterable[dict[str, Any]], table: str = DEFAULT_TABLE) -> int:
        headers = self._require(table)
        prepared = [self._normalise_row(row, headers, table) for row in rows]
        self._rows[table].extend(prepared)
        return len(prepared)

    def count(self, table: str = DEFAULT_TABLE) -> int:
        return len(self._rows.get(table, []))

    def get_headers(self, table: str = DEFAULT_TABLE) -> list[str]:
        return list(self._headers.get(table, []))

    def exists(self, table: str = DEFAULT_TABLE) -> bool:
        return table in self._headers

    def get_tables(self) -> list[str]:
        return list(self._headers)

    def chunk(
        self,
        size: int,
        callback: Callable[[list[Row]], Any],
        table: str = DEFAULT_TABLE,
    ) -> int:
        if size < 1:
            raise StagingError("Chunk size must be at least 1")
        self._require(table)

        pages = 0
        rows = self._rows[table]
        for start in range(0, len(rows), size):
            pages += 1
            page = [dict(row) for row in rows[start:start + size]]
            if callback(page) is False:
                break
        return pages

    def all(self, table: str = DEFAULT_TABLE) -> Iterator[Row]:
        self._require(table)
        for row in list(self._rows[table]):
            yield dict(row)

    def destroy(self, table: Optional[str] = None) -> None:
        if table is None:
            self._headers.clear()
            self._rows.clear()
            return
        self._headers.pop(table, None)
        self._rows.pop(table, None)

    def _require(self, table: str) -> list[str]:
        if table not in self._headers:
            raise StagingError(f"Table '{table}' has not been created")
        return self._headers[table]
