"""Staging store contract shared by every backend."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Iterator, Optional

from importflow.errors import StagingError

DEFAULT_TABLE = "data"

Row = dict[str, Optional[str]]


def to_text(value: Any) -> Optional[str]:
    """Stored values are text; None stays None."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return str(value)


class StagingStore(ABC):
    """
    Table-oriented staging area for one import.

    A table's column set is fixed by its first ``create``. Creating it again
    with the same columns is a no-op; a different column set is rejected and
    requires ``destroy`` followed by ``create``.
    """

    driver_name: str = ""

    @abstractmethod
    def create(self, columns: list[str], table: str = DEFAULT_TABLE) -> None:
        ...

    @abstractmethod
    def insert_batch(self, rows: Iterable[dict[str, Any]], table: str = DEFAULT_TABLE) -> int:
        """
        Insert rows in order as one unit.

        Returns:
            Number of rows inserted
        """
        ...

    @abstractmethod
    def count(self, table: str = DEFAULT_TABLE) -> int:
        ...

    @abstractmethod
    def get_headers(self, table: str = DEFAULT_TABLE) -> list[str]:
        ...

    @abstractmethod
    def exists(self, table: str = DEFAULT_TABLE) -> bool:
        ...

    @abstractmethod
    def get_tables(self) -> list[str]:
        ...

    @abstractmethod
    def chunk(
        self,
        size: int,
        callback: Callable[[list[Row]], Any],
        table: str = DEFAULT_TABLE,
    ) -> int:
        """
        Page through staged rows in insertion order.

        Returns:
            Number of pages delivered to the callback. A callback returning
            False stops paging early.
        """
        ...

    @abstractmethod
    def all(self, table: str = DEFAULT_TABLE) -> Iterator[Row]:
        """Lazily iterate every row; each call starts a fresh pass."""
        ...

    @abstractmethod
    def destroy(self, table: Optional[str] = None) -> None:
        """Drop one table, or the whole staging area when table is None."""
        ...

    def insert(self, row: dict[str, Any], table: str = DEFAULT_TABLE) -> bool:
        return self.insert_batch([row], table) == 1

    def create_many(self, schemas: dict[str, list[str]]) -> None:
        for table, columns in schemas.items():
            self.create(columns, table)

    def first(self, table: str = DEFAULT_TABLE) -> Optional[Row]:
        for row in self.all(table):
            return row
        return None

    def info(self) -> dict[str, Any]:
        return {
            "driver": self.driver_name,
            "tables": {table: self.count(table) for table in self.get_tables()},
        }

    def close(self) -> None:
        """Release backend resources. Safe to call more than once."""
        pass

    def _check_columns(self, table: str, existing: list[str], columns: list[str]) -> None:
        if list(existing) != list(columns):
            raise StagingError(
                f"Table '{table}' already exists with columns {existing}; "
                f"destroy it before creating it with {list(columns)}"
            )

    @staticmethod
    def _validate_columns(columns: list[str], table: str) -> list[str]:
        columns = [str(c) for c in columns]
        if not columns:
            raise StagingError(f"Table '{table}' needs at least one column")
        if len(set(columns)) != len(columns):
            raise StagingError(f"Table '{table}' has duplicate column names: {columns}")
        return columns

    @staticmethod
    def _normalise_row(row: dict[str, Any], headers: list[str], table: str) -> Row:
        unknown = [key for key in row if key not in headers]
        if unknown:
            raise StagingError(f"Unknown columns for table '{table}': {unknown}")
        return {column: to_text(row.get(column)) for column in headers}
