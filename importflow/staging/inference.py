"""Column type inference over staged text values."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Iterable, Optional

from importflow.staging.base import DEFAULT_TABLE, StagingStore

_INTEGER = re.compile(r"^[+-]?\d+$")
_FLOAT = re.compile(r"^[+-]?(\d+\.\d*|\.\d+|\d+)([eE][+-]?\d+)?$")
_BOOLEAN = {"true", "false", "yes", "no"}


def infer_value_type(value: Optional[str]) -> str:
    if value is None or value.strip() == "":
        return "empty"
    text = value.strip()
    if _INTEGER.match(text):
        return "integer"
    if _FLOAT.match(text):
        return "float"
    if text.lower() in _BOOLEAN:
        return "boolean"
    try:
        datetime.fromisoformat(text)
        return "datetime"
    except ValueError:
        return "string"


def merge_types(types: Iterable[str]) -> str:
    """Collapse per-value types into one column type."""
    seen = {t for t in types if t != "empty"}
    if not seen:
        return "empty"
    if len(seen) == 1:
        return seen.pop()
    if seen <= {"integer", "float"}:
        return "float"
    return "string"


def infer_table_types(
    store: StagingStore,
    table: str = DEFAULT_TABLE,
    sample_rows: int = 1000,
    page_size: int = 500,
) -> dict[str, str]:
    """Infer a type per column from the first ``sample_rows`` staged rows."""
    headers = store.get_headers(table)
    seen: dict[str, set[str]] = {column: set() for column in headers}
    sampled = 0

    def consume(rows: list[dict]) -> bool:
        nonlocal sampled
        for row in rows:
            if sampled >= sample_rows:
                return False
            for column in headers:
                seen[column].add(infer_value_type(row.get(column)))
            sampled += 1
        return sampled < sample_rows

    store.chunk(min(page_size, max(sample_rows, 1)), consume, table)
    return {column: merge_types(types) for column, types in seen.items()}
