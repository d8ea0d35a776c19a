"""Streaming CSV parser."""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from importflow.errors import ParsingError, RowValidationError
from importflow.parsers.base import ParseStats, StreamingParser
from importflow.parsers.validation import RowValidator
from importflow.records.models import ImportRecord
from importflow.sources.resolver import SourceResolver
from importflow.staging.base import DEFAULT_TABLE, StagingStore

# Raise the csv module's per-field ceiling; WordPress-style exports embed HTML
csv.field_size_limit(2**31 - 1)


def normalise_headers(raw: list[str]) -> list[str]:
    """
    Trim header names, name blanks ``column_N`` and de-duplicate.

    ``["id", "", "id"]`` becomes ``["id", "column_2", "id_2"]``.
    """
    headers: list[str] = []
    seen: dict[str, int] = {}
    for index, name in enumerate(raw, start=1):
        name = (name or "").strip() or f"column_{index}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        seen.setdefault(name, 1)
        headers.append(name)
    return headers


def generated_headers(count: int) -> list[str]:
    return [f"column_{i}" for i in range(1, count + 1)]


def count_data_lines(path: Path, encoding: str = "utf-8-sig") -> int:
    """Count non-blank physical lines without parsing them."""
    total = 0
    with open(path, encoding=encoding, errors="replace", newline="") as f:
        for line in f:
            if line.strip():
                total += 1
    return total


@dataclass
class CsvOptions:
    """CSV dialect and row policy, read from the import's metadata."""

    delimiter: str = ","
    quotechar: str = '"'
    escapechar: Optional[str] = None
    encoding: str = "utf-8-sig"
    headers: list[str] = field(default_factory=list)
    headers_first_row: Optional[bool] = None
    target_table: str = DEFAULT_TABLE
    validation_rules: dict[str, Any] = field(default_factory=dict)
    skip_invalid_rows: bool = False
    max_errors: int = 1000

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any], max_errors: int = 1000) -> "CsvOptions":
        delimiter = metadata.get("delimiter") or ","
        if delimiter in ("\\t", "tab"):
            delimiter = "\t"
        headers_first_row = metadata.get("headers_first_row")
        return cls(
            delimiter=delimiter,
            quotechar=metadata.get("enclosure") or '"',
            escapechar=metadata.get("escape") or None,
            encoding=metadata.get("encoding") or "utf-8-sig",
            headers=list(metadata.get("headers") or []),
            headers_first_row=None if headers_first_row is None else bool(headers_first_row),
            target_table=metadata.get("target_table") or DEFAULT_TABLE,
            validation_rules=dict(metadata.get("validation_rules") or {}),
            skip_invalid_rows=bool(metadata.get("skip_invalid_rows", False)),
            max_errors=int(metadata.get("max_errors", max_errors)),
        )

    def reader(self, handle) -> Iterator[list[str]]:
        return csv.reader(
            handle,
            delimiter=self.delimiter,
            quotechar=self.quotechar,
            escapechar=self.escapechar,
        )


def read_first_row(path: Path, options: CsvOptions) -> list[str]:
    """Return the first non-blank row of a CSV file."""
    with open(path, encoding=options.encoding, errors="replace", newline="") as f:
        try:
            for row in options.reader(f):
                if any(cell.strip() for cell in row):
                    return row
        except csv.Error as e:
            raise ParsingError(f"Malformed CSV in first row: {e}") from e
    return []


class CsvStreamParser(StreamingParser):
    """
    Reads CSV one record at a time into a single staging table.

    Rows are trimmed and padded or truncated to the header count, with a
    warning for each truncated row. A row failing the configured rules is
    fatal unless ``skip_invalid_rows`` is set; skipped rows are counted and
    parsing aborts once ``max_errors`` of them accumulate.
    """

    format_name = "csv"

    def __init__(self, options: CsvOptions, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.options = options
        self.validator = RowValidator(options.validation_rules)

    def parse(
        self,
        record: ImportRecord,
        staging: StagingStore,
        resolver: SourceResolver,
    ) -> ParseStats:
        path = resolver.resolve(record.source_type, record.source_detail)
        total = count_data_lines(path, self.options.encoding) if self.estimate_total else None
        self._begin(staging, total)
        self.stats.bytes_processed = path.stat().st_size

        self.logger.info(
            "parse_started",
            import_id=record.id,
            path=str(path),
            delimiter=self.options.delimiter,
            headers_first_row=self.options.headers_first_row,
        )

        table = self.options.target_table
        headers: Optional[list[str]] = None

        with open(path, encoding=self.options.encoding, errors="replace", newline="") as f:
            reader = self.options.reader(f)
            try:
                for raw in reader:
                    if not any(cell.strip() for cell in raw):
                        continue

                    if headers is None:
                        headers = self._resolve_headers(raw)
                        staging.create(headers, table)
                        if self._total is not None and self.options.headers_first_row:
                            self._total = max(0, self._total - 1)
                        if self.options.headers_first_row:
                            continue

                    self._advance()
                    self._handle_row(raw, headers, reader.line_num, table)
            except csv.Error as e:
                raise ParsingError(f"Malformed CSV near line {reader.line_num}: {e}") from e

        if headers is None:
            # Empty file: still declare the table when headers are known
            if self.options.headers:
                staging.create(normalise_headers(self.options.headers), table)
            self.stats.add_warning("Source contains no rows")

        return self._finish()

    def _resolve_headers(self, first_row: list[str]) -> list[str]:
        if self.options.headers:
            return normalise_headers(self.options.headers)
        if self.options.headers_first_row:
            return normalise_headers(first_row)
        return generated_headers(len(first_row))

    def _handle_row(self, raw: list[str], headers: list[str], line: int, table: str) -> None:
        cells = [cell.strip() for cell in raw]

        if len(cells) > len(headers):
            self.stats.add_warning(
                f"Row {line}: {len(cells) - len(headers)} extra cell(s) dropped"
            )
            cells = cells[:len(headers)]
        elif len(cells) < len(headers):
            cells.extend([""] * (len(headers) - len(cells)))

        row = dict(zip(headers, cells))
        problems = self.validator.validate(row) if self.validator else []

        if problems:
            if not self.options.skip_invalid_rows:
                raise RowValidationError(line, problems)
            self.stats.failed += 1
            self.stats.skipped += 1
            message = f"Row {line}: {'; '.join(problems)}"
            self.stats.add_error(message)
            self.stats.add_warning(message)
            if self.stats.failed >= self.options.max_errors:
                raise ParsingError(
                    f"Too many invalid rows: {self.stats.failed} reached the limit of {self.options.max_errors}"
                )
            return

        self.stats.rows += 1
        self._emit(table, row)
