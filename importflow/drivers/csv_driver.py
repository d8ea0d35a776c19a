"""CSV import driver."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from importflow.config.settings import ParserConfig
from importflow.drivers.base import Driver, failure_edges
from importflow.parsers.csv_parser import CsvOptions, CsvStreamParser, normalise_headers
from importflow.processor.driver_config import DriverConfig
from importflow.records.models import ImportRecord
from importflow.states import (
    AnalyzingState,
    CompletedState,
    ConfigureHeadersState,
    CreateStorageState,
    ExtractState,
    FailedState,
    PendingState,
)
from importflow.staging.base import DEFAULT_TABLE

CSV_SUFFIXES = (".csv", ".tsv", ".txt")

HAPPY_PATH = [
    PendingState,
    ConfigureHeadersState,
    CreateStorageState,
    ExtractState,
    AnalyzingState,
    CompletedState,
]


class CsvDriver(Driver):
    """Delimited text files into a single ``data`` table."""

    label = "CSV file"
    priority = 10

    @property
    def name(self) -> str:
        return "csv"

    @property
    def states(self):
        return {cls.name: cls for cls in (*HAPPY_PATH, FailedState)}

    def build_config(self) -> DriverConfig:
        config = DriverConfig().default(PendingState)
        for current, following in zip(HAPPY_PATH, HAPPY_PATH[1:]):
            config.allow_transition(current, following)
            config.preferred_transition(current, following)
        return failure_edges(config, [cls.name for cls in HAPPY_PATH[:-1]])

    def accepts(self, path: Path) -> bool:
        return path.suffix.lower() in CSV_SUFFIXES

    def default_metadata(self, path: Path) -> dict[str, Any]:
        if path.suffix.lower() == ".tsv":
            return {"delimiter": "\t"}
        return {}

    def create_parser(
        self,
        record: ImportRecord,
        settings: ParserConfig,
        **kwargs: Any,
    ) -> CsvStreamParser:
        kwargs.setdefault("memory_check_interval", settings.memory_check_interval)
        kwargs.setdefault("estimate_total", settings.estimate_total)
        options = CsvOptions.from_metadata(record.metadata, max_errors=settings.max_errors)
        return CsvStreamParser(options, **kwargs)

    def tables(self, record: ImportRecord) -> dict[str, list[str]]:
        headers = record.get_meta("headers")
        if not headers:
            return {}
        table = record.get_meta("target_table") or DEFAULT_TABLE
        return {table: normalise_headers(list(headers))}
