"""WordPress WXR import driver."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from importflow.config.settings import ParserConfig
from importflow.drivers.base import Driver, failure_edges
from importflow.parsers.wordpress import TABLE_SCHEMAS, WordPressOptions, WordPressXmlStreamParser
from importflow.processor.driver_config import DriverConfig
from importflow.records.models import ImportRecord
from importflow.states import (
    AnalyzingState,
    CompletedState,
    CreateStorageState,
    ExtractState,
    FailedState,
    PendingState,
)

# WXR files declare this namespace near the top of the document
WXR_MARKER = b"wordpress.org/export"
SNIFF_BYTES = 4096

HAPPY_PATH = [
    PendingState,
    CreateStorageState,
    ExtractState,
    AnalyzingState,
    CompletedState,
]


class WordPressDriver(Driver):
    """WordPress export files into posts, meta, comments, terms and users."""

    label = "WordPress export (WXR)"
    priority = 20

    @property
    def name(self) -> str:
        return "wordpress_xml"

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
        if path.suffix.lower() != ".xml":
            return False
        with open(path, "rb") as f:
            return WXR_MARKER in f.read(SNIFF_BYTES)

    def create_parser(
        self,
        record: ImportRecord,
        settings: ParserConfig,
        **kwargs: Any,
    ) -> WordPressXmlStreamParser:
        kwargs.setdefault("memory_check_interval", settings.memory_check_interval)
        kwargs.setdefault("estimate_total", settings.estimate_total)
        return WordPressXmlStreamParser(WordPressOptions.from_metadata(record.metadata), **kwargs)

    def tables(self, record: ImportRecord) -> dict[str, list[str]]:
        return {name: list(columns) for name, columns in TABLE_SCHEMAS.items()}
