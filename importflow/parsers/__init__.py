"""Streaming parsers that move source rows into staging in bounded batches."""

from importflow.parsers.base import ParseStats, StreamingParser
from importflow.parsers.csv_parser import CsvOptions, CsvStreamParser
from importflow.parsers.memory import MemoryGovernor, current_rss, suggest_batch_size
from importflow.parsers.validation import RowValidator, parse_rules
from importflow.parsers.wordpress import (
    TABLE_SCHEMAS as WORDPRESS_TABLES,
    WordPressOptions,
    WordPressXmlStreamParser,
)

__all__ = [
    "ParseStats",
    "StreamingParser",
    "CsvOptions",
    "CsvStreamParser",
    "WordPressOptions",
    "WordPressXmlStreamParser",
    "WORDPRESS_TABLES",
    "MemoryGovernor",
    "current_rss",
    "suggest_batch_size",
    "RowValidator",
    "parse_rules",
]
