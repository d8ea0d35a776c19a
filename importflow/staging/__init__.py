"""Staging storage backends."""

from importflow.staging.base import DEFAULT_TABLE, StagingStore, to_text
from importflow.staging.memory import InMemoryStagingStore
from importflow.staging.sqlite import SqliteStagingStore

__all__ = [
    "DEFAULT_TABLE",
    "StagingStore",
    "InMemoryStagingStore",
    "SqliteStagingStore",
    "to_text",
]
