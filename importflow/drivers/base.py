"""Abstract base class for import drivers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from importflow.config.settings import ParserConfig
from importflow.errors import UnknownStateError
from importflow.parsers.base import StreamingParser
from importflow.processor.driver_config import DriverConfig
from importflow.records.models import ImportRecord
from importflow.sources.resolver import SourceResolver
from importflow.states.base import State
from importflow.utils.logging import get_logger


class Driver(ABC):
    """
    Abstract base class for import drivers.

    A driver names the states an import of its format walks through, the
    legal edges between them, and the parser that fills staging.
    """

    label: str = ""
    priority: int = 0

    def __init__(self) -> None:
        self._config: Optional[DriverConfig] = None
        self.logger = get_logger(f"drivers.{self.name}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Type tag stored on the import record."""
        ...

    @property
    @abstractmethod
    def states(self) -> dict[str, type[State]]:
        """State classes by tag."""
        ...

    @abstractmethod
    def build_config(self) -> DriverConfig:
        """Declare the transition table; validated by ``config()``."""
        ...

    def config(self) -> DriverConfig:
        """
        Return the validated transition table.

        Raises:
            DriverConfigError: If the table is inconsistent
        """
        if self._config is None:
            self._config = self.build_config().validate()
        return self._config

    def state_class(self, tag: str) -> type[State]:
        if tag not in self.states:
            raise UnknownStateError(f"Driver '{self.name}' has no state '{tag}'")
        return self.states[tag]

    def accepts(self, path: Path) -> bool:
        """Whether a resolved source looks like this driver's format."""
        return False

    def can_handle(self, record: ImportRecord, resolver: SourceResolver) -> bool:
        """
        Check a record's source against this driver.

        Raises:
            SourceError: If the source cannot be resolved
        """
        return self.accepts(resolver.resolve(record.source_type, record.source_detail))

    def default_metadata(self, path: Path) -> dict[str, Any]:
        """Metadata seeded on records this driver takes over."""
        return {}

    @abstractmethod
    def create_parser(
        self,
        record: ImportRecord,
        settings: ParserConfig,
        **kwargs: Any,
    ) -> StreamingParser:
        """
        Build the parser that stages this record's source.

        Raises:
            DriverConfigError: If the driver never extracts data itself
        """
        ...

    def tables(self, record: ImportRecord) -> dict[str, list[str]]:
        """Staging tables known before extraction, by name."""
        return {}

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "label": self.label,
            "priority": self.priority,
            "states": sorted(self.states),
            "transitions": self.config().to_dict(),
        }


def failure_edges(config: DriverConfig, states: list[str], failed: str = "failed") -> DriverConfig:
    """Allow every listed state to move to the failed state."""
    for state in states:
        config.allow_transition(state, failed)
    return config
