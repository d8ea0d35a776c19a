"""Driver that picks the real driver from the source."""

from __future__ import annotations

from typing import Any

from importflow.config.settings import ParserConfig
from importflow.drivers.base import Driver
from importflow.errors import DriverConfigError
from importflow.parsers.base import StreamingParser
from importflow.processor.driver_config import DriverConfig
from importflow.records.models import ImportRecord
from importflow.states import DetectDriverState, FailedState, PendingState


class AutoDriver(Driver):
    label = "Detect from source"
    priority = 0

    @property
    def name(self) -> str:
        return "auto"

    @property
    def states(self):
        return {cls.name: cls for cls in (PendingState, DetectDriverState, FailedState)}

    def build_config(self) -> DriverConfig:
        return (
            DriverConfig()
            .default(PendingState)
            .allow_transition(PendingState, DetectDriverState)
            .preferred_transition(PendingState, DetectDriverState)
            .allow_transition(PendingState, FailedState)
            .allow_transition(DetectDriverState, FailedState)
        )

    def create_parser(
        self,
        record: ImportRecord,
        settings: ParserConfig,
        **kwargs: Any,
    ) -> StreamingParser:
        # Detection swaps the record to a concrete driver before extraction
        raise DriverConfigError(
            f"Import {record.id} has not been assigned a concrete driver yet"
        )
