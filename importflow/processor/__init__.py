"""State machine core: transition tables, the machine and extraction context."""

from importflow.processor.context import ExtractionProgress, ExtractionStatus, StorageInfo
from importflow.processor.driver_config import DriverConfig, state_tag
from importflow.processor.machine import StateMachine

__all__ = [
    "DriverConfig",
    "state_tag",
    "StateMachine",
    "ExtractionProgress",
    "ExtractionStatus",
    "StorageInfo",
]
