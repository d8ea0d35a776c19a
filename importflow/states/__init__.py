"""State objects executed by the state machine.

Each import walks its driver's graph one ``execute()`` at a time:

    pending -> [configure_headers] -> create_storage -> extract -> analyzing -> completed

Every non-terminal state can also move to ``failed``. The ``auto`` driver
starts at ``detect_driver`` and hands the import to a concrete driver.
"""

from importflow.states.base import State
from importflow.states.csv_headers import ConfigureHeadersState
from importflow.states.detect import DetectDriverState
from importflow.states.extract import ExtractState
from importflow.states.shared import (
    AnalyzingState,
    CompletedState,
    CreateStorageState,
    FailedState,
    PendingState,
)

__all__ = [
    "State",
    "PendingState",
    "DetectDriverState",
    "ConfigureHeadersState",
    "CreateStorageState",
    "ExtractState",
    "AnalyzingState",
    "CompletedState",
    "FailedState",
]
