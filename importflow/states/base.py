"""State base class."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from importflow.errors import NoPreferredTransitionError
from importflow.processor.driver_config import StateRef
from importflow.records.models import ImportRecord
from importflow.utils.logging import get_logger

if TYPE_CHECKING:
    from importflow.processor.machine import StateMachine
    from importflow.processor.services import ImportServices

FAILED = "failed"


class State:
    """
    One step of an import.

    ``execute()`` performs a bounded amount of work and returns False only
    on a hard failure. A State that is waiting for something outside the
    process (a queue worker, user configuration) returns True without
    transitioning and is executed again on the next poll.
    """

    name: str = ""
    prompt: Optional[str] = None
    terminal: bool = False

    def __init__(
        self,
        record: ImportRecord,
        machine: "StateMachine",
        services: Optional["ImportServices"] = None,
    ) -> None:
        self.record = record
        self.machine = machine
        self.services = services
        self.logger = get_logger(f"states.{self.name or 'base'}")

    def execute(self) -> bool:
        return self.transition_to_next_state()

    def needs_configuration(self) -> bool:
        return False

    def should_continue_polling(self) -> bool:
        """Whether the runner should execute this state again."""
        return not self.terminal and self.machine.current_state == self.name

    def save(self) -> None:
        self.services.records.save(self.record)

    def persist_metadata(self, **values: Any) -> None:
        """
        Store only the given metadata keys, then reload the record.

        Used while a background job may be writing the same record; a full
        ``save`` would overwrite the job's keys with this state's snapshot.
        """
        fresh = self.services.records.merge_metadata(self.record.id, **values)
        self.record.copy_from(fresh)

    def transition_to(self, next_state: StateRef) -> bool:
        """Take an explicit edge and persist the new state with the record."""
        self.record.state = self.machine.transition_to(next_state)
        self.save()
        return True

    def transition_to_next_state(self) -> bool:
        """
        Follow the driver's preferred edge out of this state.

        Raises:
            NoPreferredTransitionError: If the driver declares none
        """
        target = self.machine.config.get_preferred_transition(self.name)
        if target is None:
            raise NoPreferredTransitionError(self.name, self.machine.driver.name)
        return self.transition_to(target)

    def fail(self, message: str, **metadata: Any) -> bool:
        """
        Record a failure and move to the failed state.

        Returns:
            False, so callers can ``return self.fail(...)``
        """
        self.record.mark_failed(message)
        if metadata:
            self.record.update_metadata(metadata)
        self.logger.error(
            "import_failed",
            import_id=self.record.id,
            state=self.name,
            error=message,
        )
        if self.machine.current_state != FAILED:
            self.record.state = self.machine.transition_to(FAILED)
        else:
            self.record.state = FAILED
        self.save()
        return False
