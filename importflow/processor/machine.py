"""State machine bound to one import record and its driver."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional

from importflow.errors import StateTransitionError, UnknownStateError
from importflow.processor.driver_config import DriverConfig, StateRef, state_tag
from importflow.records.models import ImportRecord
from importflow.utils.logging import get_logger
from importflow.utils.timeutil import to_iso, utcnow

if TYPE_CHECKING:
    from importflow.drivers.base import Driver
    from importflow.processor.services import ImportServices
    from importflow.states.base import State

logger = get_logger("processor.machine")


class StateMachine:
    """
    Holds the current state of an import.

    The driver's ``DriverConfig`` decides which edges are legal; this class
    records which ones were taken. Persisting ``record.state`` is left to the
    caller so it can be saved together with the metadata of the same step.
    """

    def __init__(
        self,
        record: ImportRecord,
        driver: "Driver",
        services: Optional["ImportServices"] = None,
    ) -> None:
        """
        Initialize the machine.

        Args:
            record: Import record the machine drives
            driver: Driver declaring the state graph
            services: Collaborators handed to State objects

        Raises:
            UnknownStateError: If the stored state is not part of the driver
        """
        self.record = record
        self.driver = driver
        self.services = services
        self.config: DriverConfig = driver.config()
        self.history: list[tuple[str, str, str]] = []

        stored = record.state
        if stored and stored not in self.config.states():
            raise UnknownStateError(
                f"State '{stored}' is not declared by driver '{driver.name}'"
            )
        self.current_state: str = stored or self.config.default_state

    def get_current_state(self) -> "State":
        """Instantiate a fresh State object for the current tag."""
        state_class = self.driver.state_class(self.current_state)
        return state_class(self.record, self, self.services)

    def can_transition_to(self, next_state: StateRef) -> bool:
        return self.config.is_transition_allowed(self.current_state, next_state)

    def transition_to(self, next_state: StateRef) -> str:
        """
        Move to ``next_state`` if the driver allows the edge.

        Returns:
            The new state tag

        Raises:
            StateTransitionError: If the edge is not allowed
        """
        target = state_tag(next_state)
        if not self.can_transition_to(target):
            raise StateTransitionError(self.current_state, target, self.driver.name)

        previous = self.current_state
        self.history.append((previous, target, to_iso(utcnow())))
        self.current_state = target

        logger.info(
            "state_transition",
            import_id=self.record.id,
            driver=self.driver.name,
            from_state=previous,
            to_state=target,
        )
        return target

    def clear_state_machine(self) -> str:
        """Reset to the driver's default state."""
        previous = self.current_state
        self.current_state = self.config.default_state
        self.history.clear()
        logger.info(
            "state_machine_cleared",
            import_id=self.record.id,
            driver=self.driver.name,
            from_state=previous,
            to_state=self.current_state,
        )
        return self.current_state

    def is_terminal(self) -> bool:
        return self.driver.state_class(self.current_state).terminal

    def describe(self) -> dict[str, Any]:
        return {
            "driver": self.driver.name,
            "state": self.current_state,
            "allowed": sorted(self.config.allowed_from(self.current_state)),
            "preferred": self.config.get_preferred_transition(self.current_state),
            "terminal": self.is_terminal(),
        }
