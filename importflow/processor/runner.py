"""Outer polling loop that drives an import's state machine."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from importflow.drivers import get_driver
from importflow.processor.machine import StateMachine
from importflow.utils.deadline import Deadline
from importflow.utils.logging import clear_import_context, get_logger, set_import_context

if TYPE_CHECKING:
    from importflow.processor.services import ImportServices

logger = get_logger("processor.runner")

# Run outcomes
COMPLETED = "completed"
FAILED = "failed"
NEEDS_CONFIGURATION = "needs_configuration"
WAITING = "waiting"
MAX_STEPS = "max_steps"
TIMEOUT = "timeout"
CANCELLED = "cancelled"


@dataclass
class StepResult:
    """Outcome of executing the current state once."""

    import_id: str
    driver: str
    state_before: str
    state_after: str
    ok: bool
    terminal: bool
    needs_configuration: bool = False
    prompt: Optional[str] = None
    driver_changed: bool = False

    @property
    def advanced(self) -> bool:
        return self.state_before != self.state_after or self.driver_changed

    def to_dict(self) -> dict[str, Any]:
        return {
            "import_id": self.import_id,
            "driver": self.driver,
            "state_before": self.state_before,
            "state_after": self.state_after,
            "ok": self.ok,
            "terminal": self.terminal,
            "needs_configuration": self.needs_configuration,
            "driver_changed": self.driver_changed,
            "prompt": self.prompt,
        }


@dataclass
class RunReport:
    """Summary of one runner invocation."""

    import_id: str
    outcome: str = WAITING
    steps: int = 0
    final_state: Optional[str] = None
    driver: Optional[str] = None
    error_message: Optional[str] = None
    prompt: Optional[str] = None
    path: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "import_id": self.import_id,
            "outcome": self.outcome,
            "steps": self.steps,
            "final_state": self.final_state,
            "driver": self.driver,
            "error_message": self.error_message,
            "prompt": self.prompt,
            "path": self.path,
        }


class StateMachineRunner:
    """
    Re-invokes ``execute()`` until the import stops making progress.

    Nothing inside a State blocks; a state that is waiting (for workers or
    a background job) returns True without moving, and the runner sleeps
    for ``poll_interval`` before asking again. The machine is rebuilt from
    the persisted record before every step, so a driver change made by
    detection or an update written by a worker is always observed.
    """

    def __init__(
        self,
        services: "ImportServices",
        poll_interval: Optional[float] = None,
        max_steps: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """
        Initialize the runner.

        Args:
            services: Service container
            poll_interval: Seconds to wait when a step did not change state
            max_steps: Upper bound on executed steps
            timeout: Wall-clock budget in seconds (None for no limit)
            cancel: Set from another thread to stop between steps
        """
        runner_config = services.settings.runner
        self.services = services
        self.poll_interval = runner_config.poll_interval if poll_interval is None else poll_interval
        self.max_steps = runner_config.max_steps if max_steps is None else max_steps
        self.timeout = runner_config.timeout if timeout is None else timeout
        self.cancel = cancel or threading.Event()

    def machine_for(self, import_id: str) -> StateMachine:
        record = self.services.records.get(import_id)
        return StateMachine(record, get_driver(record.driver), self.services)

    def step(self, import_id: str) -> StepResult:
        """
        Execute the current state once.

        Raises:
            ConfigurationRequiredError: If the state is waiting on user input
            StateTransitionError: If a state requested an illegal edge
        """
        machine = self.machine_for(import_id)
        record = machine.record
        before = machine.current_state
        set_import_context(import_id, before)
        try:
            state = machine.get_current_state()
            if state.needs_configuration():
                return StepResult(
                    import_id=import_id,
                    driver=record.driver,
                    state_before=before,
                    state_after=before,
                    ok=True,
                    terminal=False,
                    needs_configuration=True,
                    prompt=state.prompt,
                )

            driver_before = record.driver
            ok = state.execute()
            after = record.state or machine.current_state
            return StepResult(
                import_id=import_id,
                driver=record.driver,
                state_before=before,
                state_after=after,
                ok=ok,
                terminal=get_driver(record.driver).state_class(after).terminal,
                prompt=state.prompt,
                driver_changed=record.driver != driver_before,
            )
        finally:
            clear_import_context()

    def run(self, import_id: str) -> RunReport:
        """Drive an import until it finishes, stalls on input, or a limit is hit."""
        report = RunReport(import_id=import_id)
        deadline = Deadline(self.timeout)
        logger.info(
            "run_started",
            import_id=import_id,
            max_steps=self.max_steps,
            timeout=self.timeout,
        )

        last: Optional[StepResult] = None
        while True:
            if self.cancel.is_set():
                report.outcome = CANCELLED
                break
            if deadline.expired():
                report.outcome = TIMEOUT
                break
            if report.steps >= self.max_steps:
                # Out of steps while polling a waiting state
                report.outcome = WAITING if last is not None and not last.advanced else MAX_STEPS
                break

            result = last = self.step(import_id)
            if not result.needs_configuration:
                report.steps += 1
            if not report.path or report.path[-1] != result.state_before:
                report.path.append(result.state_before)
            if result.advanced:
                report.path.append(result.state_after)

            if result.needs_configuration:
                report.outcome = NEEDS_CONFIGURATION
                report.prompt = result.prompt
                break
            if not result.ok:
                report.outcome = FAILED
                break
            if result.terminal and not result.advanced:
                report.outcome = COMPLETED
                break

            if not result.advanced:
                remaining = deadline.remaining()
                wait = self.poll_interval if remaining is None else min(self.poll_interval, remaining)
                if self.cancel.wait(max(0.0, wait)):
                    report.outcome = CANCELLED
                    break

        record = self.services.records.get(import_id)
        report.final_state = record.state
        report.driver = record.driver
        report.error_message = record.error_message
        logger.info(
            "run_finished",
            import_id=import_id,
            outcome=report.outcome,
            steps=report.steps,
            final_state=report.final_state,
        )
        return report
