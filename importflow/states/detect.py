"""Driver auto-detection."""

from __future__ import annotations

from importflow.errors import SourceError
from importflow.processor.machine import StateMachine
from importflow.states.base import State


class DetectDriverState(State):
    """
    Hand the import over to the most specific driver that accepts its source.

    The record keeps its id and metadata; only the driver and the state
    machine change, restarting from the new driver's default state.
    """

    name = "detect_driver"

    def execute(self) -> bool:
        from importflow.drivers import detect_driver

        resolver = self.services.resolver
        try:
            driver = detect_driver(self.record, resolver)
        except (SourceError, OSError) as e:
            return self.fail(f"Could not read source for driver detection: {e}")

        if driver is None:
            return self.fail(
                f"No driver can handle source '{self.record.source_detail}'",
                detection_failed=True,
            )

        previous = self.record.driver
        self.record.driver = driver.name
        self.record.state = None
        machine = StateMachine(self.record, driver, self.services)
        self.record.state = machine.clear_state_machine()

        path = resolver.resolve(self.record.source_type, self.record.source_detail)
        for key, value in driver.default_metadata(path).items():
            self.record.metadata.setdefault(key, value)
        self.record.update_metadata(detected_driver=driver.name)
        self.save()

        self.logger.info(
            "driver_detected",
            import_id=self.record.id,
            previous_driver=previous,
            driver=driver.name,
            state=self.record.state,
        )
        return True
