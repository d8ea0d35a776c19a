"""Exception hierarchy for the importer."""

from __future__ import annotations

from typing import Optional


class ImporterError(Exception):
    """Base class for all importer errors."""

    pass


class StateTransitionError(ImporterError):
    """Illegal state transition for the current driver."""

    def __init__(self, from_state: str, to_state: str, driver: str = "") -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.driver = driver
        suffix = f" (driver: {driver})" if driver else ""
        super().__init__(f"Invalid transition: {from_state} -> {to_state}{suffix}")


class NoPreferredTransitionError(ImporterError):
    """A state asked to advance but its driver declares no preferred edge."""

    def __init__(self, state: str, driver: str = "") -> None:
        self.state = state
        self.driver = driver
        super().__init__(f"No preferred transition declared from state '{state}'")


class DriverConfigError(ImporterError):
    """Transition table is inconsistent or was modified after validation."""

    pass


class UnknownStateError(ImporterError):
    """State tag is not registered for the driver."""

    pass


class UnknownDriverError(ImporterError):
    """Driver tag is not registered."""

    pass


class RecordNotFoundError(ImporterError):
    """Import record does not exist in the record store."""

    pass


class ConfigurationRequiredError(ImporterError):
    """State was executed while it still needs external input."""

    def __init__(self, state: str, missing: str = "") -> None:
        self.state = state
        self.missing = missing
        detail = f": {missing}" if missing else ""
        super().__init__(f"State '{state}' needs configuration before it can run{detail}")


class SourceError(ImporterError):
    """Source could not be resolved or read."""

    pass


class UnsupportedSourceError(SourceError):
    """Source type has no registered handler."""

    def __init__(self, source_type: str, available: Optional[list[str]] = None) -> None:
        self.source_type = source_type
        message = f"Unsupported source type: {source_type}"
        if available:
            message += f". Available: {', '.join(available)}"
        super().__init__(message)


class SourceNotFoundError(SourceError):
    """Source target is missing or unreachable."""

    def __init__(self, source_detail: str, reason: str = "") -> None:
        self.source_detail = source_detail
        self.reason = reason
        message = f"Source not found: {source_detail}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class ParsingError(ImporterError):
    """Structural parse failure, fatal for the extraction."""

    pass


class RowValidationError(ParsingError):
    """A data row failed validation and invalid rows are not skipped."""

    def __init__(self, line: int, messages: list[str]) -> None:
        self.line = line
        self.messages = list(messages)
        super().__init__(f"Row {line} is invalid: {'; '.join(self.messages)}")


class ValidationRuleError(ParsingError):
    """A column's validation rules name an unknown rule or carry a bad parameter."""

    pass


class MemoryLimitExceededError(ImporterError):
    """Resident memory stayed above the hard ceiling after a forced collection."""

    def __init__(self, usage: int, limit: int) -> None:
        self.usage = usage
        self.limit = limit
        super().__init__(
            f"Memory usage {usage / 1048576:.1f}MB exceeds "
            f"{usage / limit:.0%} of the {limit / 1048576:.1f}MB limit"
        )


class StagingError(ImporterError):
    """Staging store misuse or backend failure."""

    pass


class QueueError(ImporterError):
    """Queue backend failure or unsupported queue operation."""

    pass


class JobTimeoutError(ImporterError):
    """Background job exceeded its wall-clock timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Job exceeded its timeout of {timeout:.0f} seconds")


# Runtime data problems that an extraction translates into a failed import.
EXTRACTION_ERRORS: tuple[type[Exception], ...] = (
    SourceError,
    ParsingError,
    MemoryLimitExceededError,
    StagingError,
    JobTimeoutError,
    OSError,
)
