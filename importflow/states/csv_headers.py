"""CSV header configuration."""

from __future__ import annotations

from importflow.errors import ConfigurationRequiredError, ParsingError, SourceError
from importflow.parsers.csv_parser import CsvOptions, normalise_headers, read_first_row
from importflow.states.base import State


class ConfigureHeadersState(State):
    """
    Wait until the user has said where the CSV headers come from.

    Either an explicit ``headers`` list or a boolean ``headers_first_row``
    satisfies it. With ``headers_first_row`` set and no explicit list, the
    headers are read from the source so later states can show them.
    """

    name = "configure_headers"
    prompt = "importer.csv.headers"

    def needs_configuration(self) -> bool:
        if self.record.get_meta("headers"):
            return False
        return not isinstance(self.record.get_meta("headers_first_row"), bool)

    def execute(self) -> bool:
        if self.needs_configuration():
            raise ConfigurationRequiredError(self.name, "headers or headers_first_row")

        if not self.record.get_meta("headers") and self.record.get_meta("headers_first_row"):
            options = CsvOptions.from_metadata(self.record.metadata)
            try:
                path = self.services.resolver.resolve(
                    self.record.source_type, self.record.source_detail
                )
                first_row = read_first_row(path, options)
            except (SourceError, ParsingError, OSError) as e:
                return self.fail(f"Could not read CSV headers: {e}")
            if not first_row:
                return self.fail("CSV source is empty; no header row to read")
            self.record.update_metadata(headers=normalise_headers(first_row))

        return self.transition_to_next_state()
