"""
Unit tests for the memory governor and row validation rules.
"""

from unittest.mock import Mock

import pytest

from importflow.config.settings import ParserConfig
from importflow.errors import MemoryLimitExceededError, ValidationRuleError
from importflow.parsers.memory import MemoryGovernor, current_rss, suggest_batch_size
from importflow.parsers.validation import RowValidator, parse_rules

MB = 1024 * 1024


class TestMemoryGovernor:
    """Tests for the escalating memory policy."""

    def make_governor(self, readings, limit=100 * MB):
        probe = Mock(side_effect=list(readings))
        collector = Mock()
        governor = MemoryGovernor(
            limit,
            warning_ratio=0.70,
            critical_ratio=0.85,
            abort_ratio=0.80,
            probe=probe,
            collector=collector,
        )
        return governor, probe, collector

    def test_below_warning_does_nothing(self):
        governor, _, collector = self.make_governor([50 * MB])

        assert governor() == 50 * MB
        assert governor.warnings == 0
        collector.assert_not_called()

    def test_warning_band_counts_warning(self):
        governor, _, collector = self.make_governor([75 * MB])

        governor()

        assert governor.warnings == 1
        collector.assert_not_called()

    def test_critical_forces_collection_and_recovers(self):
        governor, probe, collector = self.make_governor([90 * MB, 60 * MB])

        assert governor() == 60 * MB
        collector.assert_called_once()
        assert probe.call_count == 2
        assert governor.peak == 90 * MB

    def test_critical_aborts_when_collection_does_not_help(self):
        governor, _, _ = self.make_governor([90 * MB, 82 * MB])

        with pytest.raises(MemoryLimitExceededError) as exc_info:
            governor()

        assert exc_info.value.usage == 82 * MB
        assert exc_info.value.limit == 100 * MB

    def test_unlimited_only_tracks_peak(self):
        governor, _, collector = self.make_governor([500 * MB], limit=None)

        governor()

        assert governor.peak == 500 * MB
        collector.assert_not_called()

    def test_from_config(self):
        governor = MemoryGovernor.from_config(ParserConfig(memory_limit="1G"))
        assert governor.limit_bytes == 1024 * MB

    def test_current_rss_is_positive(self):
        assert current_rss() > 0


class TestSuggestBatchSize:
    """Tests for adaptive batch sizing."""

    def test_unlimited_uses_ceiling(self):
        assert suggest_batch_size(None) == 5000

    def test_small_limit_uses_floor(self):
        assert suggest_batch_size(10 * 1024) == 50

    def test_scales_with_limit(self):
        assert suggest_batch_size(20 * MB, row_bytes=2048, budget_ratio=0.1) == 1024


class TestParseRules:
    """Tests for rule specification parsing."""

    def test_pipe_string(self):
        assert parse_rules("required|max_length:5") == {"required": True, "max_length": "5"}

    def test_mapping_passes_through(self):
        assert parse_rules({"email": True}) == {"email": True}

    def test_list(self):
        assert parse_rules(["integer", "in:1,2"]) == {"integer": True, "in": "1,2"}

    def test_unknown_rule_rejected(self):
        with pytest.raises(ValidationRuleError, match="Unknown validation rules"):
            parse_rules("required|shiny")

    @pytest.mark.parametrize("spec, message", [
        ("regex:(", "invalid pattern"),
        ("regex", "needs a pattern"),
        ("min_length:abc", "integer length"),
        ("max_length", "needs a length"),
        ("max_length:-1", "non-negative"),
        ("in", "list of values"),
        ({"in": 5}, "list of values"),
    ])
    def test_bad_parameters_rejected(self, spec, message):
        with pytest.raises(ValidationRuleError, match=message):
            parse_rules(spec)

    def test_disabled_rule_needs_no_parameter(self):
        assert parse_rules({"regex": False}) == {"regex": False}

    def test_none_is_empty(self):
        assert parse_rules(None) == {}


class TestRowValidator:
    """Tests for per-row validation."""

    def test_valid_row(self):
        validator = RowValidator({"age": "integer", "email": "email"})
        assert validator.validate({"age": "30", "email": "a@example.com"}) == []

    def test_required_missing(self):
        validator = RowValidator({"name": "required"})
        assert validator.validate({"name": "  "}) == ["name is required"]

    def test_optional_empty_skips_checks(self):
        validator = RowValidator({"age": "integer"})
        assert validator.validate({"age": ""}) == []

    def test_multiple_failures(self):
        validator = RowValidator({"code": "min_length:3|regex:^[A-Z]+$", "size": "in:S,M,L"})

        messages = validator.validate({"code": "a1", "size": "XL"})

        assert "code must be at least 3 characters" in messages
        assert "code does not match ^[A-Z]+$" in messages
        assert "size must be one of S,M,L" in messages

    def test_empty_rules_are_falsy(self):
        assert not RowValidator({})
        assert RowValidator({"a": "required"})
