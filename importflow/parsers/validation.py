"""Per-column validation rules for CSV rows.

Rules can be given as a mapping or as a pipe-separated string::

    {"email": {"required": True, "email": True}, "age": "integer|min_length:1"}
"""

from __future__ import annotations

import re
from typing import Any, Callable, Optional

from importflow.errors import ValidationRuleError

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_NUMERIC = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_INTEGER = re.compile(r"^[+-]?\d+$")

SUPPORTED_RULES = (
    "required",
    "not_empty",
    "numeric",
    "integer",
    "email",
    "min_length",
    "max_length",
    "regex",
    "in",
)


def parse_rules(spec: Any) -> dict[str, Any]:
    """
    Normalise one column's rule spec into ``{rule: parameter}``.

    Parameters are checked here so a bad rule fails before any row is read.

    Raises:
        ValidationRuleError: On an unknown rule name or an unusable parameter
    """
    if spec is None:
        return {}

    if isinstance(spec, str):
        items: list[str] = [part for part in spec.split("|") if part.strip()]
    elif isinstance(spec, (list, tuple)):
        items = [str(part) for part in spec]
    elif isinstance(spec, dict):
        rules = dict(spec)
        items = []
    else:
        raise ValidationRuleError(f"Unsupported rule specification: {spec!r}")

    if items:
        rules = {}
        for item in items:
            name, _, parameter = item.strip().partition(":")
            rules[name] = parameter if parameter else True

    unknown = [name for name in rules if name not in SUPPORTED_RULES]
    if unknown:
        raise ValidationRuleError(f"Unknown validation rules: {', '.join(unknown)}")

    for name, parameter in rules.items():
        if parameter is not False:
            _check_parameter(name, parameter)
    return rules


def _check_parameter(name: str, parameter: Any) -> None:
    if name in ("min_length", "max_length"):
        if isinstance(parameter, bool):
            raise ValidationRuleError(f"Rule '{name}' needs a length, e.g. {name}:3")
        try:
            length = int(parameter)
        except (TypeError, ValueError):
            raise ValidationRuleError(f"Rule '{name}' needs an integer length, got {parameter!r}")
        if length < 0:
            raise ValidationRuleError(f"Rule '{name}' needs a non-negative length, got {length}")
    elif name == "regex":
        if isinstance(parameter, bool):
            raise ValidationRuleError("Rule 'regex' needs a pattern, e.g. regex:^[A-Z]+$")
        try:
            re.compile(str(parameter))
        except re.error as e:
            raise ValidationRuleError(f"Rule 'regex' has an invalid pattern {parameter!r}: {e}")
    elif name == "in":
        if isinstance(parameter, bool) or not isinstance(parameter, (str, list, tuple)):
            raise ValidationRuleError("Rule 'in' needs a list of values, e.g. in:S,M,L")


def _blank(value: Optional[str]) -> bool:
    return value is None or value.strip() == ""


def _check_in(value: str, parameter: Any) -> bool:
    if isinstance(parameter, str):
        allowed = [p.strip() for p in parameter.split(",")]
    else:
        allowed = [str(p) for p in parameter]
    return value in allowed


# Each check gets (value, parameter) and returns True when the value passes
_CHECKS: dict[str, tuple[Callable[[str, Any], bool], str]] = {
    "numeric": (lambda v, p: bool(_NUMERIC.match(v)), "must be numeric"),
    "integer": (lambda v, p: bool(_INTEGER.match(v)), "must be an integer"),
    "email": (lambda v, p: bool(_EMAIL.match(v)), "must be a valid email address"),
    "min_length": (lambda v, p: len(v) >= int(p), "must be at least {p} characters"),
    "max_length": (lambda v, p: len(v) <= int(p), "must be at most {p} characters"),
    "regex": (lambda v, p: re.search(str(p), v) is not None, "does not match {p}"),
    "in": (_check_in, "must be one of {p}"),
}


class RowValidator:
    """Validates rows against per-column rules."""

    def __init__(self, rules: Optional[dict[str, Any]] = None) -> None:
        self.rules = {column: parse_rules(spec) for column, spec in (rules or {}).items()}

    def __bool__(self) -> bool:
        return any(self.rules.values())

    def validate(self, row: dict[str, Optional[str]]) -> list[str]:
        """
        Validate one row.

        Returns:
            Human-readable messages, empty when the row is valid
        """
        messages: list[str] = []
        for column, rules in self.rules.items():
            value = row.get(column)

            if _blank(value):
                if rules.get("required") or rules.get("not_empty"):
                    messages.append(f"{column} is required")
                # Optional empty values skip the remaining checks
                continue

            for rule, parameter in rules.items():
                check = _CHECKS.get(rule)
                if check is None or parameter is False:
                    continue
                passes, template = check
                if not passes(value, parameter):
                    shown = parameter if not isinstance(parameter, (list, tuple)) else ",".join(map(str, parameter))
                    messages.append(f"{column} {template.format(p=shown)}")
        return messages
