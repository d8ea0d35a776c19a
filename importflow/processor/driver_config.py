"""Per-driver transition table."""

from __future__ import annotations

from collections import deque
from typing import Any, Optional, Union

from importflow.errors import DriverConfigError

# States can be named by their tag or by a State class carrying a ``name``
StateRef = Union[str, type, Any]


def state_tag(state: StateRef) -> str:
    """Normalise a state reference to its type tag."""
    if isinstance(state, str):
        return state
    tag = getattr(state, "name", None)
    if not isinstance(tag, str) or not tag:
        raise DriverConfigError(f"Cannot derive a state tag from {state!r}")
    return tag


class DriverConfig:
    """
    Legal and preferred state transitions for one driver.

    Built with chained calls, then sealed by ``validate()``::

        config = (
            DriverConfig()
            .default("pending")
            .allow_transition("pending", "extract")
            .preferred_transition("pending", "extract")
            .validate()
        )
    """

    def __init__(self) -> None:
        self.default_state: Optional[str] = None
        self.allowed_transitions: dict[str, set[str]] = {}
        self.preferred_transitions: dict[str, str] = {}
        self._frozen = False

    def default(self, state: StateRef) -> "DriverConfig":
        self._check_mutable()
        self.default_state = state_tag(state)
        return self

    def allow_transition(self, from_state: StateRef, to_state: StateRef) -> "DriverConfig":
        """Register a legal edge. Adding the same edge twice is a no-op."""
        self._check_mutable()
        self.allowed_transitions.setdefault(state_tag(from_state), set()).add(state_tag(to_state))
        return self

    def preferred_transition(self, from_state: StateRef, to_state: StateRef) -> "DriverConfig":
        """Register the happy-path edge out of a state. Last write wins."""
        self._check_mutable()
        self.preferred_transitions[state_tag(from_state)] = state_tag(to_state)
        return self

    def get_preferred_transition(self, from_state: StateRef) -> Optional[str]:
        return self.preferred_transitions.get(state_tag(from_state))

    def is_transition_allowed(self, from_state: StateRef, to_state: StateRef) -> bool:
        return state_tag(to_state) in self.allowed_transitions.get(state_tag(from_state), set())

    def allowed_from(self, state: StateRef) -> set[str]:
        return set(self.allowed_transitions.get(state_tag(state), set()))

    def states(self) -> set[str]:
        """Every state tag the table mentions."""
        tags: set[str] = set()
        if self.default_state:
            tags.add(self.default_state)
        for source, targets in self.allowed_transitions.items():
            tags.add(source)
            tags.update(targets)
        tags.update(self.preferred_transitions)
        tags.update(self.preferred_transitions.values())
        return tags

    def reachable_states(self) -> set[str]:
        """States reachable from the default state over allowed edges."""
        if self.default_state is None:
            return set()
        seen = {self.default_state}
        pending = deque([self.default_state])
        while pending:
            current = pending.popleft()
            for target in self.allowed_transitions.get(current, set()):
                if target not in seen:
                    seen.add(target)
                    pending.append(target)
        return seen

    @property
    def frozen(self) -> bool:
        return self._frozen

    def validate(self) -> "DriverConfig":
        """
        Check table consistency and seal the config.

        Raises:
            DriverConfigError: On a missing default state, a preferred edge
                that is not allowed, or a state unreachable from the default
        """
        if self.default_state is None:
            raise DriverConfigError("Driver config has no default state")

        for source, target in self.preferred_transitions.items():
            if not self.is_transition_allowed(source, target):
                raise DriverConfigError(
                    f"Preferred transition {source} -> {target} is not an allowed transition"
                )

        unreachable = sorted(set(self.allowed_transitions) - self.reachable_states())
        if unreachable:
            raise DriverConfigError(
                f"States not reachable from '{self.default_state}': {', '.join(unreachable)}"
            )

        self._frozen = True
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "default": self.default_state,
            "allowed": {k: sorted(v) for k, v in sorted(self.allowed_transitions.items())},
            "preferred": dict(sorted(self.preferred_transitions.items())),
        }

    def _check_mutable(self) -> None:
        if self._frozen:
            raise DriverConfigError("Driver config is validated and can no longer change")
