"""Deployment lifecycle state machine.

The transition table here is the only authority on which verb may run in
which state. The controller asks before doing any work and records every
state change through :class:`DeploymentStateMachine`.
"""
from __future__ import annotations

from typing import Any

from .errors import IllegalTransition
from .models import Deployment, DeploymentState, HistoryEntry, utc_now

S = DeploymentState

_ALLOWED_TRANSITIONS: dict[DeploymentState, frozenset[DeploymentState]] = {
    S.UNINITIALIZED: frozenset({S.STABLE}),
    S.STABLE: frozenset({S.DEPLOYING, S.STABLE}),
    S.DEPLOYING: frozenset({S.SHIFTING, S.ROLLING_BACK}),
    S.SHIFTING: frozenset({S.SHIFTING, S.PROMOTING, S.ROLLING_BACK}),
    S.PROMOTING: frozenset({S.STABLE, S.ROLLING_BACK}),
    S.ROLLING_BACK: frozenset({S.STABLE}),
}

# States from which each verb may start. Promoting/RollingBack appear so an
# interrupted promote or rollback can be re-issued and resume.
VERB_STATES: dict[str, frozenset[DeploymentState]] = {
    "init": frozenset({S.UNINITIALIZED}),
    "deploy": frozenset({S.STABLE}),
    "shift": frozenset({S.SHIFTING}),
    "promote": frozenset({S.SHIFTING, S.PROMOTING}),
    "rollback": frozenset({S.DEPLOYING, S.SHIFTING, S.PROMOTING, S.ROLLING_BACK}),
    "cleanup": frozenset({S.STABLE}),
    "destroy": frozenset({S.STABLE, S.UNINITIALIZED}),
}


def can_transition(current: DeploymentState, nxt: DeploymentState) -> bool:
    return nxt in _ALLOWED_TRANSITIONS[current]


def verb_allowed(verb: str, state: DeploymentState) -> bool:
    return state in VERB_STATES.get(verb, frozenset())


class DeploymentStateMachine:
    """Guards and records state changes of one :class:`Deployment`."""

    def __init__(self, deployment: Deployment) -> None:
        self.deployment = deployment

    @property
    def state(self) -> DeploymentState:
        return self.deployment.state

    def require_verb(self, verb: str) -> None:
        if not verb_allowed(verb, self.state):
            raise IllegalTransition(
                f"'{verb}' is not allowed for deployment '{self.deployment.name}' in state {self.state.value}"
            )

    def transition(self, to_state: DeploymentState, verb: str, **parameters: Any) -> HistoryEntry:
        current = self.state
        if not can_transition(current, to_state):
            raise IllegalTransition(
                f"invalid transition for '{self.deployment.name}': {current.value} -> {to_state.value} ({verb})"
            )
        entry = HistoryEntry(
            timestamp=utc_now(),
            from_state=current.value,
            to_state=to_state.value,
            verb=verb,
            parameters=dict(parameters),
        )
        self.deployment.state = to_state
        self.deployment.history.append(entry)
        self.deployment.updated_at = entry.timestamp
        return entry


__all__ = ["DeploymentStateMachine", "VERB_STATES", "can_transition", "verb_allowed"]
