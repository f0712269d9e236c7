from __future__ import annotations

from enum import StrEnum


class SessionState(StrEnum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    REVOKED = "REVOKED"


ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.PENDING: {SessionState.ACTIVE, SessionState.REVOKED},
    SessionState.ACTIVE: {SessionState.REVOKED},
    SessionState.REVOKED: set(),
}

VALID_STATES = frozenset({SessionState.PENDING, SessionState.ACTIVE})


def can_transition(source: SessionState, target: SessionState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


def is_valid_state(state: SessionState) -> bool:
    return state in VALID_STATES
