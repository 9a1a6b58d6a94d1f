from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class SessionPhase(str, Enum):
    """Which branch of the workflow produced the state being validated."""

    CREATE = "create"
    RESTORE = "restore"
    RECREATE = "recreate"

    @property
    def in_progress(self) -> str:
        return _IN_PROGRESS[self]

    @property
    def complete(self) -> str:
        return _COMPLETE[self]

    @property
    def step_name(self) -> str:
        return _STEP_NAMES[self]


_IN_PROGRESS = {
    SessionPhase.CREATE: "creating",
    SessionPhase.RESTORE: "restoring",
    SessionPhase.RECREATE: "recreating",
}
_COMPLETE = {
    SessionPhase.CREATE: "created",
    SessionPhase.RESTORE: "restored",
    SessionPhase.RECREATE: "recreated",
}
_STEP_NAMES = {
    SessionPhase.CREATE: "Create new session",
    SessionPhase.RESTORE: "Restore saved session",
    SessionPhase.RECREATE: "Recreate session",
}
VALIDATE_STEP_NAME = "Validate session"
STATUS_FAILED = "failed"


class SessionState(str, Enum):
    RESOLVING = "resolving"
    CREATING = "creating"
    RESTORING = "restoring"
    VALIDATING = "validating"
    RECREATING = "recreating"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES: FrozenSet[SessionState] = frozenset(
    {SessionState.COMPLETED, SessionState.FAILED}
)

ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.RESOLVING: frozenset(
        {SessionState.CREATING, SessionState.RESTORING, SessionState.FAILED}
    ),
    SessionState.CREATING: frozenset({SessionState.VALIDATING, SessionState.FAILED}),
    SessionState.RESTORING: frozenset({SessionState.VALIDATING, SessionState.FAILED}),
    SessionState.VALIDATING: frozenset(
        {SessionState.COMPLETED, SessionState.RECREATING, SessionState.FAILED}
    ),
    SessionState.RECREATING: frozenset({SessionState.CREATING, SessionState.FAILED}),
    SessionState.COMPLETED: frozenset(),
    SessionState.FAILED: frozenset(),
}


class ValidationOutcome(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    ERRORED = "errored"
