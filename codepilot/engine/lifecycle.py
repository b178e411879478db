"""Task lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    IDLE ──> RUNNING ──┬──> IDLE            (turn ended without a signal tool)
                       │
                       ├──> WAITING_APPROVAL ──> RUNNING
                       │
                       ├──> PAUSED ──> RUNNING
                       │
                       ├──> COMPLETED ──> RUNNING (next instruction)
                       │
                       ├──> FAILED
                       │
                       └──> CANCELLED

    COMPLETED / FAILED / CANCELLED ──> IDLE  (new_task)
"""
from __future__ import annotations

from .models import TaskState

VALID_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.IDLE: {
        TaskState.RUNNING,
    },
    TaskState.RUNNING: {
        TaskState.IDLE,
        TaskState.WAITING_APPROVAL,
        TaskState.PAUSED,
        TaskState.COMPLETED,
        TaskState.FAILED,
        TaskState.CANCELLED,
    },
    TaskState.WAITING_APPROVAL: {
        TaskState.RUNNING,
        TaskState.FAILED,
        TaskState.CANCELLED,
    },
    TaskState.PAUSED: {
        TaskState.RUNNING,
        TaskState.FAILED,
        TaskState.CANCELLED,
    },
    TaskState.COMPLETED: {
        TaskState.RUNNING,  # follow-up instruction
        TaskState.IDLE,
    },
    TaskState.FAILED: {
        TaskState.IDLE,
    },
    TaskState.CANCELLED: {
        TaskState.IDLE,
    },
}

TERMINAL_STATES = frozenset({
    TaskState.COMPLETED,
    TaskState.FAILED,
    TaskState.CANCELLED,
})

CANCELLABLE_STATES = frozenset({
    TaskState.RUNNING,
    TaskState.WAITING_APPROVAL,
    TaskState.PAUSED,
})


def validate_transition(current: TaskState, target: TaskState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
