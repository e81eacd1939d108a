from __future__ import annotations

from enum import Enum

from .errors import InvalidTransitionError


class TaskStatus(str, Enum):
    ON_HOLD = "on_hold"
    STARTED = "started"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RE_ASSIGNED = "re_assigned"
    ERROR = "error"


ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.ON_HOLD: {TaskStatus.STARTED},
    TaskStatus.STARTED: {
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
        TaskStatus.ERROR,
        TaskStatus.RE_ASSIGNED,
        # RestartWorkflow parks the instance back at Start.
        TaskStatus.ON_HOLD,
    },
    TaskStatus.RE_ASSIGNED: {TaskStatus.STARTED},
    TaskStatus.ERROR: {TaskStatus.STARTED, TaskStatus.CANCELLED},
    TaskStatus.COMPLETED: set(),
    TaskStatus.CANCELLED: set(),
}

TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.CANCELLED}
)

# Statuses from which `advance` may run activity work.
ADVANCEABLE_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.STARTED, TaskStatus.RE_ASSIGNED}
)


def transition(*, current: TaskStatus, to: TaskStatus, instance_id: str | None = None) -> TaskStatus:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        where = f" (instance {instance_id})" if instance_id else ""
        raise InvalidTransitionError(
            f"Illegal status transition{where}: {current.value} -> {to.value}"
        )
    return to


def can_transition(current: TaskStatus, to: TaskStatus) -> bool:
    return to in ALLOWED_TRANSITIONS.get(current, set())


def is_terminal(status: TaskStatus) -> bool:
    """Completed and Cancelled instances never change status again."""

    return status in TERMINAL_STATUSES
