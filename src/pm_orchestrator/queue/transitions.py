"""Task status state machine shared by all queue store backends."""

from __future__ import annotations

from pm_orchestrator.queue.errors import InvalidTransitionError, NotAwaitingResponseError
from pm_orchestrator.queue.models import TaskStatus

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.RUNNING: frozenset(
        {
            TaskStatus.COMPLETE,
            TaskStatus.ERROR,
            TaskStatus.CANCELLED,
            TaskStatus.AWAITING_RESPONSE,
        },
    ),
    TaskStatus.AWAITING_RESPONSE: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETE: frozenset(),
    TaskStatus.ERROR: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Edges that only dedicated store operations may take.
RESERVED_TRANSITIONS: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset(
    {
        (TaskStatus.AWAITING_RESPONSE, TaskStatus.RUNNING),
    },
)

CANCELLABLE_STATUSES = frozenset(
    {TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.AWAITING_RESPONSE},
)


def is_allowed(status_from: TaskStatus, status_to: TaskStatus) -> bool:
    return status_to in ALLOWED_TRANSITIONS[status_from]


def validate_transition(
    *,
    task_id: str,
    status_from: TaskStatus,
    status_to: TaskStatus,
    via_respond: bool = False,
) -> None:
    """Raise if ``status_from -> status_to`` is not an edge of the status DAG."""

    if via_respond:
        if status_from != TaskStatus.AWAITING_RESPONSE:
            raise NotAwaitingResponseError(task_id, status_from.value)
        return
    if not is_allowed(status_from, status_to) or (status_from, status_to) in RESERVED_TRANSITIONS:
        raise InvalidTransitionError(task_id, status_from.value, status_to.value)
