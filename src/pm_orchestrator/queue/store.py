"""Queue store contract implemented by the durable and in-memory backends."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Protocol

from pm_orchestrator.queue.models import (
    Clarification,
    TaskCreate,
    TaskDetails,
    TaskGroupSummary,
    TaskStatus,
    TaskView,
)


class QueueStore(Protocol):
    """Single source of truth for task state.

    Every status change goes through the DAG in
    :mod:`pm_orchestrator.queue.transitions`. ``claim`` is a compare-and-swap:
    concurrent callers never observe the same task as claimed.
    """

    def enqueue(self, payload: TaskCreate) -> TaskView:
        """Create a QUEUED task."""

    def claim(
        self,
        namespace: str,
        *,
        worker_id: str,
        task_id: str | None = None,
    ) -> TaskView | None:
        """Move the oldest QUEUED task (or ``task_id``) to RUNNING."""

    def update_status(  # noqa: PLR0913
        self,
        task_id: str,
        status: TaskStatus,
        *,
        output: str | None = None,
        error_message: str | None = None,
        failure_type: str | None = None,
    ) -> TaskView:
        """Apply a validated status transition."""

    def set_awaiting_response(
        self,
        task_id: str,
        clarification: Clarification,
        output: str | None = None,
    ) -> TaskView:
        """Suspend a RUNNING task until ``respond`` is called."""

    def respond(self, task_id: str, answer: str) -> TaskView:
        """Resume an AWAITING_RESPONSE task with ``answer``."""

    def cancel(self, task_id: str) -> TaskView:
        """Cancel a non-terminal task."""

    def recover_on_startup(self, namespace: str) -> list[str]:
        """Reset every RUNNING task in the namespace to QUEUED."""

    def recover_stale_tasks(self, namespace: str, *, stale_after: timedelta) -> list[str]:
        """Reset RUNNING tasks with an expired heartbeat to QUEUED."""

    def heartbeat(self, task_id: str) -> bool:
        """Refresh the heartbeat of a RUNNING task."""

    def get(self, task_id: str) -> TaskView:
        """Return a task or raise ``TaskNotFoundError``."""

    def list_tasks(
        self,
        *,
        namespace: str | None = None,
        status: TaskStatus | None = None,
        group_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks."""

    def list_groups(self, namespace: str) -> list[TaskGroupSummary]:
        """Summarize task groups in a namespace."""

    def list_namespaces(self) -> list[str]:
        """Return namespaces that have at least one task."""

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with its event stream."""

    def add_event(  # noqa: PLR0913
        self,
        task_id: str,
        event_type: str,
        details: dict[str, Any],
        *,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
    ) -> None:
        """Append an audit event without changing status."""

    def close(self) -> None:
        """Release backend resources."""
