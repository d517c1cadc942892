"""Queue store error hierarchy."""

from __future__ import annotations


class QueueStoreError(RuntimeError):
    """Base class for queue store failures surfaced to callers."""


class TaskNotFoundError(QueueStoreError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(QueueStoreError):
    def __init__(self, task_id: str, status_from: str, status_to: str) -> None:
        super().__init__(
            f"Invalid status transition for task {task_id}: {status_from} -> {status_to}",
        )
        self.task_id = task_id
        self.status_from = status_from
        self.status_to = status_to


class NotAwaitingResponseError(InvalidTransitionError):
    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(task_id, status, "RUNNING")
        self.args = (f"Task {task_id} is not awaiting a response (status={status})",)


class StoreUnavailableError(QueueStoreError):
    """Backing store could not be reached; callers decide whether to retry."""
