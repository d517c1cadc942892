"""Durable task queue with a fail-closed status state machine."""

from pm_orchestrator.queue.errors import (
    InvalidTransitionError,
    NotAwaitingResponseError,
    QueueStoreError,
    StoreUnavailableError,
    TaskNotFoundError,
)
from pm_orchestrator.queue.memory import InMemoryQueueStore
from pm_orchestrator.queue.models import (
    Clarification,
    SettingsSnapshot,
    TaskCreate,
    TaskStatus,
    TaskType,
    TaskView,
)
from pm_orchestrator.queue.repository import SqlQueueStore
from pm_orchestrator.queue.store import QueueStore

__all__ = [
    "Clarification",
    "InMemoryQueueStore",
    "InvalidTransitionError",
    "NotAwaitingResponseError",
    "QueueStore",
    "QueueStoreError",
    "SettingsSnapshot",
    "SqlQueueStore",
    "StoreUnavailableError",
    "TaskCreate",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskType",
    "TaskView",
]
