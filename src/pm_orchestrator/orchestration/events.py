"""Orchestration events and an in-process publish/subscribe bus."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pm_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


class OrchestrationEventType(str, Enum):
    ORCHESTRATION_STARTED = "ORCHESTRATION_STARTED"
    PLANNING_COMPLETED = "PLANNING_COMPLETED"
    MODEL_SELECTED = "MODEL_SELECTED"
    SUBTASK_STARTED = "SUBTASK_STARTED"
    SUBTASK_COMPLETED = "SUBTASK_COMPLETED"
    SUBTASK_FAILED = "SUBTASK_FAILED"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    CLARIFICATION_RESOLVED = "CLARIFICATION_RESOLVED"
    CLARIFICATION_ESCALATED = "CLARIFICATION_ESCALATED"
    MODEL_ESCALATED = "MODEL_ESCALATED"
    COST_LIMIT_EXCEEDED = "COST_LIMIT_EXCEEDED"
    ORCHESTRATION_COMPLETED = "ORCHESTRATION_COMPLETED"


@dataclass(slots=True)
class OrchestrationEvent:
    event_type: OrchestrationEventType
    task_id: str
    details: dict[str, Any] = field(default_factory=dict)
    subtask_id: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_details(self) -> dict[str, Any]:
        payload = dict(self.details)
        if self.subtask_id is not None:
            payload["subtask_id"] = self.subtask_id
        return payload


EventListener = Callable[[OrchestrationEvent], None]


class EventBus:
    """Synchronous fan-out to subscribers; listener errors propagate."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[EventListener] = []

    def subscribe(self, listener: EventListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: EventListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def publish(self, event: OrchestrationEvent) -> None:
        logger.debug(
            "%s task=%s subtask=%s details=%s",
            event.event_type.value,
            event.task_id,
            event.subtask_id,
            event.details,
        )
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)
