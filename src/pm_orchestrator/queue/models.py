"""Domain models for the task queue."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETE, TaskStatus.ERROR, TaskStatus.CANCELLED})


class TaskType(str, Enum):
    """Kinds of work a task can represent."""

    READ_INFO = "READ_INFO"
    REPORT = "REPORT"
    IMPLEMENTATION = "IMPLEMENTATION"


@dataclass(slots=True, frozen=True)
class SettingsSnapshot:
    """Executor settings frozen onto a task at creation time."""

    provider: str = "openai"
    model: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.2

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | None) -> SettingsSnapshot:
        if not raw:
            return cls()
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            return cls()
        return cls(
            provider=str(payload.get("provider") or "openai"),
            model=payload.get("model"),
            max_tokens=int(payload.get("max_tokens", 4096)),
            temperature=float(payload.get("temperature", 0.2)),
        )


@dataclass(slots=True)
class Clarification:
    """Question that suspended a task, with the partial output it produced."""

    question: str
    reason: str
    clarification_type: str = "unknown"
    options: tuple[str, ...] = ()
    partial_output: str | None = None
    answer: str | None = None
    answered_at: datetime | None = None

    def to_json(self) -> str:
        return json.dumps(
            {
                "question": self.question,
                "reason": self.reason,
                "clarification_type": self.clarification_type,
                "options": list(self.options),
                "partial_output": self.partial_output,
                "answer": self.answer,
                "answered_at": self.answered_at.isoformat() if self.answered_at else None,
            },
            ensure_ascii=False,
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, raw: str | None) -> Clarification | None:
        if not raw:
            return None
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            return None
        answered_at_raw = payload.get("answered_at")
        return cls(
            question=str(payload.get("question", "")),
            reason=str(payload.get("reason", "")),
            clarification_type=str(payload.get("clarification_type") or "unknown"),
            options=tuple(str(item) for item in payload.get("options") or ()),
            partial_output=payload.get("partial_output"),
            answer=payload.get("answer"),
            answered_at=datetime.fromisoformat(answered_at_raw) if answered_at_raw else None,
        )


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    namespace: str
    group_id: str
    prompt: str
    task_type: TaskType = TaskType.READ_INFO
    settings_snapshot: SettingsSnapshot = field(default_factory=SettingsSnapshot)
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view; a transient copy of the stored record."""

    task_id: str
    namespace: str
    group_id: str
    task_type: TaskType
    prompt: str
    status: TaskStatus
    output: str | None
    error_message: str | None
    failure_type: str | None
    clarification: Clarification | None
    settings_snapshot: SettingsSnapshot
    attempt: int
    worker_id: str | None
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event row for inspect output."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any]


@dataclass(slots=True)
class TaskDetails:
    """Task with its event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class TaskGroupSummary:
    """Per-group task counts within a namespace."""

    namespace: str
    group_id: str
    task_count: int
    status_counts: dict[str, int]
    created_at: datetime
    latest_updated_at: datetime
