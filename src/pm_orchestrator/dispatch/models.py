"""Plan aggregate types and their status rules."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pm_orchestrator.queue.models import TaskStatus, TaskType


class PlanStatus(str, Enum):
    DRAFT = "DRAFT"
    DISPATCHING = "DISPATCHING"
    RUNNING = "RUNNING"
    VERIFYING = "VERIFYING"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_PLAN_STATUSES = frozenset({PlanStatus.VERIFIED, PlanStatus.FAILED, PlanStatus.CANCELLED})

PLAN_TRANSITIONS: dict[PlanStatus, frozenset[PlanStatus]] = {
    PlanStatus.DRAFT: frozenset({PlanStatus.DISPATCHING, PlanStatus.CANCELLED}),
    PlanStatus.DISPATCHING: frozenset({PlanStatus.RUNNING, PlanStatus.FAILED, PlanStatus.CANCELLED}),
    PlanStatus.RUNNING: frozenset({PlanStatus.VERIFYING, PlanStatus.FAILED, PlanStatus.CANCELLED}),
    PlanStatus.VERIFYING: frozenset({PlanStatus.VERIFIED, PlanStatus.FAILED}),
    PlanStatus.VERIFIED: frozenset(),
    PlanStatus.FAILED: frozenset(),
    PlanStatus.CANCELLED: frozenset(),
}


class PlanTaskStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


FINISHED_PLAN_TASK_STATUSES = frozenset(
    {
        PlanTaskStatus.COMPLETE,
        PlanTaskStatus.ERROR,
        PlanTaskStatus.CANCELLED,
        PlanTaskStatus.SKIPPED,
    },
)
FAILED_PLAN_TASK_STATUSES = frozenset(
    {PlanTaskStatus.ERROR, PlanTaskStatus.CANCELLED, PlanTaskStatus.SKIPPED},
)


def plan_task_status_for(status: TaskStatus) -> PlanTaskStatus:
    """Mirror a queue task status onto its plan task."""

    return PlanTaskStatus(status.value)


@dataclass(slots=True)
class PlanTaskSpec:
    """Plan task as submitted, before ids are assigned."""

    description: str
    priority: int = 100
    dependencies: tuple[int, ...] = ()
    task_type: TaskType = TaskType.IMPLEMENTATION
    blocking: bool = True


@dataclass(slots=True)
class PlanTaskView:
    plan_task_id: str
    plan_id: str
    position: int
    description: str
    task_type: TaskType
    priority: int
    dependencies: tuple[str, ...]
    blocking: bool
    status: PlanTaskStatus
    linked_run_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True, frozen=True)
class GateCheck:
    name: str
    passed: bool
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "passed": self.passed, "message": self.message}


@dataclass(slots=True, frozen=True)
class GateResult:
    passed: bool
    checks: tuple[GateCheck, ...] = ()

    def to_json(self) -> str:
        return json.dumps(
            {"passed": self.passed, "checks": [check.to_dict() for check in self.checks]},
            ensure_ascii=False,
            sort_keys=True,
        )

    @classmethod
    def from_json(cls, payload: str | None) -> GateResult | None:
        if not payload:
            return None
        data = json.loads(payload)
        return cls(
            passed=bool(data.get("passed")),
            checks=tuple(
                GateCheck(
                    name=str(item.get("name", "")),
                    passed=bool(item.get("passed")),
                    message=str(item.get("message", "")),
                )
                for item in data.get("checks", [])
            ),
        )


@dataclass(slots=True)
class PlanView:
    plan_id: str
    project_id: str
    namespace: str
    status: PlanStatus
    tasks: list[PlanTaskView] = field(default_factory=list)
    gate_result: GateResult | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    dispatched_at: datetime | None = None
    verified_at: datetime | None = None

    def task(self, plan_task_id: str) -> PlanTaskView:
        for item in self.tasks:
            if item.plan_task_id == plan_task_id:
                return item
        raise KeyError(plan_task_id)

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.tasks:
            counts[item.status.value] = counts.get(item.status.value, 0) + 1
        return counts
