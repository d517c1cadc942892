"""Plan persistence: SQLModel-backed store and an in-memory twin."""

from __future__ import annotations

import copy
import json
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, Protocol

from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from pm_orchestrator.dispatch.errors import InvalidPlanTransitionError, PlanNotFoundError
from pm_orchestrator.dispatch.models import (
    PLAN_TRANSITIONS,
    GateResult,
    PlanStatus,
    PlanTaskStatus,
    PlanTaskView,
    PlanView,
)
from pm_orchestrator.queue.errors import StoreUnavailableError
from pm_orchestrator.queue.models import TaskType
from pm_orchestrator.storage.alembic_runner import upgrade_head
from pm_orchestrator.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from pm_orchestrator.storage.sqlmodel_models import PlanRecord, PlanTaskRecord


class PlanStore(Protocol):
    def create_plan(self, plan: PlanView) -> PlanView:
        """Persist a DRAFT plan with its tasks."""

    def get_plan(self, plan_id: str) -> PlanView:
        """Return a plan or raise ``PlanNotFoundError``."""

    def list_plans(self, *, project_id: str | None = None, limit: int = 50) -> list[PlanView]:
        """List recent plans."""

    def transition_plan(
        self,
        plan_id: str,
        status_to: PlanStatus,
        *,
        gate_result: GateResult | None = None,
    ) -> PlanView:
        """Move a plan along its status graph."""

    def update_plan_task(
        self,
        plan_task_id: str,
        *,
        status: PlanTaskStatus,
        linked_run_id: str | None = None,
    ) -> PlanTaskView:
        """Update status (and optionally the linked queue task) of one plan task."""

    def close(self) -> None:
        """Release backend resources."""


def _check_transition(plan_id: str, status_from: PlanStatus, status_to: PlanStatus) -> None:
    if status_to not in PLAN_TRANSITIONS[status_from]:
        raise InvalidPlanTransitionError(plan_id, status_from.value, status_to.value)


def _transition_values(status_from: PlanStatus, status_to: PlanStatus) -> dict[str, Any]:
    now = utc_now()
    values: dict[str, Any] = {"status": status_to.value, "updated_at": now}
    if status_to == PlanStatus.DISPATCHING:
        values["dispatched_at"] = now
    if status_from == PlanStatus.VERIFYING:
        values["verified_at"] = now
    return values


class SqlPlanStore:
    """Plan persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StoreUnavailableError(f"Plan store unavailable: {error.orig}") from error

    def create_plan(self, plan: PlanView) -> PlanView:
        now = utc_now()
        with self._session() as session:
            session.add(
                PlanRecord(
                    plan_id=plan.plan_id,
                    project_id=plan.project_id,
                    namespace=plan.namespace,
                    status=plan.status.value,
                    created_at=now,
                    updated_at=now,
                ),
            )
            # Parent row first; plan_tasks carries a foreign key.
            session.flush()
            for item in plan.tasks:
                session.add(
                    PlanTaskRecord(
                        plan_task_id=item.plan_task_id,
                        plan_id=plan.plan_id,
                        position=item.position,
                        description=item.description,
                        task_type=item.task_type.value,
                        priority=item.priority,
                        dependencies_json=json.dumps(list(item.dependencies)),
                        blocking=item.blocking,
                        status=item.status.value,
                        linked_run_id=item.linked_run_id,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            session.commit()
            return self._load(session=session, plan_id=plan.plan_id)

    def get_plan(self, plan_id: str) -> PlanView:
        with self._session() as session:
            return self._load(session=session, plan_id=plan_id)

    def list_plans(self, *, project_id: str | None = None, limit: int = 50) -> list[PlanView]:
        with self._session() as session:
            statement = select(PlanRecord)
            if project_id is not None:
                statement = statement.where(PlanRecord.project_id == project_id)
            rows = session.exec(
                statement.order_by(col(PlanRecord.created_at).desc()).limit(max(1, limit)),
            ).all()
            return [self._load(session=session, plan_id=row.plan_id) for row in rows]

    def transition_plan(
        self,
        plan_id: str,
        status_to: PlanStatus,
        *,
        gate_result: GateResult | None = None,
    ) -> PlanView:
        with self._session() as session:
            row = self._get_row(session=session, plan_id=plan_id)
            previous = PlanStatus(row.status)
            _check_transition(plan_id, previous, status_to)
            values = _transition_values(previous, status_to)
            values = {
                key: to_db_datetime(value) if key.endswith("_at") else value
                for key, value in values.items()
            }
            if gate_result is not None:
                values["gate_result_json"] = gate_result.to_json()
            result = session.exec(
                sa_update(PlanRecord)
                .where(
                    col(PlanRecord.plan_id) == plan_id,
                    col(PlanRecord.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                current = self._get_row(session=session, plan_id=plan_id)
                raise InvalidPlanTransitionError(plan_id, current.status, status_to.value)
            session.commit()
            session.expire_all()
            return self._load(session=session, plan_id=plan_id)

    def update_plan_task(
        self,
        plan_task_id: str,
        *,
        status: PlanTaskStatus,
        linked_run_id: str | None = None,
    ) -> PlanTaskView:
        with self._session() as session:
            row = session.exec(
                select(PlanTaskRecord).where(PlanTaskRecord.plan_task_id == plan_task_id),
            ).one_or_none()
            if row is None:
                raise KeyError(f"Plan task not found: {plan_task_id}")
            row.status = status.value
            if linked_run_id is not None:
                row.linked_run_id = linked_run_id
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_plan_task_view(row)

    def _get_row(self, *, session: Session, plan_id: str) -> PlanRecord:
        row = session.exec(select(PlanRecord).where(PlanRecord.plan_id == plan_id)).one_or_none()
        if row is None:
            raise PlanNotFoundError(plan_id)
        return row

    def _load(self, *, session: Session, plan_id: str) -> PlanView:
        row = self._get_row(session=session, plan_id=plan_id)
        tasks = session.exec(
            select(PlanTaskRecord)
            .where(PlanTaskRecord.plan_id == plan_id)
            .order_by(col(PlanTaskRecord.position).asc()),
        ).all()
        return PlanView(
            plan_id=row.plan_id,
            project_id=row.project_id,
            namespace=row.namespace,
            status=PlanStatus(row.status),
            tasks=[_to_plan_task_view(item) for item in tasks],
            gate_result=GateResult.from_json(row.gate_result_json),
            created_at=to_utc_aware_datetime(row.created_at),
            updated_at=to_utc_aware_datetime(row.updated_at),
            dispatched_at=optional_utc(row.dispatched_at),
            verified_at=optional_utc(row.verified_at),
        )


def _to_plan_task_view(row: PlanTaskRecord) -> PlanTaskView:
    return PlanTaskView(
        plan_task_id=row.plan_task_id,
        plan_id=row.plan_id,
        position=row.position,
        description=row.description,
        task_type=TaskType(row.task_type),
        priority=row.priority,
        dependencies=tuple(json.loads(row.dependencies_json or "[]")),
        blocking=row.blocking,
        status=PlanTaskStatus(row.status),
        linked_run_id=row.linked_run_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


class InMemoryPlanStore:
    """Thread-safe plan store with the same transition rules as the SQL store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._plans: dict[str, PlanView] = {}

    def close(self) -> None:
        return None

    def create_plan(self, plan: PlanView) -> PlanView:
        now = utc_now()
        stored = replace(
            plan,
            tasks=[replace(item, created_at=now, updated_at=now) for item in plan.tasks],
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._plans[plan.plan_id] = stored
            return copy.deepcopy(stored)

    def get_plan(self, plan_id: str) -> PlanView:
        with self._lock:
            return copy.deepcopy(self._get(plan_id))

    def list_plans(self, *, project_id: str | None = None, limit: int = 50) -> list[PlanView]:
        with self._lock:
            plans = [
                plan
                for plan in self._plans.values()
                if project_id is None or plan.project_id == project_id
            ]
            plans.sort(key=lambda plan: plan.created_at or utc_now(), reverse=True)
            return [copy.deepcopy(plan) for plan in plans[: max(1, limit)]]

    def transition_plan(
        self,
        plan_id: str,
        status_to: PlanStatus,
        *,
        gate_result: GateResult | None = None,
    ) -> PlanView:
        with self._lock:
            plan = self._get(plan_id)
            _check_transition(plan_id, plan.status, status_to)
            for key, value in _transition_values(plan.status, status_to).items():
                setattr(plan, key, PlanStatus(value) if key == "status" else value)
            if gate_result is not None:
                plan.gate_result = gate_result
            return copy.deepcopy(plan)

    def update_plan_task(
        self,
        plan_task_id: str,
        *,
        status: PlanTaskStatus,
        linked_run_id: str | None = None,
    ) -> PlanTaskView:
        with self._lock:
            for plan in self._plans.values():
                for item in plan.tasks:
                    if item.plan_task_id != plan_task_id:
                        continue
                    item.status = status
                    if linked_run_id is not None:
                        item.linked_run_id = linked_run_id
                    item.updated_at = utc_now()
                    return copy.deepcopy(item)
        raise KeyError(f"Plan task not found: {plan_task_id}")

    def _get(self, plan_id: str) -> PlanView:
        plan = self._plans.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return plan
