"""Persistent queue store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from pm_orchestrator.queue.errors import (
    InvalidTransitionError,
    StoreUnavailableError,
    TaskNotFoundError,
)
from pm_orchestrator.queue.models import (
    Clarification,
    SettingsSnapshot,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskGroupSummary,
    TaskStatus,
    TaskType,
    TaskView,
)
from pm_orchestrator.queue.transitions import CANCELLABLE_STATUSES, validate_transition
from pm_orchestrator.storage.alembic_runner import upgrade_head
from pm_orchestrator.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from pm_orchestrator.storage.sqlmodel_models import QueueTask, QueueTaskEvent

logger = logging.getLogger(__name__)


class SqlQueueStore:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StoreUnavailableError(f"Queue store unavailable: {error.orig}") from error

    def enqueue(self, payload: TaskCreate) -> TaskView:
        """Create a queued task."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with self._session() as session:
            row = QueueTask(
                task_id=task_id,
                namespace=payload.namespace,
                group_id=payload.group_id,
                task_type=payload.task_type.value,
                prompt=payload.prompt,
                status=TaskStatus.QUEUED.value,
                settings_json=payload.settings_snapshot.to_json(),
                attempt=0,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="enqueued",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                details={
                    "namespace": payload.namespace,
                    "group_id": payload.group_id,
                    "task_type": payload.task_type.value,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def claim(
        self,
        namespace: str,
        *,
        worker_id: str,
        task_id: str | None = None,
    ) -> TaskView | None:
        """Atomically claim the oldest queued task in ``namespace``."""

        while True:
            now = utc_now()
            with self._session() as session:
                statement = select(QueueTask).where(
                    QueueTask.namespace == namespace,
                    QueueTask.status == TaskStatus.QUEUED.value,
                )
                if task_id is not None:
                    statement = statement.where(QueueTask.task_id == task_id)
                candidate = session.exec(
                    statement.order_by(
                        col(QueueTask.created_at).asc(),
                        col(QueueTask.task_id).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueTask)
                    .where(
                        col(QueueTask.task_id) == candidate.task_id,
                        col(QueueTask.status) == TaskStatus.QUEUED.value,
                    )
                    .values(
                        status=TaskStatus.RUNNING.value,
                        attempt=candidate.attempt + 1,
                        worker_id=worker_id,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        finished_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    if task_id is not None:
                        return None
                    continue

                claimed = session.exec(
                    select(QueueTask).where(QueueTask.task_id == candidate.task_id),
                ).one()
                self._add_event(
                    session=session,
                    task_id=claimed.task_id,
                    event_type="claimed",
                    status_from=TaskStatus.QUEUED,
                    status_to=TaskStatus.RUNNING,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                session.refresh(claimed)
                return _to_task_view(claimed)

    def update_status(  # noqa: PLR0913
        self,
        task_id: str,
        status: TaskStatus,
        *,
        output: str | None = None,
        error_message: str | None = None,
        failure_type: str | None = None,
    ) -> TaskView:
        """Apply one status transition validated against the task DAG."""

        now = utc_now()
        values: dict[str, Any] = {"status": status.value, "updated_at": to_db_datetime(now)}
        if output is not None:
            values["output"] = output
        if error_message is not None:
            values["error_message"] = error_message
        if failure_type is not None:
            values["failure_type"] = failure_type
        if status.is_terminal:
            values["finished_at"] = to_db_datetime(now)
        details: dict[str, object] = {}
        if failure_type is not None:
            details["failure_type"] = failure_type
        if error_message is not None:
            details["error_message"] = error_message[:500]
        return self._transition(
            task_id=task_id,
            status_to=status,
            values=values,
            event_type=f"status_{status.value.lower()}",
            details=details,
        )

    def set_awaiting_response(
        self,
        task_id: str,
        clarification: Clarification,
        output: str | None = None,
    ) -> TaskView:
        """Suspend a running task on an unanswered clarification."""

        preserved = output if output is not None else clarification.partial_output
        if preserved is not None and clarification.partial_output is None:
            clarification.partial_output = preserved
        values: dict[str, Any] = {
            "status": TaskStatus.AWAITING_RESPONSE.value,
            "clarification_json": clarification.to_json(),
            "updated_at": to_db_datetime(utc_now()),
        }
        if preserved is not None:
            values["output"] = preserved
        return self._transition(
            task_id=task_id,
            status_to=TaskStatus.AWAITING_RESPONSE,
            values=values,
            event_type="awaiting_response",
            details={
                "question": clarification.question,
                "reason": clarification.reason,
                "clarification_type": clarification.clarification_type,
            },
        )

    def respond(self, task_id: str, answer: str) -> TaskView:
        """Record ``answer`` and resume the task as RUNNING."""

        now = utc_now()
        with self._session() as session:
            row = self._get_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            validate_transition(
                task_id=task_id,
                status_from=previous,
                status_to=TaskStatus.RUNNING,
                via_respond=True,
            )
            clarification = Clarification.from_json(row.clarification_json) or Clarification(
                question="",
                reason="unknown",
            )
            clarification.answer = answer
            clarification.answered_at = now
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) == TaskStatus.AWAITING_RESPONSE.value,
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    clarification_json=clarification.to_json(),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(task_id, previous.value, TaskStatus.RUNNING.value)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="responded",
                status_from=TaskStatus.AWAITING_RESPONSE,
                status_to=TaskStatus.RUNNING,
                details={"question": clarification.question, "answer": answer},
            )
            session.commit()
            return self._reload(session=session, task_id=task_id)

    def cancel(self, task_id: str) -> TaskView:
        """Cancel a queued, running or suspended task."""

        now = utc_now()
        with self._session() as session:
            row = self._get_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in CANCELLABLE_STATUSES:
                raise InvalidTransitionError(task_id, previous.value, TaskStatus.CANCELLED.value)
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(task_id, previous.value, TaskStatus.CANCELLED.value)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=previous,
                status_to=TaskStatus.CANCELLED,
                details={},
            )
            session.commit()
            return self._reload(session=session, task_id=task_id)

    def recover_on_startup(self, namespace: str) -> list[str]:
        """Requeue every task left RUNNING by a previous process."""

        return self._requeue_running(namespace=namespace, stale_before=None)

    def recover_stale_tasks(self, namespace: str, *, stale_after: timedelta) -> list[str]:
        """Requeue RUNNING tasks whose heartbeat is older than ``stale_after``."""

        return self._requeue_running(namespace=namespace, stale_before=utc_now() - stale_after)

    def heartbeat(self, task_id: str) -> bool:
        """Update heartbeat for a running task."""

        now = utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) == TaskStatus.RUNNING.value,
                )
                .values(heartbeat_at=to_db_datetime(now)),
            )
            session.commit()
            return result.rowcount == 1

    def get(self, task_id: str) -> TaskView:
        with self._session() as session:
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def list_tasks(
        self,
        *,
        namespace: str | None = None,
        status: TaskStatus | None = None,
        group_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered."""

        with self._session() as session:
            statement = select(QueueTask)
            if namespace is not None:
                statement = statement.where(QueueTask.namespace == namespace)
            if status is not None:
                statement = statement.where(QueueTask.status == status.value)
            if group_id is not None:
                statement = statement.where(QueueTask.group_id == group_id)
            rows = session.exec(
                statement.order_by(col(QueueTask.created_at).desc()).limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_groups(self, namespace: str) -> list[TaskGroupSummary]:
        """Summarize task groups with per-status counts."""

        with self._session() as session:
            rows = session.exec(
                select(
                    QueueTask.group_id,
                    QueueTask.status,
                    func.count(),
                    func.min(QueueTask.created_at),
                    func.max(QueueTask.updated_at),
                )
                .where(QueueTask.namespace == namespace)
                .group_by(QueueTask.group_id, QueueTask.status),
            ).all()

        summaries: dict[str, TaskGroupSummary] = {}
        for group_id, status, count, created_at, updated_at in rows:
            created = to_utc_aware_datetime(created_at)
            updated = to_utc_aware_datetime(updated_at)
            summary = summaries.get(group_id)
            if summary is None:
                summary = TaskGroupSummary(
                    namespace=namespace,
                    group_id=group_id,
                    task_count=0,
                    status_counts={},
                    created_at=created,
                    latest_updated_at=updated,
                )
                summaries[group_id] = summary
            summary.task_count += int(count)
            summary.status_counts[status] = int(count)
            summary.created_at = min(summary.created_at, created)
            summary.latest_updated_at = max(summary.latest_updated_at, updated)
        return sorted(summaries.values(), key=lambda item: item.created_at)

    def list_namespaces(self) -> list[str]:
        with self._session() as session:
            rows = session.exec(
                select(QueueTask.namespace).distinct().order_by(col(QueueTask.namespace)),
            ).all()
        return [str(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with self._session() as session:
            task = session.exec(
                select(QueueTask).where(QueueTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None
            event_rows = session.exec(
                select(QueueTaskEvent)
                .where(QueueTaskEvent.task_id == task_id)
                .order_by(col(QueueTaskEvent.created_at).asc(), col(QueueTaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details: dict[str, Any] = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=_to_task_view(task), events=events)

    def add_event(  # noqa: PLR0913
        self,
        task_id: str,
        event_type: str,
        details: dict[str, Any],
        *,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
    ) -> None:
        """Persist an audit event for an existing task."""

        with self._session() as session:
            self._get_row(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
            )
            session.commit()

    def _transition(
        self,
        *,
        task_id: str,
        status_to: TaskStatus,
        values: dict[str, Any],
        event_type: str,
        details: dict[str, object],
    ) -> TaskView:
        with self._session() as session:
            row = self._get_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            validate_transition(task_id=task_id, status_from=previous, status_to=status_to)
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.task_id) == task_id,
                    col(QueueTask.status) == previous.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                current = self._get_row(session=session, task_id=task_id)
                raise InvalidTransitionError(task_id, current.status, status_to.value)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous,
                status_to=status_to,
                details=details,
            )
            session.commit()
            return self._reload(session=session, task_id=task_id)

    def _requeue_running(self, *, namespace: str, stale_before: Any) -> list[str]:
        now = utc_now()
        recovered: list[str] = []
        with self._session() as session:
            statement = select(QueueTask).where(
                QueueTask.namespace == namespace,
                QueueTask.status == TaskStatus.RUNNING.value,
            )
            if stale_before is not None:
                statement = statement.where(
                    col(QueueTask.heartbeat_at) < to_db_datetime(stale_before),
                )
            rows = session.exec(statement).all()
            for row in rows:
                result = session.exec(
                    sa_update(QueueTask)
                    .where(
                        col(QueueTask.task_id) == row.task_id,
                        col(QueueTask.status) == TaskStatus.RUNNING.value,
                    )
                    .values(
                        status=TaskStatus.QUEUED.value,
                        worker_id=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="recovered" if stale_before is None else "stale_recovered",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.QUEUED,
                    details={"previous_worker_id": row.worker_id},
                )
                recovered.append(row.task_id)
            session.commit()
        if recovered:
            logger.warning(
                "Requeued %d RUNNING task(s) in namespace %s: %s",
                len(recovered),
                namespace,
                ", ".join(recovered),
            )
        return recovered

    def _get_row(self, *, session: Session, task_id: str) -> QueueTask:
        row = session.exec(select(QueueTask).where(QueueTask.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFoundError(task_id)
        return row

    def _reload(self, *, session: Session, task_id: str) -> TaskView:
        session.expire_all()
        return _to_task_view(self._get_row(session=session, task_id=task_id))

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            QueueTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _to_task_view(row: QueueTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        namespace=row.namespace,
        group_id=row.group_id,
        task_type=TaskType(row.task_type),
        prompt=row.prompt,
        status=TaskStatus(row.status),
        output=row.output,
        error_message=row.error_message,
        failure_type=row.failure_type,
        clarification=Clarification.from_json(row.clarification_json),
        settings_snapshot=SettingsSnapshot.from_json(row.settings_json),
        attempt=row.attempt,
        worker_id=row.worker_id,
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        finished_at=optional_utc(row.finished_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
