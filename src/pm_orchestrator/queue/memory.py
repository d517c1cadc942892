"""In-memory queue store for tests and single-process demos."""

from __future__ import annotations

import copy
import itertools
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from pm_orchestrator.queue.errors import InvalidTransitionError, TaskNotFoundError
from pm_orchestrator.queue.models import (
    Clarification,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskGroupSummary,
    TaskStatus,
    TaskView,
)
from pm_orchestrator.queue.transitions import CANCELLABLE_STATUSES, validate_transition
from pm_orchestrator.storage.common import utc_now


@dataclass(slots=True)
class _Record:
    view: TaskView
    sequence: int
    events: list[TaskEventView] = field(default_factory=list)


class InMemoryQueueStore:
    """Thread-safe queue store honoring the same claim contract as the SQL store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, _Record] = {}
        self._sequence = itertools.count(1)
        self._event_ids = itertools.count(1)

    def close(self) -> None:
        return None

    def enqueue(self, payload: TaskCreate) -> TaskView:
        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        view = TaskView(
            task_id=task_id,
            namespace=payload.namespace,
            group_id=payload.group_id,
            task_type=payload.task_type,
            prompt=payload.prompt,
            status=TaskStatus.QUEUED,
            output=None,
            error_message=None,
            failure_type=None,
            clarification=None,
            settings_snapshot=payload.settings_snapshot,
            attempt=0,
            worker_id=None,
            started_at=None,
            heartbeat_at=None,
            finished_at=None,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            if task_id in self._records:
                raise InvalidTransitionError(task_id, "EXISTS", TaskStatus.QUEUED.value)
            record = _Record(view=view, sequence=next(self._sequence))
            self._records[task_id] = record
            self._append_event(
                record,
                "enqueued",
                None,
                TaskStatus.QUEUED,
                {
                    "namespace": payload.namespace,
                    "group_id": payload.group_id,
                    "task_type": payload.task_type.value,
                },
            )
            return _copy(record.view)

    def claim(
        self,
        namespace: str,
        *,
        worker_id: str,
        task_id: str | None = None,
    ) -> TaskView | None:
        with self._lock:
            candidates = [
                record
                for record in self._records.values()
                if record.view.namespace == namespace
                and record.view.status == TaskStatus.QUEUED
                and (task_id is None or record.view.task_id == task_id)
            ]
            if not candidates:
                return None
            record = min(candidates, key=lambda item: item.sequence)
            now = utc_now()
            record.view = replace(
                record.view,
                status=TaskStatus.RUNNING,
                attempt=record.view.attempt + 1,
                worker_id=worker_id,
                started_at=now,
                heartbeat_at=now,
                finished_at=None,
                updated_at=now,
            )
            self._append_event(
                record,
                "claimed",
                TaskStatus.QUEUED,
                TaskStatus.RUNNING,
                {"worker_id": worker_id, "attempt": record.view.attempt},
            )
            return _copy(record.view)

    def update_status(  # noqa: PLR0913
        self,
        task_id: str,
        status: TaskStatus,
        *,
        output: str | None = None,
        error_message: str | None = None,
        failure_type: str | None = None,
    ) -> TaskView:
        with self._lock:
            record = self._get_record(task_id)
            previous = record.view.status
            validate_transition(task_id=task_id, status_from=previous, status_to=status)
            now = utc_now()
            changes: dict[str, Any] = {"status": status, "updated_at": now}
            if output is not None:
                changes["output"] = output
            if error_message is not None:
                changes["error_message"] = error_message
            if failure_type is not None:
                changes["failure_type"] = failure_type
            if status.is_terminal:
                changes["finished_at"] = now
            record.view = replace(record.view, **changes)
            details: dict[str, Any] = {}
            if failure_type is not None:
                details["failure_type"] = failure_type
            if error_message is not None:
                details["error_message"] = error_message[:500]
            self._append_event(
                record,
                f"status_{status.value.lower()}",
                previous,
                status,
                details,
            )
            return _copy(record.view)

    def set_awaiting_response(
        self,
        task_id: str,
        clarification: Clarification,
        output: str | None = None,
    ) -> TaskView:
        with self._lock:
            record = self._get_record(task_id)
            previous = record.view.status
            validate_transition(
                task_id=task_id,
                status_from=previous,
                status_to=TaskStatus.AWAITING_RESPONSE,
            )
            stored = copy.deepcopy(clarification)
            preserved = output if output is not None else stored.partial_output
            if preserved is not None and stored.partial_output is None:
                stored.partial_output = preserved
            changes: dict[str, Any] = {
                "status": TaskStatus.AWAITING_RESPONSE,
                "clarification": stored,
                "updated_at": utc_now(),
            }
            if preserved is not None:
                changes["output"] = preserved
            record.view = replace(record.view, **changes)
            self._append_event(
                record,
                "awaiting_response",
                previous,
                TaskStatus.AWAITING_RESPONSE,
                {
                    "question": stored.question,
                    "reason": stored.reason,
                    "clarification_type": stored.clarification_type,
                },
            )
            return _copy(record.view)

    def respond(self, task_id: str, answer: str) -> TaskView:
        with self._lock:
            record = self._get_record(task_id)
            validate_transition(
                task_id=task_id,
                status_from=record.view.status,
                status_to=TaskStatus.RUNNING,
                via_respond=True,
            )
            now = utc_now()
            clarification = copy.deepcopy(record.view.clarification) or Clarification(
                question="",
                reason="unknown",
            )
            clarification.answer = answer
            clarification.answered_at = now
            record.view = replace(
                record.view,
                status=TaskStatus.RUNNING,
                clarification=clarification,
                heartbeat_at=now,
                updated_at=now,
            )
            self._append_event(
                record,
                "responded",
                TaskStatus.AWAITING_RESPONSE,
                TaskStatus.RUNNING,
                {"question": clarification.question, "answer": answer},
            )
            return _copy(record.view)

    def cancel(self, task_id: str) -> TaskView:
        with self._lock:
            record = self._get_record(task_id)
            previous = record.view.status
            if previous not in CANCELLABLE_STATUSES:
                raise InvalidTransitionError(task_id, previous.value, TaskStatus.CANCELLED.value)
            now = utc_now()
            record.view = replace(
                record.view,
                status=TaskStatus.CANCELLED,
                finished_at=now,
                updated_at=now,
            )
            self._append_event(record, "cancelled", previous, TaskStatus.CANCELLED, {})
            return _copy(record.view)

    def recover_on_startup(self, namespace: str) -> list[str]:
        return self._requeue_running(namespace=namespace, stale_before=None)

    def recover_stale_tasks(self, namespace: str, *, stale_after: timedelta) -> list[str]:
        return self._requeue_running(namespace=namespace, stale_before=utc_now() - stale_after)

    def heartbeat(self, task_id: str) -> bool:
        with self._lock:
            record = self._records.get(task_id)
            if record is None or record.view.status != TaskStatus.RUNNING:
                return False
            record.view = replace(record.view, heartbeat_at=utc_now())
            return True

    def get(self, task_id: str) -> TaskView:
        with self._lock:
            return _copy(self._get_record(task_id).view)

    def list_tasks(
        self,
        *,
        namespace: str | None = None,
        status: TaskStatus | None = None,
        group_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        with self._lock:
            records = sorted(
                self._records.values(),
                key=lambda item: item.sequence,
                reverse=True,
            )
            views = [
                _copy(record.view)
                for record in records
                if (namespace is None or record.view.namespace == namespace)
                and (status is None or record.view.status == status)
                and (group_id is None or record.view.group_id == group_id)
            ]
        return views[:limit]

    def list_groups(self, namespace: str) -> list[TaskGroupSummary]:
        summaries: dict[str, TaskGroupSummary] = {}
        with self._lock:
            records = sorted(self._records.values(), key=lambda item: item.sequence)
            for record in records:
                view = record.view
                if view.namespace != namespace:
                    continue
                summary = summaries.get(view.group_id)
                if summary is None:
                    summary = TaskGroupSummary(
                        namespace=namespace,
                        group_id=view.group_id,
                        task_count=0,
                        status_counts={},
                        created_at=view.created_at,
                        latest_updated_at=view.updated_at,
                    )
                    summaries[view.group_id] = summary
                summary.task_count += 1
                summary.status_counts[view.status.value] = (
                    summary.status_counts.get(view.status.value, 0) + 1
                )
                summary.latest_updated_at = max(summary.latest_updated_at, view.updated_at)
        return list(summaries.values())

    def list_namespaces(self) -> list[str]:
        with self._lock:
            return sorted({record.view.namespace for record in self._records.values()})

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        with self._lock:
            record = self._records.get(task_id)
            if record is None:
                return None
            return TaskDetails(task=_copy(record.view), events=list(record.events))

    def add_event(  # noqa: PLR0913
        self,
        task_id: str,
        event_type: str,
        details: dict[str, Any],
        *,
        status_from: TaskStatus | None = None,
        status_to: TaskStatus | None = None,
    ) -> None:
        with self._lock:
            record = self._get_record(task_id)
            self._append_event(record, event_type, status_from, status_to, dict(details))

    def _requeue_running(self, *, namespace: str, stale_before: datetime | None) -> list[str]:
        recovered: list[str] = []
        with self._lock:
            for record in sorted(self._records.values(), key=lambda item: item.sequence):
                view = record.view
                if view.namespace != namespace or view.status != TaskStatus.RUNNING:
                    continue
                if (
                    stale_before is not None
                    and view.heartbeat_at is not None
                    and view.heartbeat_at >= stale_before
                ):
                    continue
                record.view = replace(
                    view,
                    status=TaskStatus.QUEUED,
                    worker_id=None,
                    updated_at=utc_now(),
                )
                self._append_event(
                    record,
                    "recovered" if stale_before is None else "stale_recovered",
                    TaskStatus.RUNNING,
                    TaskStatus.QUEUED,
                    {"previous_worker_id": view.worker_id},
                )
                recovered.append(view.task_id)
        return recovered

    def _get_record(self, task_id: str) -> _Record:
        record = self._records.get(task_id)
        if record is None:
            raise TaskNotFoundError(task_id)
        return record

    def _append_event(
        self,
        record: _Record,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, Any],
    ) -> None:
        record.events.append(
            TaskEventView(
                event_id=next(self._event_ids),
                task_id=record.view.task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                created_at=utc_now(),
                details=details,
            ),
        )


def _copy(view: TaskView) -> TaskView:
    return copy.deepcopy(view)
