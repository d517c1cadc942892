from __future__ import annotations

import threading
import time
from datetime import timedelta

import allure
import pytest
from conftest import enqueue

from pm_orchestrator.queue.errors import (
    InvalidTransitionError,
    NotAwaitingResponseError,
    TaskNotFoundError,
)
from pm_orchestrator.queue.models import Clarification, SettingsSnapshot, TaskCreate, TaskStatus
from pm_orchestrator.queue.repository import SqlQueueStore
from pm_orchestrator.queue.transitions import ALLOWED_TRANSITIONS, is_allowed

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Durable Queue Store"),
]


def test_enqueue_creates_queued_task_with_snapshot(store) -> None:
    task = store.enqueue(
        TaskCreate(
            namespace="proj",
            group_id="g1",
            prompt="Explain the module layout",
            settings_snapshot=SettingsSnapshot(provider="anthropic", model="claude-3-haiku"),
        ),
    )

    assert task.status == TaskStatus.QUEUED
    assert task.attempt == 0
    assert task.output is None
    assert task.settings_snapshot.model == "claude-3-haiku"
    assert store.get(task.task_id).settings_snapshot.provider == "anthropic"


def test_claim_is_fifo_and_marks_running(store) -> None:
    enqueue(store, "first", task_id="t-1")
    time.sleep(0.002)
    enqueue(store, "second", task_id="t-2")

    claimed = store.claim("default", worker_id="w1")

    assert claimed is not None
    assert claimed.task_id == "t-1"
    assert claimed.status == TaskStatus.RUNNING
    assert claimed.attempt == 1
    assert claimed.worker_id == "w1"
    assert claimed.heartbeat_at is not None


def test_claim_respects_namespace_and_returns_none_when_empty(store) -> None:
    enqueue(store, namespace="other")

    assert store.claim("default", worker_id="w1") is None
    assert store.claim("other", worker_id="w1") is not None
    assert store.claim("other", worker_id="w1") is None


def test_claim_specific_task(store) -> None:
    enqueue(store, "first", task_id="t-1")
    enqueue(store, "second", task_id="t-2")

    claimed = store.claim("default", worker_id="w1", task_id="t-2")

    assert claimed is not None
    assert claimed.task_id == "t-2"
    assert store.claim("default", worker_id="w1", task_id="t-2") is None
    assert store.get("t-1").status == TaskStatus.QUEUED


def test_update_status_follows_dag(store) -> None:
    task = enqueue(store)
    store.claim("default", worker_id="w1")

    done = store.update_status(task.task_id, TaskStatus.COMPLETE, output="all good")

    assert done.status == TaskStatus.COMPLETE
    assert done.output == "all good"
    assert done.finished_at is not None
    with pytest.raises(InvalidTransitionError):
        store.update_status(task.task_id, TaskStatus.RUNNING)
    assert store.get(task.task_id).status == TaskStatus.COMPLETE


def test_queued_task_cannot_jump_to_complete(store) -> None:
    task = enqueue(store)

    with pytest.raises(InvalidTransitionError):
        store.update_status(task.task_id, TaskStatus.COMPLETE, output="nope")

    assert store.get(task.task_id).status == TaskStatus.QUEUED


def test_error_records_failure_type(store) -> None:
    task = enqueue(store)
    store.claim("default", worker_id="w1")

    failed = store.update_status(
        task.task_id,
        TaskStatus.ERROR,
        error_message="rate limited",
        failure_type="RATE_LIMIT",
    )

    assert failed.status == TaskStatus.ERROR
    assert failed.failure_type == "RATE_LIMIT"
    assert failed.error_message == "rate limited"


def test_awaiting_response_preserves_partial_output_and_respond_resumes(store) -> None:
    task = enqueue(store)
    store.claim("default", worker_id="w1")

    suspended = store.set_awaiting_response(
        task.task_id,
        Clarification(question="Which database?", reason="preference", options=("sqlite", "postgres")),
        output="Drafted the schema",
    )

    assert suspended.status == TaskStatus.AWAITING_RESPONSE
    assert suspended.output == "Drafted the schema"
    assert suspended.clarification is not None
    assert suspended.clarification.partial_output == "Drafted the schema"
    assert suspended.clarification.options == ("sqlite", "postgres")

    resumed = store.respond(task.task_id, "sqlite")

    assert resumed.status == TaskStatus.RUNNING
    assert resumed.clarification is not None
    assert resumed.clarification.answer == "sqlite"
    assert resumed.clarification.answered_at is not None


def test_respond_requires_awaiting_response(store) -> None:
    task = enqueue(store)

    with pytest.raises(NotAwaitingResponseError):
        store.respond(task.task_id, "yes")


def test_awaiting_to_running_only_through_respond(store) -> None:
    task = enqueue(store)
    store.claim("default", worker_id="w1")
    store.set_awaiting_response(task.task_id, Clarification(question="Proceed?", reason="confirmation"))

    with pytest.raises(InvalidTransitionError):
        store.update_status(task.task_id, TaskStatus.RUNNING)


@pytest.mark.parametrize("claim", [False, True])
def test_cancel_from_non_terminal_states(store, claim: bool) -> None:
    task = enqueue(store)
    if claim:
        store.claim("default", worker_id="w1")

    cancelled = store.cancel(task.task_id)

    assert cancelled.status == TaskStatus.CANCELLED
    with pytest.raises(InvalidTransitionError):
        store.cancel(task.task_id)


def test_heartbeat_only_for_running_tasks(store) -> None:
    task = enqueue(store)

    assert store.heartbeat(task.task_id) is False
    store.claim("default", worker_id="w1")
    assert store.heartbeat(task.task_id) is True
    store.cancel(task.task_id)
    assert store.heartbeat(task.task_id) is False


def test_recover_on_startup_requeues_running_tasks(store) -> None:
    running = enqueue(store, "a", task_id="t-run")
    waiting = enqueue(store, "b", task_id="t-wait")
    store.claim("default", worker_id="w1", task_id=running.task_id)

    recovered = store.recover_on_startup("default")

    assert recovered == ["t-run"]
    assert store.get("t-run").status == TaskStatus.QUEUED
    assert store.get("t-run").worker_id is None
    assert store.get(waiting.task_id).status == TaskStatus.QUEUED
    reclaimed = store.claim("default", worker_id="w2", task_id="t-run")
    assert reclaimed is not None
    assert reclaimed.attempt == 2


def test_recover_stale_tasks_uses_heartbeat_age(store) -> None:
    task = enqueue(store)
    store.claim("default", worker_id="w1")

    assert store.recover_stale_tasks("default", stale_after=timedelta(hours=1)) == []
    time.sleep(0.01)
    assert store.recover_stale_tasks("default", stale_after=timedelta(0)) == [task.task_id]
    assert store.get(task.task_id).status == TaskStatus.QUEUED


def test_unknown_task_raises(store) -> None:
    with pytest.raises(TaskNotFoundError):
        store.get("missing")
    assert store.get_task_details("missing") is None


def test_event_stream_records_each_transition(store) -> None:
    task = enqueue(store)
    store.claim("default", worker_id="w1")
    store.add_event(task.task_id, "subtask_started", {"subtask_id": "s1"})
    store.update_status(task.task_id, TaskStatus.COMPLETE, output="done")

    details = store.get_task_details(task.task_id)

    assert details is not None
    assert [event.event_type for event in details.events] == [
        "enqueued",
        "claimed",
        "subtask_started",
        "status_complete",
    ]
    assert details.events[1].status_from == TaskStatus.QUEUED
    assert details.events[1].status_to == TaskStatus.RUNNING
    assert details.events[2].details == {"subtask_id": "s1"}


def test_listing_groups_and_namespaces(store) -> None:
    enqueue(store, group_id="g1")
    enqueue(store, group_id="g1")
    second = enqueue(store, group_id="g2")
    enqueue(store, namespace="other", group_id="g3")
    store.cancel(second.task_id)

    groups = {group.group_id: group for group in store.list_groups("default")}

    assert set(groups) == {"g1", "g2"}
    assert groups["g1"].task_count == 2
    assert groups["g1"].status_counts == {"QUEUED": 2}
    assert groups["g2"].status_counts == {"CANCELLED": 1}
    assert store.list_namespaces() == ["default", "other"]
    assert len(store.list_tasks(namespace="default")) == 3
    assert len(store.list_tasks(status=TaskStatus.CANCELLED)) == 1
    assert len(store.list_tasks(group_id="g1", limit=1)) == 1


def test_dag_has_no_exits_from_terminal_states() -> None:
    for status in (TaskStatus.COMPLETE, TaskStatus.ERROR, TaskStatus.CANCELLED):
        assert ALLOWED_TRANSITIONS[status] == frozenset()
        assert status.is_terminal
    assert is_allowed(TaskStatus.QUEUED, TaskStatus.RUNNING)
    assert not is_allowed(TaskStatus.RUNNING, TaskStatus.QUEUED)


def test_concurrent_claims_never_share_a_task(sql_store: SqlQueueStore) -> None:
    for index in range(12):
        enqueue(sql_store, f"task {index}")

    claimed: list[str] = []
    lock = threading.Lock()

    def _worker(worker_id: str) -> None:
        while True:
            task = sql_store.claim("default", worker_id=worker_id)
            if task is None:
                return
            with lock:
                claimed.append(task.task_id)

    threads = [threading.Thread(target=_worker, args=(f"w{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed) == 12
    assert len(set(claimed)) == 12


def test_sql_store_persists_across_instances(tmp_path) -> None:
    db_path = tmp_path / "persist.db"
    first = SqlQueueStore(db_path)
    first.init_schema()
    task = enqueue(first)
    first.close()

    second = SqlQueueStore(db_path)
    second.init_schema()
    assert second.get(task.task_id).status == TaskStatus.QUEUED
    second.close()
