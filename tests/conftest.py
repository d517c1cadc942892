"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from pm_orchestrator.queue.memory import InMemoryQueueStore
from pm_orchestrator.queue.models import TaskCreate, TaskType, TaskView
from pm_orchestrator.queue.repository import SqlQueueStore

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m pm_orchestrator.executor.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path) -> None:
    """Drop PM_ORCHESTRATOR_* variables leaking from the developer shell."""

    for name in list(os.environ):
        if name.startswith("PM_ORCHESTRATOR_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PM_ORCHESTRATOR_DB_PATH", str(tmp_path / "default.db"))


@pytest.fixture()
def sql_store(tmp_path: Path) -> Iterator[SqlQueueStore]:
    store = SqlQueueStore(tmp_path / "queue.db")
    store.init_schema()
    yield store
    store.close()


@pytest.fixture(params=["sql", "memory"])
def store(request, tmp_path: Path):
    """Both queue store backends; they honor the same contract."""

    if request.param == "memory":
        yield InMemoryQueueStore()
        return
    backend = SqlQueueStore(tmp_path / "queue.db")
    backend.init_schema()
    yield backend
    backend.close()


def enqueue(
    store,
    prompt: str = "Summarize the README",
    *,
    namespace: str = "default",
    group_id: str = "group-1",
    task_type: TaskType = TaskType.READ_INFO,
    task_id: str | None = None,
) -> TaskView:
    return store.enqueue(
        TaskCreate(
            namespace=namespace,
            group_id=group_id,
            prompt=prompt,
            task_type=task_type,
            task_id=task_id,
        ),
    )
