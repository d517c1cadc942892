from __future__ import annotations

import allure
import pytest

from pm_orchestrator.config import TaskDefaultsSettings
from pm_orchestrator.queue.memory import InMemoryQueueStore
from pm_orchestrator.queue.models import TaskStatus, TaskType
from pm_orchestrator.services import (
    EnvSettingsProvider,
    KeywordTaskTypeClassifier,
    TaskSubmission,
    TaskSubmissionService,
)

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Submission"),
]


@pytest.mark.parametrize(
    ("prompt", "expected"),
    [
        ("What does the scheduler module do?", TaskType.READ_INFO),
        ("Explain the retry policy", TaskType.READ_INFO),
        ("Summarize this week's progress", TaskType.REPORT),
        ("Add a logout button to the header", TaskType.IMPLEMENTATION),
        ("How should we fix the login bug", TaskType.IMPLEMENTATION),
        ("ログイン画面を実装してください", TaskType.IMPLEMENTATION),
        ("今週の進捗を要約して", TaskType.REPORT),
        ("hello", TaskType.READ_INFO),
    ],
)
def test_keyword_classifier(prompt: str, expected: TaskType) -> None:
    assert KeywordTaskTypeClassifier().classify(prompt) == expected


def _service(defaults: TaskDefaultsSettings | None = None) -> TaskSubmissionService:
    return TaskSubmissionService(
        store=InMemoryQueueStore(),
        settings_provider=EnvSettingsProvider(defaults or TaskDefaultsSettings()),
    )


def test_submit_infers_type_and_freezes_settings() -> None:
    service = _service(TaskDefaultsSettings(provider="anthropic", model="claude-3-haiku-20240307"))

    task = service.submit(TaskSubmission(prompt="  Add input validation  ", namespace="proj"))

    assert task.status == TaskStatus.QUEUED
    assert task.prompt == "Add input validation"
    assert task.task_type == TaskType.IMPLEMENTATION
    assert task.group_id.startswith("group-")
    assert task.settings_snapshot.provider == "anthropic"
    assert task.settings_snapshot.model == "claude-3-haiku-20240307"


def test_submit_honors_explicit_values() -> None:
    task = _service().submit(
        TaskSubmission(
            prompt="Add input validation",
            group_id="g-7",
            task_type=TaskType.REPORT,
            model="gpt-4o-mini",
            provider="openai",
            task_id="task-fixed",
        ),
    )

    assert (task.task_id, task.group_id, task.task_type) == ("task-fixed", "g-7", TaskType.REPORT)
    assert task.settings_snapshot.model == "gpt-4o-mini"


@pytest.mark.parametrize(
    ("submission", "message"),
    [
        (TaskSubmission(prompt="   "), "prompt must not be empty"),
        (TaskSubmission(prompt="List files", namespace=" "), "namespace must not be empty"),
    ],
)
def test_submit_validates_input(submission: TaskSubmission, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        _service().submit(submission)
