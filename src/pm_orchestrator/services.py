"""Use-case services for task submission."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

from pm_orchestrator.config import TaskDefaultsSettings
from pm_orchestrator.queue.models import SettingsSnapshot, TaskCreate, TaskType, TaskView
from pm_orchestrator.queue.store import QueueStore

_IMPLEMENTATION_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(implement|add|create|build|write|fix|refactor|rename|update|modify|delete|remove)\b",
        r"\b(migrate|install|configure|deploy|edit|change)\b",
        r"(実装|追加|修正|作成|削除|変更)",
    )
)
_REPORT_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(report|summary|summarize|summarise|overview|status|progress)\b",
        r"(報告|要約|まとめ|レポート)",
    )
)
_READ_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^\s*(what|why|how|where|which|who|when|explain|describe|show|list|tell|check|find)\b",
        r"\?\s*$",
    )
)


class TaskTypeClassifier(Protocol):
    def classify(self, prompt: str) -> TaskType:
        """Infer the task type of ``prompt``."""


class KeywordTaskTypeClassifier:
    """Keyword rules: read-only phrasing first, then reports, then change verbs."""

    def classify(self, prompt: str) -> TaskType:
        text = prompt.strip()
        if any(pattern.search(text) for pattern in _READ_PATTERNS) and not _mentions_change(text):
            return TaskType.READ_INFO
        if any(pattern.search(text) for pattern in _REPORT_PATTERNS):
            return TaskType.REPORT
        if _mentions_change(text):
            return TaskType.IMPLEMENTATION
        return TaskType.READ_INFO


def _mentions_change(text: str) -> bool:
    return any(pattern.search(text) for pattern in _IMPLEMENTATION_PATTERNS)


class SettingsProvider(Protocol):
    def snapshot(self, *, model: str | None = None, provider: str | None = None) -> SettingsSnapshot:
        """Return executor settings to freeze onto a new task."""


class EnvSettingsProvider:
    """Snapshots the configured task defaults at submission time."""

    def __init__(self, defaults: TaskDefaultsSettings) -> None:
        self.defaults = defaults

    def snapshot(self, *, model: str | None = None, provider: str | None = None) -> SettingsSnapshot:
        return SettingsSnapshot(
            provider=provider or self.defaults.provider,
            model=model or self.defaults.model,
            max_tokens=self.defaults.max_tokens,
            temperature=self.defaults.temperature,
        )


@dataclass(slots=True)
class TaskSubmission:
    """High-level command to submit one task."""

    prompt: str
    namespace: str = "default"
    group_id: str | None = None
    task_type: TaskType | None = None
    model: str | None = None
    provider: str | None = None
    task_id: str | None = None


class TaskSubmissionService:
    """Infers the task type, freezes settings and enqueues."""

    def __init__(
        self,
        *,
        store: QueueStore,
        settings_provider: SettingsProvider,
        classifier: TaskTypeClassifier | None = None,
    ) -> None:
        self.store = store
        self.settings_provider = settings_provider
        self.classifier = classifier or KeywordTaskTypeClassifier()

    def submit(self, submission: TaskSubmission) -> TaskView:
        prompt = submission.prompt.strip()
        if not prompt:
            raise ValueError("Task prompt must not be empty.")
        if not submission.namespace.strip():
            raise ValueError("Task namespace must not be empty.")
        task_type = submission.task_type or self.classifier.classify(prompt)
        return self.store.enqueue(
            TaskCreate(
                namespace=submission.namespace,
                group_id=submission.group_id or f"group-{uuid4().hex[:12]}",
                prompt=prompt,
                task_type=task_type,
                settings_snapshot=self.settings_provider.snapshot(
                    model=submission.model,
                    provider=submission.provider,
                ),
                task_id=submission.task_id,
            ),
        )
