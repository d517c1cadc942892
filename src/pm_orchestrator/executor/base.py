"""Executor interface: the single external capability that runs a prompt."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from pm_orchestrator.queue.models import SettingsSnapshot


class ExecutorStatus(str, Enum):
    """Result status reported by an executor."""

    COMPLETE = "COMPLETE"
    INCOMPLETE = "INCOMPLETE"
    ERROR = "ERROR"
    NO_EVIDENCE = "NO_EVIDENCE"
    BLOCKED = "BLOCKED"


class ExecutorError(RuntimeError):
    """Hard executor failure; ``kind`` feeds failure classification."""

    def __init__(self, message: str, *, kind: str = "executor_error", status_code: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class ExecutionCancelledError(ExecutorError):
    def __init__(self, message: str = "Execution cancelled.") -> None:
        super().__init__(message, kind="cancelled")


@dataclass(slots=True)
class ExecutorRequest:
    """Inputs for one execution attempt."""

    prompt: str
    settings: SettingsSnapshot
    model: str
    provider: str
    task_id: str
    subtask_id: str | None = None
    timeout_seconds: int = 600
    cancel_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class ExecutorResult:
    """Opaque outcome of one execution attempt."""

    status: ExecutorStatus
    output: str = ""
    clarification_question: str | None = None
    options: tuple[str, ...] = ()
    tokens_in: int = 0
    tokens_out: int = 0
    error: str | None = None


class TaskExecutor(Protocol):
    """Protocol implemented by executor backends."""

    def execute(self, request: ExecutorRequest) -> ExecutorResult:
        """Run the prompt and return its outcome; raise ``ExecutorError`` on hard failure."""


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // 4) if text else 0
