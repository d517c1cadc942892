"""Finalization of executor results as an exhaustive status x task type table."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from pm_orchestrator.clarification.prompts import generate_fallback_question
from pm_orchestrator.clarification.question_detector import (
    extract_questions,
    has_unanswered_questions,
)
from pm_orchestrator.executor.base import ExecutorResult, ExecutorStatus
from pm_orchestrator.queue.models import TaskType


class FinalizationOutcome(str, Enum):
    COMPLETE = "COMPLETE"
    CLARIFY = "CLARIFY"
    ERROR = "ERROR"
    FAILURE = "FAILURE"


@dataclass(slots=True)
class FinalizationDecision:
    outcome: FinalizationOutcome
    output: str
    reason: str
    question: str | None = None
    options: tuple[str, ...] = ()
    error_message: str | None = None


FinalizationHandler = Callable[[ExecutorResult, str], FinalizationDecision]


def _complete(result: ExecutorResult, reason: str) -> FinalizationDecision:
    return FinalizationDecision(
        outcome=FinalizationOutcome.COMPLETE,
        output=result.output,
        reason=reason,
    )


def _clarify(result: ExecutorResult, question: str, reason: str) -> FinalizationDecision:
    return FinalizationDecision(
        outcome=FinalizationOutcome.CLARIFY,
        output=result.output,
        reason=reason,
        question=question,
        options=result.options,
    )


def _explicit_question(result: ExecutorResult) -> FinalizationDecision | None:
    if result.clarification_question and result.clarification_question.strip():
        return _clarify(result, result.clarification_question.strip(), "executor_question")
    return None


def _detected_question(result: ExecutorResult) -> FinalizationDecision | None:
    if not has_unanswered_questions(result.output):
        return None
    questions = extract_questions(result.output)
    question = questions[-1] if questions else result.output.strip()[-500:]
    return _clarify(result, question, "detected_question")


def _read_complete(result: ExecutorResult, prompt: str) -> FinalizationDecision:
    return (
        _explicit_question(result)
        or _detected_question(result)
        or _complete(result, "executor_complete")
    )


def _implementation_complete(result: ExecutorResult, prompt: str) -> FinalizationDecision:
    return _explicit_question(result) or _complete(result, "executor_complete")


def _read_deliverable(result: ExecutorResult, prompt: str) -> FinalizationDecision:
    """Read-only tasks: the output itself is the deliverable."""

    explicit = _explicit_question(result)
    if explicit is not None:
        return explicit
    if result.output.strip():
        return _detected_question(result) or _complete(
            result,
            f"output_is_deliverable:{result.status.value}",
        )
    return _clarify(result, generate_fallback_question(prompt), "missing_output")


def _implementation_terminal(result: ExecutorResult, prompt: str) -> FinalizationDecision:
    return FinalizationDecision(
        outcome=FinalizationOutcome.ERROR,
        output=result.output,
        reason=f"implementation_{result.status.value.lower()}",
        error_message=f"Task ended with status: {result.status.value}",
    )


def _implementation_blocked(result: ExecutorResult, prompt: str) -> FinalizationDecision:
    return _explicit_question(result) or _implementation_terminal(result, prompt)


def _failure(result: ExecutorResult, prompt: str) -> FinalizationDecision:
    return FinalizationDecision(
        outcome=FinalizationOutcome.FAILURE,
        output=result.output,
        reason="executor_error",
        error_message=result.error or "Executor reported ERROR without a message.",
    )


FINALIZATION_TABLE: dict[tuple[ExecutorStatus, TaskType], FinalizationHandler] = {
    (ExecutorStatus.COMPLETE, TaskType.READ_INFO): _read_complete,
    (ExecutorStatus.COMPLETE, TaskType.REPORT): _read_complete,
    (ExecutorStatus.COMPLETE, TaskType.IMPLEMENTATION): _implementation_complete,
    (ExecutorStatus.INCOMPLETE, TaskType.READ_INFO): _read_deliverable,
    (ExecutorStatus.INCOMPLETE, TaskType.REPORT): _read_deliverable,
    (ExecutorStatus.INCOMPLETE, TaskType.IMPLEMENTATION): _implementation_terminal,
    (ExecutorStatus.NO_EVIDENCE, TaskType.READ_INFO): _read_deliverable,
    (ExecutorStatus.NO_EVIDENCE, TaskType.REPORT): _read_deliverable,
    (ExecutorStatus.NO_EVIDENCE, TaskType.IMPLEMENTATION): _implementation_terminal,
    (ExecutorStatus.BLOCKED, TaskType.READ_INFO): _read_deliverable,
    (ExecutorStatus.BLOCKED, TaskType.REPORT): _read_deliverable,
    (ExecutorStatus.BLOCKED, TaskType.IMPLEMENTATION): _implementation_blocked,
    (ExecutorStatus.ERROR, TaskType.READ_INFO): _failure,
    (ExecutorStatus.ERROR, TaskType.REPORT): _failure,
    (ExecutorStatus.ERROR, TaskType.IMPLEMENTATION): _failure,
}


def _check_exhaustive() -> None:
    missing = [
        (status.value, task_type.value)
        for status in ExecutorStatus
        for task_type in TaskType
        if (status, task_type) not in FINALIZATION_TABLE
    ]
    if missing:
        raise RuntimeError(f"Finalization table is missing entries: {missing}")


_check_exhaustive()


def finalize(result: ExecutorResult, task_type: TaskType, prompt: str) -> FinalizationDecision:
    return FINALIZATION_TABLE[(result.status, task_type)](result, prompt)
