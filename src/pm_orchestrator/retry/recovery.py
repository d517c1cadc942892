"""Partial-failure recovery for chunked work and escalation reports."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from pm_orchestrator.retry.failure_classifier import FailureType
from pm_orchestrator.retry.manager import RetryContext


class RecoveryStrategy(str, Enum):
    PARTIAL_COMMIT = "PARTIAL_COMMIT"
    ROLLBACK_AND_RETRY = "ROLLBACK_AND_RETRY"
    RETRY_FAILED_ONLY = "RETRY_FAILED_ONLY"


def determine_recovery_strategy(
    failed: Iterable[str],
    succeeded: Iterable[str],
    dependencies: Mapping[str, Iterable[str]],
) -> RecoveryStrategy:
    """Choose how to recover a partially failed set of subtasks.

    No failures keeps the successful work. A successful subtask that depends
    on a failed one was built on bad input, so everything is redone.
    Otherwise only the failed subtasks are retried.
    """

    failed_ids = set(failed)
    if not failed_ids:
        return RecoveryStrategy.PARTIAL_COMMIT
    for subtask_id in succeeded:
        if failed_ids.intersection(dependencies.get(subtask_id, ())):
            return RecoveryStrategy.ROLLBACK_AND_RETRY
    return RecoveryStrategy.RETRY_FAILED_ONLY


_RECOMMENDED_ACTIONS: dict[FailureType, tuple[str, ...]] = {
    FailureType.AUTH_ERROR: (
        "Verify the provider credentials configured for the executor.",
        "Check that the account has access to the selected model.",
    ),
    FailureType.CONTEXT_LENGTH_EXCEEDED: (
        "Split the task into smaller subtasks.",
        "Select a model with a larger context window.",
    ),
    FailureType.MODEL_LIMIT: (
        "Reduce the requested output size.",
        "Check the provider quota for the selected model.",
    ),
    FailureType.RATE_LIMIT: (
        "Lower dispatcher concurrency.",
        "Retry later or enable cause-specific rate-limit backoff.",
    ),
    FailureType.TIMEOUT: (
        "Increase the executor timeout.",
        "Split the task into smaller subtasks.",
    ),
    FailureType.MODEL_UNAVAILABLE: ("Switch the model profile or override the model.",),
    FailureType.NETWORK_ERROR: ("Check network connectivity to the provider.",),
    FailureType.TRANSIENT_ERROR: ("Retry the task later.",),
    FailureType.UNKNOWN: ("Inspect the task output and events for the root cause.",),
}


@dataclass(slots=True)
class EscalationReport:
    task_key: str
    failure_type: FailureType
    attempts: int
    failure_counts: dict[str, int]
    last_reason: str | None
    recommended_actions: list[str] = field(default_factory=list)

    def render(self) -> list[str]:
        lines = [
            f"Task {self.task_key} failed with {self.failure_type.value} after {self.attempts} attempt(s).",
        ]
        if self.failure_counts:
            counts = ", ".join(f"{name}={count}" for name, count in sorted(self.failure_counts.items()))
            lines.append(f"Failures: {counts}")
        if self.last_reason:
            lines.append(f"Last decision: {self.last_reason}")
        lines.extend(f"- {action}" for action in self.recommended_actions)
        return lines


def build_escalation_report(context: RetryContext, failure_type: FailureType) -> EscalationReport:
    counts: dict[str, int] = {}
    for attempt in context.history:
        counts[attempt.failure_type.value] = counts.get(attempt.failure_type.value, 0) + 1
    return EscalationReport(
        task_key=context.key,
        failure_type=failure_type,
        attempts=len(context.history),
        failure_counts=counts,
        last_reason=context.history[-1].reason if context.history else None,
        recommended_actions=list(_RECOMMENDED_ACTIONS.get(failure_type, ())),
    )
