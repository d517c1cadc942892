"""Failure classification, retry budgets, backoff and circuit breakers."""

from pm_orchestrator.retry.backoff import BackoffKind, BackoffStrategy, calculate_backoff
from pm_orchestrator.retry.circuit_breaker import (
    BreakerScope,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from pm_orchestrator.retry.failure_classifier import (
    FailureClassification,
    FailureType,
    classify_failure,
)
from pm_orchestrator.retry.manager import (
    CauseSpecificPolicy,
    RetryConfig,
    RetryContext,
    RetryDecision,
    RetryEvent,
    RetryManager,
    recommended_cause_policies,
    retry_hint,
)
from pm_orchestrator.retry.recovery import (
    EscalationReport,
    RecoveryStrategy,
    build_escalation_report,
    determine_recovery_strategy,
)

__all__ = [
    "BackoffKind",
    "BackoffStrategy",
    "BreakerScope",
    "CauseSpecificPolicy",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "EscalationReport",
    "FailureClassification",
    "FailureType",
    "RecoveryStrategy",
    "RetryConfig",
    "RetryContext",
    "RetryDecision",
    "RetryEvent",
    "RetryManager",
    "build_escalation_report",
    "calculate_backoff",
    "classify_failure",
    "determine_recovery_strategy",
    "recommended_cause_policies",
    "retry_hint",
]
