from __future__ import annotations

import random

import allure
import pytest

from pm_orchestrator.retry.backoff import BackoffKind, BackoffStrategy, calculate_backoff
from pm_orchestrator.retry.circuit_breaker import BreakerScope, CircuitBreaker, CircuitState
from pm_orchestrator.retry.failure_classifier import FailureType, classify_failure
from pm_orchestrator.retry.manager import (
    RetryConfig,
    RetryEvent,
    RetryManager,
    recommended_cause_policies,
)
from pm_orchestrator.retry.recovery import (
    RecoveryStrategy,
    build_escalation_report,
    determine_recovery_strategy,
)

pytestmark = [
    allure.epic("Reliability"),
    allure.feature("Retry Policy"),
]


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


class _HttpError(RuntimeError):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Error: invalid API key provided", FailureType.AUTH_ERROR),
        ("This model's maximum context length is 8192 tokens", FailureType.CONTEXT_LENGTH_EXCEEDED),
        ("Rate limit reached for requests", FailureType.RATE_LIMIT),
        ("Request timed out after 600s", FailureType.TIMEOUT),
        ("connection reset by peer", FailureType.NETWORK_ERROR),
        ("Service Unavailable", FailureType.TRANSIENT_ERROR),
        ("model not found: gpt-9", FailureType.MODEL_UNAVAILABLE),
        ("You exceeded your current quota", FailureType.MODEL_LIMIT),
        ("something odd happened", FailureType.UNKNOWN),
        ("HTTP 429", FailureType.RATE_LIMIT),
        ("Requests are being throttled", FailureType.RATE_LIMIT),
        ("request id req_4290abc failed", FailureType.UNKNOWN),
        ("/tmp/dnsmasq/run.log missing", FailureType.UNKNOWN),
        ("authentication service temporarily unavailable", FailureType.TRANSIENT_ERROR),
        ("Authentication failed for user", FailureType.AUTH_ERROR),
    ],
)
def test_classifier_maps_messages(message: str, expected: FailureType) -> None:
    assert classify_failure(message).failure_type == expected


def test_classifier_prefers_exception_type_and_status_code() -> None:
    assert classify_failure(TimeoutError("slow")).failure_type == FailureType.TIMEOUT
    assert classify_failure(ConnectionRefusedError("nope")).failure_type == FailureType.NETWORK_ERROR

    classification = classify_failure(_HttpError("boom", 429))

    assert classification.failure_type == FailureType.RATE_LIMIT
    assert classification.matched_rule == "status_code"
    assert classification.to_event_details()["reason_code"] == "http_429"


def test_exponential_backoff_without_jitter_is_capped() -> None:
    strategy = BackoffStrategy(jitter=False)

    assert [calculate_backoff(attempt, strategy) for attempt in range(7)] == [
        1_000,
        2_000,
        4_000,
        8_000,
        16_000,
        30_000,
        30_000,
    ]


def test_fixed_and_linear_backoff() -> None:
    fixed = BackoffStrategy(kind=BackoffKind.FIXED, initial_ms=500, jitter=False)
    linear = BackoffStrategy(kind=BackoffKind.LINEAR, initial_ms=500, jitter=False)

    assert calculate_backoff(3, fixed) == 500
    assert calculate_backoff(3, linear) == 2_000


def test_jitter_stays_within_ten_percent_and_under_cap() -> None:
    rng = random.Random(7)
    strategy = BackoffStrategy(jitter=True)

    for attempt in range(8):
        base = min(1_000 * 2**attempt, 30_000)
        delay = calculate_backoff(attempt, strategy, rng=rng)
        assert base * 0.9 <= delay <= min(base * 1.1, 30_000)


def test_backoff_is_strictly_increasing_below_cap() -> None:
    assert [calculate_backoff(attempt) for attempt in range(3)] == [1_000, 2_000, 4_000]

    strategy = BackoffStrategy(jitter=True)
    for seed in range(200):
        rng = random.Random(seed)
        delays = [calculate_backoff(attempt, strategy, rng=rng) for attempt in range(5)]
        assert all(earlier < later for earlier, later in zip(delays, delays[1:]))


def test_breaker_opens_after_threshold_and_half_opens_after_cooldown() -> None:
    clock = _Clock()
    changes: list[tuple[CircuitState, CircuitState]] = []
    breaker = CircuitBreaker(
        BreakerScope("openai", "gpt-4o"),
        threshold=3,
        cooldown_seconds=60,
        clock=clock,
        on_state_change=lambda _scope, old, new: changes.append((old, new)),
    )

    for _ in range(2):
        breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert breaker.allow_request() is False

    clock.now += 60
    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.allow_request() is True
    assert breaker.allow_request() is False

    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN

    clock.now += 60
    assert breaker.allow_request() is True
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED
    assert changes == [
        (CircuitState.CLOSED, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
        (CircuitState.HALF_OPEN, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
        (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]


def test_success_resets_consecutive_failures() -> None:
    breaker = CircuitBreaker(BreakerScope("openai", "gpt-4o"), threshold=2)

    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()

    assert breaker.state == CircuitState.CLOSED
    assert breaker.snapshot().consecutive_failures == 1


def test_released_half_open_slot_lets_next_attempt_through() -> None:
    clock = _Clock()
    breaker = CircuitBreaker(BreakerScope("openai", "gpt-4o"), threshold=1, cooldown_seconds=1, clock=clock)
    breaker.record_failure()
    clock.now += 1

    assert breaker.allow_request() is True
    assert breaker.allow_request() is False
    breaker.release_probe()

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.allow_request() is True


def test_escalation_spends_retry_budget() -> None:
    manager = RetryManager(RetryConfig(max_retries=1))
    context = manager.context_for("task-1")

    first = manager.record_failure(context, FailureType.CONTEXT_LENGTH_EXCEEDED)
    escalation = manager.record_escalation(context, first)
    second = manager.record_failure(context, FailureType.CONTEXT_LENGTH_EXCEEDED)

    assert escalation is not None
    assert escalation.retry is True
    assert escalation.reason == "escalate_model:CONTEXT_LENGTH_EXCEEDED"
    assert context.attempt_count == 1
    assert manager.record_escalation(context, second) is None
    assert [attempt.decision for attempt in context.history] == [False, True, False]


def test_retry_manager_budget_and_backoff_sequence() -> None:
    manager = RetryManager(RetryConfig(backoff=BackoffStrategy(jitter=False)))
    context = manager.context_for("task-1")

    decisions = [manager.record_failure(context, FailureType.TRANSIENT_ERROR) for _ in range(4)]

    assert [decision.retry for decision in decisions] == [True, True, True, False]
    assert [decision.backoff_ms for decision in decisions[:3]] == [1_000, 2_000, 4_000]
    assert decisions[3].reason == "max_retries_exceeded:3/3"
    assert context.attempt_count == 3
    assert len(context.history) == 4


@pytest.mark.parametrize("failure_type", [FailureType.AUTH_ERROR, FailureType.CONTEXT_LENGTH_EXCEEDED])
def test_never_retryable_failures(failure_type: FailureType) -> None:
    manager = RetryManager()
    decision = manager.record_failure(manager.context_for("task-1"), failure_type)

    assert decision.retry is False
    assert decision.reason.startswith("non_retryable")
    assert decision.escalate_model is (failure_type == FailureType.CONTEXT_LENGTH_EXCEEDED)


def test_unknown_failure_is_not_retried_by_default() -> None:
    manager = RetryManager()

    decision = manager.record_failure(manager.context_for("task-1"), FailureType.UNKNOWN)

    assert decision.retry is False
    assert decision.reason == "not_in_retryable_set:UNKNOWN"


def test_retry_decision_carries_prompt_hint() -> None:
    manager = RetryManager(RetryConfig(backoff=BackoffStrategy(jitter=False)))

    decision = manager.record_failure(manager.context_for("task-1"), FailureType.TIMEOUT)

    assert decision.retry is True
    assert decision.hint is not None
    assert "timed out" in decision.hint


def test_breaker_trip_stops_retries_for_scope() -> None:
    manager = RetryManager(
        RetryConfig(max_retries=10, backoff=BackoffStrategy(jitter=False)),
        breaker_threshold=2,
    )
    scope = BreakerScope("openai", "gpt-4o")
    context = manager.context_for("task-1")

    first = manager.record_failure(context, FailureType.RATE_LIMIT, scope=scope)
    second = manager.record_failure(context, FailureType.RATE_LIMIT, scope=scope)

    assert first.retry is True
    assert second.retry is False
    assert second.reason == "circuit_open:openai/gpt-4o"
    assert manager.allow_attempt(scope) is False
    assert manager.allow_attempt(BreakerScope("openai", "gpt-4o-mini")) is True


def test_cause_specific_policies_override_budget() -> None:
    manager = RetryManager(RetryConfig(cause_policies=recommended_cause_policies()))
    context = manager.context_for("task-1")

    decisions = [manager.record_failure(context, FailureType.TIMEOUT) for _ in range(3)]

    assert [decision.retry for decision in decisions] == [True, True, False]
    assert decisions[0].backoff_ms == 5_000


def test_retry_events_reach_subscribers() -> None:
    manager = RetryManager(RetryConfig(backoff=BackoffStrategy(jitter=False)))
    events: list[RetryEvent] = []
    manager.subscribe(events.append)

    manager.classify("rate limit", key="task-1")
    manager.record_failure(manager.context_for("task-1"), FailureType.RATE_LIMIT)
    manager.unsubscribe(events.append)
    manager.classify("rate limit", key="task-1")

    assert [event.event_type for event in events] == [
        "FAILURE_CLASSIFIED",
        "BACKOFF_CALCULATED",
        "RETRY_DECISION",
    ]


def test_recovery_strategy_selection() -> None:
    dependencies = {"s2": ["s1"], "s3": []}

    assert determine_recovery_strategy([], ["s1", "s2"], dependencies) == RecoveryStrategy.PARTIAL_COMMIT
    assert (
        determine_recovery_strategy(["s1"], ["s2", "s3"], dependencies)
        == RecoveryStrategy.ROLLBACK_AND_RETRY
    )
    assert (
        determine_recovery_strategy(["s3"], ["s1", "s2"], dependencies)
        == RecoveryStrategy.RETRY_FAILED_ONLY
    )


def test_escalation_report_summarizes_history() -> None:
    manager = RetryManager(RetryConfig(max_retries=1, backoff=BackoffStrategy(jitter=False)))
    context = manager.context_for("task-9")
    manager.record_failure(context, FailureType.TIMEOUT)
    manager.record_failure(context, FailureType.TIMEOUT)

    report = build_escalation_report(context, FailureType.TIMEOUT)

    assert report.attempts == 2
    assert report.failure_counts == {"TIMEOUT": 2}
    assert report.last_reason == "max_retries_exceeded:1/1"
    lines = report.render()
    assert lines[0] == "Task task-9 failed with TIMEOUT after 2 attempt(s)."
    assert any("executor timeout" in line for line in lines)
