"""Retry decisions: failure classification, retry budget, backoff and breakers."""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pm_orchestrator.retry.backoff import BackoffKind, BackoffStrategy, calculate_backoff
from pm_orchestrator.retry.circuit_breaker import (
    BreakerScope,
    CircuitBreakerRegistry,
    CircuitState,
)
from pm_orchestrator.retry.failure_classifier import (
    ESCALATION_FAILURES,
    NEVER_RETRYABLE,
    FailureClassification,
    FailureType,
    classify_failure,
)
from pm_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETRYABLE: frozenset[FailureType] = frozenset(
    {
        FailureType.TRANSIENT_ERROR,
        FailureType.RATE_LIMIT,
        FailureType.TIMEOUT,
        FailureType.NETWORK_ERROR,
        FailureType.MODEL_UNAVAILABLE,
        FailureType.MODEL_LIMIT,
    },
)


@dataclass(slots=True, frozen=True)
class CauseSpecificPolicy:
    """Override of the retry budget and backoff for one failure type."""

    max_retries: int
    backoff: BackoffStrategy


def recommended_cause_policies() -> dict[FailureType, CauseSpecificPolicy]:
    """Opt-in overrides tuned for provider throttling and slow agents."""

    return {
        FailureType.RATE_LIMIT: CauseSpecificPolicy(
            max_retries=5,
            backoff=BackoffStrategy(initial_ms=5_000, max_ms=60_000),
        ),
        FailureType.TIMEOUT: CauseSpecificPolicy(
            max_retries=2,
            backoff=BackoffStrategy(kind=BackoffKind.FIXED, initial_ms=5_000, max_ms=5_000),
        ),
    }


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 3
    retryable: frozenset[FailureType] = DEFAULT_RETRYABLE
    backoff: BackoffStrategy = field(default_factory=BackoffStrategy)
    cause_policies: dict[FailureType, CauseSpecificPolicy] = field(default_factory=dict)

    def validate(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0.")
        self.backoff.validate()
        for policy in self.cause_policies.values():
            if policy.max_retries < 0:
                raise ValueError("Cause-specific max_retries must be >= 0.")
            policy.backoff.validate()

    def max_retries_for(self, failure_type: FailureType) -> int:
        policy = self.cause_policies.get(failure_type)
        return policy.max_retries if policy is not None else self.max_retries

    def backoff_for(self, failure_type: FailureType) -> BackoffStrategy:
        policy = self.cause_policies.get(failure_type)
        return policy.backoff if policy is not None else self.backoff


@dataclass(slots=True)
class RetryAttempt:
    attempt: int
    failure_type: FailureType
    backoff_ms: int
    decision: bool
    reason: str
    timestamp: datetime


@dataclass(slots=True)
class RetryContext:
    """Retry lineage of one task or subtask; process-local."""

    key: str
    attempt_count: int = 0
    history: list[RetryAttempt] = field(default_factory=list)

    @property
    def last_failure(self) -> FailureType | None:
        if not self.history:
            return None
        return self.history[-1].failure_type


@dataclass(slots=True)
class RetryDecision:
    retry: bool
    reason: str
    failure_type: FailureType
    attempt: int
    backoff_ms: int = 0
    escalate_model: bool = False
    hint: str | None = None

    def to_event_details(self) -> dict[str, Any]:
        return {
            "retry": self.retry,
            "reason": self.reason,
            "failure_type": self.failure_type.value,
            "attempt": self.attempt,
            "backoff_ms": self.backoff_ms,
            "escalate_model": self.escalate_model,
        }


@dataclass(slots=True)
class RetryEvent:
    event_type: str
    key: str
    details: dict[str, Any]
    timestamp: datetime


RetryListener = Callable[[RetryEvent], None]

_RETRY_HINTS: dict[FailureType, str] = {
    FailureType.TIMEOUT: (
        "The previous attempt timed out. Split the work into smaller steps and "
        "report progress after each step."
    ),
    FailureType.CONTEXT_LENGTH_EXCEEDED: (
        "The previous attempt exceeded the context window. Focus only on the files "
        "that are strictly necessary and summarize instead of quoting."
    ),
    FailureType.MODEL_LIMIT: (
        "The previous attempt hit an output limit. Keep the answer concise and "
        "avoid repeating unchanged content."
    ),
    FailureType.RATE_LIMIT: "The previous attempt was rate limited. Avoid unnecessary tool calls.",
    FailureType.NETWORK_ERROR: "The previous attempt lost its connection. Resume from the last step.",
    FailureType.TRANSIENT_ERROR: "The previous attempt failed transiently. Retry the same plan.",
}


def retry_hint(failure_type: FailureType) -> str | None:
    """Prompt note appended to the next attempt after ``failure_type``."""

    return _RETRY_HINTS.get(failure_type)


class RetryManager:
    """Single authority for retry decisions.

    Contexts and breakers are process-local; a restart resets retry budgets.
    """

    def __init__(  # noqa: PLR0913
        self,
        config: RetryConfig | None = None,
        *,
        breaker_threshold: int = 5,
        breaker_cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self.config.validate()
        self._random = rng or random.Random()  # noqa: S311
        self._lock = threading.Lock()
        self._contexts: dict[str, RetryContext] = {}
        self._listeners: list[RetryListener] = []
        self.breakers = CircuitBreakerRegistry(
            threshold=breaker_threshold,
            cooldown_seconds=breaker_cooldown_seconds,
            clock=clock,
            on_state_change=self._on_breaker_change,
        )

    def subscribe(self, listener: RetryListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: RetryListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def context_for(self, key: str) -> RetryContext:
        with self._lock:
            context = self._contexts.get(key)
            if context is None:
                context = RetryContext(key=key)
                self._contexts[key] = context
            return context

    def discard(self, key: str) -> None:
        with self._lock:
            self._contexts.pop(key, None)

    def classify(self, error: BaseException | str, *, key: str = "") -> FailureClassification:
        classification = classify_failure(error)
        self._emit("FAILURE_CLASSIFIED", key, classification.to_event_details())
        return classification

    def calculate_backoff(self, attempt: int, failure_type: FailureType | None = None) -> int:
        strategy = (
            self.config.backoff if failure_type is None else self.config.backoff_for(failure_type)
        )
        return calculate_backoff(attempt, strategy, rng=self._random)

    def allow_attempt(self, scope: BreakerScope) -> bool:
        """Consult the breaker before executing against ``scope``."""

        return self.breakers.get(scope).allow_request()

    def release_attempt(self, scope: BreakerScope) -> None:
        """Settle an admitted attempt that was cancelled or crashed before a verdict."""

        self.breakers.get(scope).release_probe()

    def record_success(self, context: RetryContext, scope: BreakerScope | None = None) -> None:
        if scope is not None:
            self.breakers.get(scope).record_success()
        self._emit("ATTEMPT_SUCCEEDED", context.key, {"attempt": context.attempt_count})

    def should_retry(
        self,
        context: RetryContext,
        failure_type: FailureType,
        *,
        scope: BreakerScope | None = None,
    ) -> RetryDecision:
        """Evaluate the retry rules without mutating ``context``."""

        escalate = failure_type in ESCALATION_FAILURES
        attempt = context.attempt_count
        if failure_type in NEVER_RETRYABLE:
            return RetryDecision(
                retry=False,
                reason=f"non_retryable:{failure_type.value}",
                failure_type=failure_type,
                attempt=attempt,
                escalate_model=escalate,
            )
        if failure_type not in self.config.retryable:
            return RetryDecision(
                retry=False,
                reason=f"not_in_retryable_set:{failure_type.value}",
                failure_type=failure_type,
                attempt=attempt,
            )
        max_retries = self.config.max_retries_for(failure_type)
        if attempt >= max_retries:
            return RetryDecision(
                retry=False,
                reason=f"max_retries_exceeded:{attempt}/{max_retries}",
                failure_type=failure_type,
                attempt=attempt,
                escalate_model=escalate,
            )
        if scope is not None and self.breakers.get(scope).is_open():
            return RetryDecision(
                retry=False,
                reason=f"circuit_open:{scope.label()}",
                failure_type=failure_type,
                attempt=attempt,
                escalate_model=escalate,
            )
        return RetryDecision(
            retry=True,
            reason="retryable",
            failure_type=failure_type,
            attempt=attempt,
            escalate_model=escalate,
            hint=retry_hint(failure_type),
        )

    def record_failure(
        self,
        context: RetryContext,
        failure_type: FailureType,
        *,
        scope: BreakerScope | None = None,
    ) -> RetryDecision:
        """Register a failed attempt and decide what happens next.

        The breaker sees the failure before the decision, so the failure that
        trips it already yields ``retry=False``.
        """

        if scope is not None:
            self.breakers.get(scope).record_failure()
        decision = self.should_retry(context, failure_type, scope=scope)
        if decision.retry:
            decision.backoff_ms = self.calculate_backoff(context.attempt_count, failure_type)
            self._emit(
                "BACKOFF_CALCULATED",
                context.key,
                {"attempt": context.attempt_count, "backoff_ms": decision.backoff_ms},
            )
            context.attempt_count += 1
        context.history.append(
            RetryAttempt(
                attempt=decision.attempt,
                failure_type=failure_type,
                backoff_ms=decision.backoff_ms,
                decision=decision.retry,
                reason=decision.reason,
                timestamp=utc_now(),
            ),
        )
        self._emit("RETRY_DECISION", context.key, decision.to_event_details())
        if decision.retry:
            logger.info(
                "Retry %d for %s after %s in %d ms",
                context.attempt_count,
                context.key,
                failure_type.value,
                decision.backoff_ms,
            )
        else:
            logger.warning(
                "No retry for %s after %s: %s",
                context.key,
                failure_type.value,
                decision.reason,
            )
        return decision

    def record_escalation(self, context: RetryContext, decision: RetryDecision) -> RetryDecision | None:
        """Spend one retry on moving to a larger model.

        Returns ``None`` when ``decision`` does not ask for escalation or the
        retry budget for its failure type is used up.
        """

        if not decision.escalate_model:
            return None
        max_retries = self.config.max_retries_for(decision.failure_type)
        if context.attempt_count >= max_retries:
            logger.warning(
                "No model escalation for %s: retry budget %d/%d used",
                context.key,
                context.attempt_count,
                max_retries,
            )
            return None
        escalation = RetryDecision(
            retry=True,
            reason=f"escalate_model:{decision.failure_type.value}",
            failure_type=decision.failure_type,
            attempt=context.attempt_count,
            escalate_model=True,
            hint=retry_hint(decision.failure_type),
        )
        context.attempt_count += 1
        context.history.append(
            RetryAttempt(
                attempt=escalation.attempt,
                failure_type=escalation.failure_type,
                backoff_ms=0,
                decision=True,
                reason=escalation.reason,
                timestamp=utc_now(),
            ),
        )
        self._emit("RETRY_DECISION", context.key, escalation.to_event_details())
        return escalation

    def _on_breaker_change(
        self,
        scope: BreakerScope,
        previous: CircuitState,
        current: CircuitState,
    ) -> None:
        self._emit(
            "CIRCUIT_STATE_CHANGED",
            scope.label(),
            {"provider": scope.provider, "model": scope.model, "from": previous.value, "to": current.value},
        )

    def _emit(self, event_type: str, key: str, details: dict[str, Any]) -> None:
        event = RetryEvent(event_type=event_type, key=key, details=details, timestamp=utc_now())
        logger.debug("Retry event %s key=%s details=%s", event_type, key, details)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)
