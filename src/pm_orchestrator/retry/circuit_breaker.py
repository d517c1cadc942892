"""Per-scope circuit breaker gating attempts against a provider/model pair."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(slots=True, frozen=True)
class BreakerScope:
    """Failure scope a breaker isolates."""

    provider: str
    model: str

    def label(self) -> str:
        return f"{self.provider}/{self.model}"


@dataclass(slots=True)
class CircuitBreakerState:
    """Snapshot of one breaker."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    opened_at: float | None = None
    probe_in_flight: bool = False


StateChangeListener = Callable[[BreakerScope, CircuitState, CircuitState], None]


class CircuitBreaker:
    """CLOSED -> OPEN after ``threshold`` consecutive failures.

    OPEN rejects attempts until ``cooldown_seconds`` elapse, then the breaker is
    HALF_OPEN and admits exactly one probe. A probe success closes the breaker;
    a probe failure reopens it with a fresh cooldown.
    """

    def __init__(
        self,
        scope: BreakerScope,
        *,
        threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeListener | None = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("Circuit breaker threshold must be >= 1.")
        if cooldown_seconds < 0:
            raise ValueError("Circuit breaker cooldown must be >= 0.")
        self.scope = scope
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._state = CircuitBreakerState()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh_locked()
            return self._state.state

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            self._refresh_locked()
            return CircuitBreakerState(
                state=self._state.state,
                consecutive_failures=self._state.consecutive_failures,
                opened_at=self._state.opened_at,
                probe_in_flight=self._state.probe_in_flight,
            )

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """Admit one attempt; in HALF_OPEN only a single probe passes."""

        with self._lock:
            self._refresh_locked()
            if self._state.state == CircuitState.CLOSED:
                return True
            if self._state.state == CircuitState.OPEN:
                return False
            if self._state.probe_in_flight:
                return False
            self._state.probe_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            previous = self._state.state
            self._state = CircuitBreakerState()
            self._notify_locked(previous, CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self._refresh_locked()
            previous = self._state.state
            self._state.consecutive_failures += 1
            if previous == CircuitState.HALF_OPEN or (
                previous == CircuitState.CLOSED
                and self._state.consecutive_failures >= self.threshold
            ):
                self._state.state = CircuitState.OPEN
                self._state.opened_at = self._clock()
                self._state.probe_in_flight = False
                self._notify_locked(previous, CircuitState.OPEN)

    def release_probe(self) -> None:
        """Free the HALF_OPEN probe slot of an attempt that ended without a verdict."""

        with self._lock:
            self._state.probe_in_flight = False

    def reset(self) -> None:
        self.record_success()

    def _refresh_locked(self) -> None:
        if self._state.state != CircuitState.OPEN or self._state.opened_at is None:
            return
        if self._clock() - self._state.opened_at >= self.cooldown_seconds:
            self._state.state = CircuitState.HALF_OPEN
            self._state.probe_in_flight = False
            self._notify_locked(CircuitState.OPEN, CircuitState.HALF_OPEN)

    def _notify_locked(self, previous: CircuitState, current: CircuitState) -> None:
        if previous == current:
            return
        logger.info(
            "Circuit breaker %s: %s -> %s (failures=%d)",
            self.scope.label(),
            previous.value,
            current.value,
            self._state.consecutive_failures,
        )
        if self._on_state_change is not None:
            self._on_state_change(self.scope, previous, current)


class CircuitBreakerRegistry:
    """Lazily created breakers keyed by (provider, model)."""

    def __init__(
        self,
        *,
        threshold: int = 5,
        cooldown_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: StateChangeListener | None = None,
    ) -> None:
        self.threshold = threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = threading.Lock()
        self._breakers: dict[BreakerScope, CircuitBreaker] = {}

    def get(self, scope: BreakerScope) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(scope)
            if breaker is None:
                breaker = CircuitBreaker(
                    scope,
                    threshold=self.threshold,
                    cooldown_seconds=self.cooldown_seconds,
                    clock=self._clock,
                    on_state_change=self._on_state_change,
                )
                self._breakers[scope] = breaker
            return breaker

    def states(self) -> dict[str, CircuitState]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.scope.label(): breaker.state for breaker in breakers}
