"""Deterministic executor replaying a prepared script of outcomes."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterable

from pm_orchestrator.executor.base import (
    ExecutorError,
    ExecutorRequest,
    ExecutorResult,
)

ScriptStep = ExecutorResult | BaseException | Callable[[ExecutorRequest], ExecutorResult]


class ScriptedExecutor:
    """Return (or raise) scripted steps in order; records every request."""

    def __init__(
        self,
        steps: Iterable[ScriptStep] = (),
        *,
        default: ExecutorResult | None = None,
    ) -> None:
        self._steps: deque[ScriptStep] = deque(steps)
        self._default = default
        self._lock = threading.Lock()
        self.requests: list[ExecutorRequest] = []

    def add(self, *steps: ScriptStep) -> None:
        with self._lock:
            self._steps.extend(steps)

    @property
    def remaining(self) -> int:
        with self._lock:
            return len(self._steps)

    def execute(self, request: ExecutorRequest) -> ExecutorResult:
        with self._lock:
            self.requests.append(request)
            step = self._steps.popleft() if self._steps else None
        if step is None:
            if self._default is None:
                raise ExecutorError("Executor script exhausted.", kind="script_exhausted")
            return self._default
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, ExecutorResult):
            return step
        return step(request)
