"""Per-task orchestration: plan, select model, execute, clarify, retry, finalize."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from pm_orchestrator.clarification.engine import ClarificationEngine
from pm_orchestrator.clarification.finalization import FinalizationOutcome, finalize
from pm_orchestrator.clarification.prompts import build_explicit_prompt, build_resumed_prompt
from pm_orchestrator.executor.base import (
    ExecutionCancelledError,
    ExecutorError,
    ExecutorRequest,
    TaskExecutor,
)
from pm_orchestrator.model_policy.manager import (
    ModelPolicyManager,
    ModelSelection,
    SelectionContext,
)
from pm_orchestrator.model_policy.registry import Phase
from pm_orchestrator.orchestration.events import (
    EventBus,
    OrchestrationEvent,
    OrchestrationEventType,
)
from pm_orchestrator.planning.planner import ExecutionPlan, TaskPlanner
from pm_orchestrator.planning.size_estimator import estimate_size
from pm_orchestrator.planning.subtasks import Subtask
from pm_orchestrator.queue.models import Clarification, TaskView
from pm_orchestrator.retry.circuit_breaker import BreakerScope
from pm_orchestrator.retry.failure_classifier import FailureType
from pm_orchestrator.retry.manager import RetryContext, RetryDecision, RetryManager, retry_hint
from pm_orchestrator.retry.recovery import (
    RecoveryStrategy,
    build_escalation_report,
    determine_recovery_strategy,
)

logger = logging.getLogger(__name__)

COST_LIMIT_EXCEEDED = "COST_LIMIT_EXCEEDED"
CIRCUIT_OPEN = "CIRCUIT_OPEN"
_SLEEP_STEP_SECONDS = 0.1


class OrchestrationStatus(str, Enum):
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    AWAITING_RESPONSE = "AWAITING_RESPONSE"
    CANCELLED = "CANCELLED"


@dataclass(slots=True)
class OrchestratorConfig:
    max_parallel_subtasks: int = 3
    executor_timeout_seconds: int = 600
    enable_model_escalation: bool = True
    use_retry_hints: bool = True
    max_auto_resolutions: int = 3

    def validate(self) -> None:
        if self.max_parallel_subtasks < 1:
            raise ValueError("max_parallel_subtasks must be >= 1.")
        if self.executor_timeout_seconds < 1:
            raise ValueError("executor_timeout_seconds must be >= 1.")
        if self.max_auto_resolutions < 0:
            raise ValueError("max_auto_resolutions must be >= 0.")


@dataclass(slots=True)
class SubtaskResult:
    subtask_id: str
    description: str
    status: OrchestrationStatus
    output: str = ""
    error_message: str | None = None
    failure_type: str | None = None
    blocking: bool = True
    model: str | None = None
    attempts: int = 0
    clarification: Clarification | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtask_id": self.subtask_id,
            "status": self.status.value,
            "error_message": self.error_message,
            "failure_type": self.failure_type,
            "blocking": self.blocking,
            "model": self.model,
            "attempts": self.attempts,
        }


@dataclass(slots=True)
class OrchestrationResult:
    task_id: str
    status: OrchestrationStatus
    output: str
    error_message: str | None = None
    failure_type: str | None = None
    clarification: Clarification | None = None
    subtask_results: list[SubtaskResult] = field(default_factory=list)
    usage_summary: dict[str, Any] = field(default_factory=dict)
    retry_decisions: list[RetryDecision] = field(default_factory=list)
    recovery_strategy: RecoveryStrategy | None = None
    plan_summary: dict[str, Any] = field(default_factory=dict)
    events: list[OrchestrationEvent] = field(default_factory=list)


class _Run:
    """Mutable state of one orchestrate() call, shared by worker threads."""

    def __init__(
        self,
        task: TaskView,
        cancel_requested: Callable[[], bool] | None,
    ) -> None:
        self.task = task
        self._cancel_requested = cancel_requested
        self.lock = threading.Lock()
        self.events: list[OrchestrationEvent] = []
        self.retry_decisions: list[RetryDecision] = []
        self.cost_exceeded = threading.Event()

    def cancelled(self) -> bool:
        return self._cancel_requested is not None and self._cancel_requested()


class TaskOrchestrator:
    """Drives one task through PLANNING, MODEL_SELECTION, EXECUTING and finalization.

    Chunked plans run wave by wave; units inside a wave run on a bounded
    thread pool. Retry decisions are delegated to the ``RetryManager`` and
    questions to the ``ClarificationEngine``.
    """

    def __init__(  # noqa: PLR0913
        self,
        executor: TaskExecutor,
        *,
        planner: TaskPlanner | None = None,
        model_policy: ModelPolicyManager | None = None,
        retry_manager: RetryManager | None = None,
        clarification_engine: ClarificationEngine | None = None,
        config: OrchestratorConfig | None = None,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.planner = planner or TaskPlanner()
        self.model_policy = model_policy or ModelPolicyManager()
        self.retry_manager = retry_manager or RetryManager()
        self.clarification_engine = clarification_engine or ClarificationEngine()
        self.config = config or OrchestratorConfig()
        self.config.validate()
        self.event_bus = event_bus or EventBus()
        self._sleep = sleep

    def orchestrate(
        self,
        task: TaskView,
        *,
        cancel_requested: Callable[[], bool] | None = None,
    ) -> OrchestrationResult:
        run = _Run(task, cancel_requested)
        self._emit(
            run,
            OrchestrationEventType.ORCHESTRATION_STARTED,
            {"task_type": task.task_type.value, "attempt": task.attempt},
        )
        self.clarification_engine.history.seed(task.clarification)

        plan = self.planner.plan(task.prompt, task_id=task.task_id)
        self._emit(run, OrchestrationEventType.PLANNING_COMPLETED, plan.to_summary())

        results: dict[str, SubtaskResult] = {}
        stop = False
        for wave in plan.waves():
            if stop:
                break
            if run.cancelled():
                break
            runnable: list[Subtask] = []
            for unit in wave:
                failed_dependency = self._failed_dependency(plan, unit, results)
                if failed_dependency is None:
                    runnable.append(unit)
                    continue
                results[unit.subtask_id] = SubtaskResult(
                    subtask_id=unit.subtask_id,
                    description=unit.description,
                    status=OrchestrationStatus.ERROR,
                    error_message=f"Skipped: dependency {failed_dependency} did not complete",
                    blocking=unit.blocking,
                )
            for unit_result in self._run_wave(run, plan, runnable):
                results[unit_result.subtask_id] = unit_result
            stop = any(self._halts_run(item) for item in results.values())

        result = self._aggregate(run, plan, results)
        self._emit(
            run,
            OrchestrationEventType.ORCHESTRATION_COMPLETED,
            {
                "status": result.status.value,
                "failure_type": result.failure_type,
                "subtasks": [item.to_dict() for item in result.subtask_results],
                "recovery_strategy": (
                    result.recovery_strategy.value if result.recovery_strategy is not None else None
                ),
            },
        )
        with run.lock:
            result.events = list(run.events)
        return result

    def _run_wave(self, run: _Run, plan: ExecutionPlan, units: list[Subtask]) -> list[SubtaskResult]:
        if not units:
            return []
        if len(units) == 1 or self.config.max_parallel_subtasks == 1:
            return [self._run_unit(run, plan, unit) for unit in units]
        workers = min(self.config.max_parallel_subtasks, len(units))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pm-subtask") as pool:
            futures = [pool.submit(self._run_unit, run, plan, unit) for unit in units]
            return [future.result() for future in futures]

    def _run_unit(  # noqa: PLR0911, PLR0912, PLR0915
        self,
        run: _Run,
        plan: ExecutionPlan,
        unit: Subtask,
    ) -> SubtaskResult:
        task = run.task
        retry_key = f"{task.task_id}:{unit.subtask_id}"
        context = self.retry_manager.context_for(retry_key)
        phase = Phase.IMPLEMENTATION
        selection = self.model_policy.select(
            phase,
            SelectionContext(
                task_id=task.task_id,
                subtask_id=unit.subtask_id,
                estimated_tokens=estimate_size(unit.description).token_estimate,
                user_override=task.settings_snapshot.model,
            ),
        )
        self._emit(
            run,
            OrchestrationEventType.MODEL_SELECTED,
            {"provider": selection.provider, "model": selection.model, "reason": selection.reason},
            unit,
        )
        self._emit(run, OrchestrationEventType.SUBTASK_STARTED, {"description": unit.description[:200]}, unit)

        base_prompt = build_resumed_prompt(
            unit.description if plan.is_chunked else task.prompt,
            task.clarification,
        )
        prompt = base_prompt
        auto_resolutions = 0
        attempts = 0
        escalated_from: set[str] = set()

        def finish(**values: Any) -> SubtaskResult:
            self.retry_manager.discard(retry_key)
            outcome = SubtaskResult(
                subtask_id=unit.subtask_id,
                description=unit.description,
                blocking=unit.blocking,
                model=selection.model,
                attempts=attempts,
                **values,
            )
            if outcome.status == OrchestrationStatus.COMPLETE:
                self._emit(run, OrchestrationEventType.SUBTASK_COMPLETED, {"attempts": attempts}, unit)
            elif outcome.status != OrchestrationStatus.AWAITING_RESPONSE:
                self._emit(
                    run,
                    OrchestrationEventType.SUBTASK_FAILED,
                    {
                        "status": outcome.status.value,
                        "error_message": (outcome.error_message or "")[:500],
                        "failure_type": outcome.failure_type,
                        "blocking": unit.blocking,
                    },
                    unit,
                )
            return outcome

        while True:
            if run.cancelled():
                return finish(status=OrchestrationStatus.CANCELLED, error_message="Cancelled")
            if run.cost_exceeded.is_set() or self._cost_limit_exceeded(run, unit):
                return finish(
                    status=OrchestrationStatus.ERROR,
                    error_message="Cost limit exceeded",
                    failure_type=COST_LIMIT_EXCEEDED,
                )

            scope = BreakerScope(selection.provider, selection.model)
            if not self.retry_manager.allow_attempt(scope):
                fallback = self._fallback_for_open_circuit(run, unit, selection)
                if fallback is None:
                    return finish(
                        status=OrchestrationStatus.ERROR,
                        error_message=f"Circuit open for {scope.label()}",
                        failure_type=CIRCUIT_OPEN,
                    )
                selection = fallback
                scope = BreakerScope(selection.provider, selection.model)

            attempts += 1
            request = ExecutorRequest(
                prompt=prompt,
                settings=task.settings_snapshot,
                model=selection.model,
                provider=selection.provider,
                task_id=task.task_id,
                subtask_id=unit.subtask_id,
                timeout_seconds=self.config.executor_timeout_seconds,
                cancel_requested=run.cancelled,
            )
            try:
                result = self.executor.execute(request)
            except ExecutionCancelledError:
                self.retry_manager.release_attempt(scope)
                return finish(status=OrchestrationStatus.CANCELLED, error_message="Cancelled")
            except ExecutorError as error:
                classification = self.retry_manager.classify(error, key=context.key)
                next_step = self._handle_failure(
                    run,
                    unit,
                    context,
                    selection,
                    scope,
                    classification.failure_type,
                    escalated_from,
                )
                if isinstance(next_step, ModelSelection):
                    selection = next_step
                    prompt = self._retry_prompt(base_prompt, classification.failure_type)
                    continue
                return finish(
                    status=OrchestrationStatus.ERROR,
                    error_message=str(error),
                    failure_type=classification.failure_type.value,
                )
            except Exception:
                self.retry_manager.release_attempt(scope)
                raise

            self.model_policy.record_usage(
                phase,
                selection.model,
                result.tokens_in,
                result.tokens_out,
                provider=selection.provider,
                task_id=task.task_id,
                subtask_id=unit.subtask_id,
                selection_reason=selection.reason,
            )
            decision = finalize(result, task.task_type, prompt)

            if decision.outcome == FinalizationOutcome.FAILURE:
                message = decision.error_message or "Executor reported ERROR"
                classification = self.retry_manager.classify(message, key=context.key)
                next_step = self._handle_failure(
                    run,
                    unit,
                    context,
                    selection,
                    scope,
                    classification.failure_type,
                    escalated_from,
                )
                if isinstance(next_step, ModelSelection):
                    selection = next_step
                    prompt = self._retry_prompt(base_prompt, classification.failure_type)
                    continue
                return finish(
                    status=OrchestrationStatus.ERROR,
                    output=decision.output,
                    error_message=message,
                    failure_type=classification.failure_type.value,
                )

            self.retry_manager.record_success(context, scope)
            if decision.outcome == FinalizationOutcome.COMPLETE:
                return finish(status=OrchestrationStatus.COMPLETE, output=decision.output)
            if decision.outcome == FinalizationOutcome.ERROR:
                return finish(
                    status=OrchestrationStatus.ERROR,
                    output=decision.output,
                    error_message=decision.error_message,
                )

            question = decision.question or "Clarification required"
            outcome = self.clarification_engine.handle(
                question,
                options=decision.options,
                partial_output=decision.output,
                reason=decision.reason,
            )
            if outcome.resolved and auto_resolutions < self.config.max_auto_resolutions:
                auto_resolutions += 1
                answer = outcome.answer or ""
                self._emit(
                    run,
                    OrchestrationEventType.CLARIFICATION_RESOLVED,
                    {"question": question, "answer": answer, "source": outcome.source},
                    unit,
                )
                prompt = build_explicit_prompt(base_prompt, question, answer)
                continue

            clarification = outcome.clarification or Clarification(
                question=question,
                reason="auto_resolution_limit",
                clarification_type=outcome.clarification_type.value,
                options=tuple(decision.options),
                partial_output=decision.output or None,
            )
            self._emit(
                run,
                OrchestrationEventType.CLARIFICATION_ESCALATED,
                {
                    "question": clarification.question,
                    "reason": clarification.reason,
                    "clarification_type": clarification.clarification_type,
                },
                unit,
            )
            return finish(
                status=OrchestrationStatus.AWAITING_RESPONSE,
                output=decision.output,
                clarification=clarification,
            )

    def _handle_failure(  # noqa: PLR0913
        self,
        run: _Run,
        unit: Subtask,
        context: RetryContext,
        selection: ModelSelection,
        scope: BreakerScope,
        failure_type: FailureType,
        escalated_from: set[str],
    ) -> ModelSelection | None:
        """Return the selection for the next attempt, or None when terminal."""

        decision = self.retry_manager.record_failure(context, failure_type, scope=scope)
        larger = self._escalation_target(run, selection, decision, escalated_from)
        if larger is not None and not decision.retry:
            escalation = self.retry_manager.record_escalation(context, decision)
            if escalation is None:
                larger = None
            else:
                decision = escalation
        with run.lock:
            run.retry_decisions.append(decision)

        if larger is not None:
            escalated_from.add(selection.model)
            self._emit(
                run,
                OrchestrationEventType.MODEL_ESCALATED,
                {"from": selection.model, "to": larger, "reason": failure_type.value},
                unit,
            )
            return ModelSelection(
                provider=self.model_policy.get_provider_for_model(larger),
                model=larger,
                reason=f"escalation:{failure_type.value}",
                phase=Phase.RETRY,
            )

        if not decision.retry:
            report = build_escalation_report(context, failure_type)
            logger.warning("Task %s gave up: %s", context.key, " | ".join(report.render()))
            return None

        self._emit(
            run,
            OrchestrationEventType.RETRY_SCHEDULED,
            {
                "attempt": context.attempt_count,
                "backoff_ms": decision.backoff_ms,
                "failure_type": failure_type.value,
                "reason": decision.reason,
            },
            unit,
        )
        self._sleep_with_stop(decision.backoff_ms / 1000, run)
        if run.cancelled():
            return selection

        if run.task.settings_snapshot.model:
            return selection
        retry_selection = self.model_policy.select(
            Phase.RETRY,
            SelectionContext(
                task_id=run.task.task_id,
                subtask_id=unit.subtask_id,
                retry_count=context.attempt_count,
                current_model=selection.model,
            ),
        )
        if retry_selection.reason == "retry_escalation" and retry_selection.model != selection.model:
            self._emit(
                run,
                OrchestrationEventType.MODEL_ESCALATED,
                {"from": selection.model, "to": retry_selection.model, "reason": "retry_escalation"},
                unit,
            )
            return retry_selection
        return selection

    def _escalation_target(
        self,
        run: _Run,
        selection: ModelSelection,
        decision: RetryDecision,
        escalated_from: set[str],
    ) -> str | None:
        if (
            not decision.escalate_model
            or not self.config.enable_model_escalation
            or run.task.settings_snapshot.model
            or selection.model in escalated_from
        ):
            return None
        return self.model_policy.escalate_model(selection.model)

    def _fallback_for_open_circuit(
        self,
        run: _Run,
        unit: Subtask,
        selection: ModelSelection,
    ) -> ModelSelection | None:
        if run.task.settings_snapshot.model:
            return None
        fallback = self.model_policy.fallback_model(selection.provider)
        if fallback is None:
            return None
        if not self.retry_manager.allow_attempt(BreakerScope(fallback.provider, fallback.model)):
            return None
        self._emit(
            run,
            OrchestrationEventType.MODEL_ESCALATED,
            {"from": selection.model, "to": fallback.model, "reason": CIRCUIT_OPEN},
            unit,
        )
        return fallback

    def _cost_limit_exceeded(self, run: _Run, unit: Subtask) -> bool:
        status = self.model_policy.check_cost_limit()
        if not status.exceeded:
            return False
        with run.lock:
            first = not run.cost_exceeded.is_set()
            run.cost_exceeded.set()
        if first:
            self._emit(
                run,
                OrchestrationEventType.COST_LIMIT_EXCEEDED,
                {"current_cost": status.current_cost, "limit": status.limit},
                unit,
            )
        return True

    def _retry_prompt(self, base_prompt: str, failure_type: FailureType) -> str:
        if not self.config.use_retry_hints:
            return base_prompt
        hint = retry_hint(failure_type)
        return f"{base_prompt}\n\n{hint}" if hint else base_prompt

    def _sleep_with_stop(self, seconds: float, run: _Run) -> None:
        remaining = max(0.0, seconds)
        while remaining > 0:
            if run.cancelled():
                return
            step = min(_SLEEP_STEP_SECONDS, remaining)
            self._sleep(step)
            remaining -= step

    @staticmethod
    def _halts_run(item: SubtaskResult) -> bool:
        if item.status == OrchestrationStatus.COMPLETE:
            return False
        # Non-blocking failures let later waves continue.
        return item.blocking or item.status != OrchestrationStatus.ERROR

    @staticmethod
    def _failed_dependency(
        plan: ExecutionPlan,
        unit: Subtask,
        results: dict[str, SubtaskResult],
    ) -> str | None:
        for dependency in plan.dependencies_of(unit.subtask_id):
            previous = results.get(dependency)
            if previous is not None and previous.status != OrchestrationStatus.COMPLETE:
                return dependency
        return None

    def _aggregate(
        self,
        run: _Run,
        plan: ExecutionPlan,
        results: dict[str, SubtaskResult],
    ) -> OrchestrationResult:
        ordered = [results[unit.subtask_id] for unit in plan.units() if unit.subtask_id in results]
        completed = [item for item in ordered if item.status == OrchestrationStatus.COMPLETE]
        output = self._combined_output(plan, ordered)
        recovery: RecoveryStrategy | None = None
        if plan.is_chunked:
            recovery = determine_recovery_strategy(
                failed=[item.subtask_id for item in ordered if item.status == OrchestrationStatus.ERROR],
                succeeded=[item.subtask_id for item in completed],
                dependencies={unit.subtask_id: plan.dependencies_of(unit.subtask_id) for unit in plan.units()},
            )
        with run.lock:
            decisions = list(run.retry_decisions)
        result = OrchestrationResult(
            task_id=run.task.task_id,
            status=OrchestrationStatus.COMPLETE,
            output=output,
            subtask_results=ordered,
            usage_summary=self.model_policy.usage_summary().to_dict(),
            retry_decisions=decisions,
            recovery_strategy=recovery,
            plan_summary=plan.to_summary(),
        )

        if run.cancelled() or any(item.status == OrchestrationStatus.CANCELLED for item in ordered):
            return replace(result, status=OrchestrationStatus.CANCELLED, error_message="Cancelled")
        if run.cost_exceeded.is_set():
            return replace(
                result,
                status=OrchestrationStatus.ERROR,
                error_message="Cost limit exceeded",
                failure_type=COST_LIMIT_EXCEEDED,
            )
        blocking_failure = next(
            (item for item in ordered if item.status == OrchestrationStatus.ERROR and item.blocking),
            None,
        )
        if blocking_failure is not None:
            message = blocking_failure.error_message or "Task failed"
            if plan.is_chunked:
                message = f"Subtask {blocking_failure.subtask_id} failed: {message}"
            return replace(
                result,
                status=OrchestrationStatus.ERROR,
                error_message=message,
                failure_type=blocking_failure.failure_type,
            )
        awaiting = next(
            (item for item in ordered if item.status == OrchestrationStatus.AWAITING_RESPONSE),
            None,
        )
        if awaiting is not None and awaiting.clarification is not None:
            clarification = awaiting.clarification
            if output:
                clarification = replace(clarification, partial_output=output)
            return replace(
                result,
                status=OrchestrationStatus.AWAITING_RESPONSE,
                clarification=clarification,
            )
        if len(ordered) < len(plan.units()):
            return replace(
                result,
                status=OrchestrationStatus.ERROR,
                error_message="Orchestration stopped before all subtasks ran",
            )
        return result

    @staticmethod
    def _combined_output(plan: ExecutionPlan, ordered: list[SubtaskResult]) -> str:
        if not plan.is_chunked:
            return ordered[0].output if ordered else ""
        sections = [
            f"## {item.subtask_id}: {item.description}\n{item.output.strip()}"
            for item in ordered
            if item.output.strip()
        ]
        return "\n\n".join(sections)

    def _emit(
        self,
        run: _Run,
        event_type: OrchestrationEventType,
        details: dict[str, Any],
        unit: Subtask | None = None,
    ) -> None:
        event = OrchestrationEvent(
            event_type=event_type,
            task_id=run.task.task_id,
            details=details,
            subtask_id=unit.subtask_id if unit is not None else None,
        )
        with run.lock:
            run.events.append(event)
        self.event_bus.publish(event)
