"""Controllers for pm-orchestrator CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pm_orchestrator.clarification.engine import ClarificationEngine
from pm_orchestrator.config import Settings
from pm_orchestrator.dispatch.dispatcher import QueueDispatcher
from pm_orchestrator.dispatch.gate import CommandGateChecker, GateChecker, TasksCompleteGate
from pm_orchestrator.dispatch.models import PlanTaskSpec, PlanView
from pm_orchestrator.dispatch.plan_repository import SqlPlanStore
from pm_orchestrator.dispatch.plans import PlanService
from pm_orchestrator.executor.base import TaskExecutor
from pm_orchestrator.executor.command_executor import CommandExecutor
from pm_orchestrator.model_policy.manager import ModelPolicyManager
from pm_orchestrator.model_policy.registry import MODEL_REGISTRY
from pm_orchestrator.orchestration.orchestrator import TaskOrchestrator
from pm_orchestrator.planning.planner import TaskPlanner
from pm_orchestrator.queue.models import TaskStatus, TaskType, TaskView
from pm_orchestrator.queue.repository import SqlQueueStore
from pm_orchestrator.retry.manager import RetryManager
from pm_orchestrator.services import EnvSettingsProvider, TaskSubmission, TaskSubmissionService


@dataclass(slots=True)
class TaskEnqueueCommand:
    """CLI input for task submission."""

    db_path: Path | None
    prompt: str
    namespace: str | None = None
    group_id: str | None = None
    task_type: str | None = None
    model: str | None = None
    provider: str | None = None


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    namespace: str | None
    status: str | None
    group_id: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskRespondCommand:
    """CLI input for answering a suspended task."""

    db_path: Path | None
    task_id: str
    answer: str
    run: bool = True


@dataclass(slots=True)
class NamespaceCommand:
    db_path: Path | None
    namespace: str | None


@dataclass(slots=True)
class TaskRecoverCommand:
    db_path: Path | None
    namespace: str | None
    stale_only: bool


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    namespace: str | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = None


@dataclass(slots=True)
class PlanCreateCommand:
    """CLI input for plan creation from explicit tasks or a prompt."""

    db_path: Path | None
    project_id: str
    namespace: str | None
    tasks: tuple[str, ...] = ()
    prompt: str | None = None
    chain: bool = False


@dataclass(slots=True)
class PlanCommand:
    db_path: Path | None
    plan_id: str


@dataclass(slots=True)
class PlanVerifyCommand:
    db_path: Path | None
    plan_id: str
    gate_commands: tuple[str, ...] = ()


@dataclass(slots=True)
class EstimateCommand:
    prompt: str
    show_plan: bool = True


class PmOrchestratorCliController:
    """Coordinates queue, dispatcher, plan and inspection CLI operations."""

    def __init__(self, *, executor: TaskExecutor | None = None) -> None:
        self._executor = executor

    def enqueue(self, command: TaskEnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store:
            task = _submission_service(settings, store).submit(
                TaskSubmission(
                    prompt=command.prompt,
                    namespace=command.namespace or settings.queue.namespace,
                    group_id=command.group_id,
                    task_type=_parse_task_type(command.task_type),
                    model=command.model,
                    provider=command.provider,
                ),
            )
        return [
            "Task enqueued: "
            f"task_id={task.task_id} type={task.task_type.value} status={task.status.value}",
            f"Namespace: {task.namespace} group: {task.group_id}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store:
            tasks = store.list_tasks(
                namespace=command.namespace,
                status=_parse_status(command.status),
                group_id=command.group_id,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} ns={task.namespace} type={task.task_type.value} "
                f"status={task.status.value} attempt={task.attempt} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store:
            details = store.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Namespace: {task.namespace}",
            f"Group: {task.group_id}",
            f"Type: {task.task_type.value}",
            f"Status: {task.status.value}",
            f"Attempt: {task.attempt}",
            f"Model: {task.settings_snapshot.model or '-'} ({task.settings_snapshot.provider})",
            f"Failure type: {task.failure_type or '-'}",
            f"Error: {task.error_message or '-'}",
        ]
        if task.clarification is not None:
            lines.append(f"Question: {task.clarification.question}")
            if task.clarification.options:
                lines.append(f"Options: {', '.join(task.clarification.options)}")
            if task.clarification.answer is not None:
                lines.append(f"Answer: {task.clarification.answer}")
        if task.output:
            lines.append("Output:")
            lines.extend(f"  {line}" for line in task.output.splitlines())
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store:
            task = store.cancel(command.task_id)
        return [f"Task cancelled: {task.task_id}"]

    def respond(self, command: TaskRespondCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store:
            if not command.run:
                task = store.respond(command.task_id, command.answer)
                return [f"Task resumed: {task.task_id} status={task.status.value}"]
            dispatcher = self._dispatcher(settings, store, namespace=None)
            task = dispatcher.respond(command.task_id, command.answer)
        return _task_outcome_lines(task)

    def groups(self, command: NamespaceCommand) -> list[str]:
        settings = _settings(command.db_path)
        namespace = command.namespace or settings.queue.namespace
        with _queue_store(settings) as store:
            groups = store.list_groups(namespace)
        lines = [f"Groups in {namespace}: {len(groups)}"]
        for group in groups:
            counts = " ".join(f"{status}={count}" for status, count in sorted(group.status_counts.items()))
            lines.append(
                f"  {group.group_id} tasks={group.task_count} {counts} "
                f"updated_at={group.latest_updated_at.isoformat()}",
            )
        return lines

    def namespaces(self, command: NamespaceCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store:
            namespaces = store.list_namespaces()
        return [f"Namespaces: {len(namespaces)}", *(f"  {name}" for name in namespaces)]

    def recover(self, command: TaskRecoverCommand) -> list[str]:
        settings = _settings(command.db_path)
        namespace = command.namespace or settings.queue.namespace
        with _queue_store(settings) as store:
            if command.stale_only:
                recovered = store.recover_stale_tasks(
                    namespace,
                    stale_after=timedelta(seconds=settings.queue.stale_after_seconds),
                )
            else:
                recovered = store.recover_on_startup(namespace)
        return [f"Recovered tasks: {len(recovered)}", *(f"  {task_id}" for task_id in recovered)]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store:
            dispatcher = self._dispatcher(settings, store, namespace=command.namespace)
            summary = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [
            "Dispatcher summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} awaiting_response={summary.awaiting_response} "
            f"cancelled={summary.cancelled} idle_polls={summary.idle_polls} "
            f"store_errors={summary.store_errors}",
        ]

    def create_plan(self, command: PlanCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        namespace = command.namespace or settings.queue.namespace
        with _queue_store(settings) as store, _plan_store(settings) as plan_store:
            service = _plan_service(settings, store, plan_store)
            if command.prompt:
                plan = service.create_from_prompt(command.project_id, command.prompt, namespace=namespace)
            else:
                plan = service.create(
                    command.project_id,
                    [
                        PlanTaskSpec(
                            description=description,
                            priority=100 + index,
                            dependencies=(index - 1,) if command.chain and index > 0 else (),
                        )
                        for index, description in enumerate(command.tasks)
                    ],
                    namespace=namespace,
                )
        return _plan_lines(plan)

    def show_plan(self, command: PlanCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store, _plan_store(settings) as plan_store:
            plan = _plan_service(settings, store, plan_store).get(command.plan_id)
        return _plan_lines(plan)

    def dispatch_plan(self, command: PlanCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store, _plan_store(settings) as plan_store:
            plan = _plan_service(settings, store, plan_store).dispatch(command.plan_id)
        return _plan_lines(plan)

    def refresh_plan(self, command: PlanCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store, _plan_store(settings) as plan_store:
            plan = _plan_service(settings, store, plan_store).refresh(command.plan_id)
        return _plan_lines(plan)

    def cancel_plan(self, command: PlanCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store, _plan_store(settings) as plan_store:
            plan = _plan_service(settings, store, plan_store).cancel(command.plan_id)
        return _plan_lines(plan)

    def run_plan(self, command: PlanCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _queue_store(settings) as store, _plan_store(settings) as plan_store:
            service = _plan_service(settings, store, plan_store)
            namespace = service.get(command.plan_id).namespace
            dispatcher = self._dispatcher(settings, store, namespace=namespace, plan_service=service)
            plan = dispatcher.run_plan(command.plan_id)
        return _plan_lines(plan)

    def verify_plan(self, command: PlanVerifyCommand) -> list[str]:
        settings = _settings(command.db_path)
        gate: GateChecker = (
            CommandGateChecker(commands=command.gate_commands)
            if command.gate_commands
            else TasksCompleteGate()
        )
        with _queue_store(settings) as store, _plan_store(settings) as plan_store:
            plan = _plan_service(settings, store, plan_store).verify(command.plan_id, gate)
        lines = _plan_lines(plan)
        if plan.gate_result is not None:
            lines.append(f"Gate: {'passed' if plan.gate_result.passed else 'failed'}")
            for check in plan.gate_result.checks:
                lines.append(f"  [{'ok' if check.passed else 'FAIL'}] {check.name}: {check.message}")
        return lines

    def estimate(self, command: EstimateCommand) -> list[str]:
        settings = Settings.from_env()
        planner = TaskPlanner(settings.planner_config())
        plan = planner.plan(command.prompt)
        size = plan.size
        lines = [
            f"Size: score={size.score} category={size.category.value} "
            f"tokens~{size.token_estimate} files~{size.file_count}",
            f"Chunking: {'yes' if plan.is_chunked else 'no'} ({plan.chunking_decision.reason})",
            f"Strategy: {plan.execution_strategy.value} "
            f"estimated_duration_ms={plan.estimated_duration_ms}",
        ]
        lines.extend(f"  reason: {reason}" for reason in size.reasons)
        if command.show_plan and plan.is_chunked:
            lines.append("Subtasks:")
            for subtask in plan.subtasks:
                deps = ",".join(subtask.dependencies) or "-"
                lines.append(
                    f"  {subtask.subtask_id} deps={deps} blocking={subtask.blocking}: {subtask.description}",
                )
        return lines

    def models(self) -> list[str]:
        settings = Settings.from_env()
        manager = ModelPolicyManager(settings.model_policy_config())
        lines = [f"Models: {len(MODEL_REGISTRY)}"]
        for info in sorted(MODEL_REGISTRY.values(), key=lambda item: (item.provider, item.name)):
            lines.append(
                f"  {info.name} provider={info.provider} category={info.category.value} "
                f"context={info.context_window} in=${info.input_usd_per_1m}/1M out=${info.output_usd_per_1m}/1M",
            )
        lines.append(f"Profiles (active: {manager.profile.name}):")
        for profile in manager.available_profiles():
            lines.append(
                f"  {profile.name}: {profile.description} "
                f"escalation={' -> '.join(profile.escalation_path) or '-'} "
                f"daily_limit=${profile.daily_cost_limit}",
            )
        return lines

    def _dispatcher(
        self,
        settings: Settings,
        store: SqlQueueStore,
        *,
        namespace: str | None,
        plan_service: PlanService | None = None,
    ) -> QueueDispatcher:
        executor = self._executor or CommandExecutor(
            settings.executor.command_template,
            poll_interval_seconds=settings.executor.poll_interval_seconds,
        )
        orchestrator = TaskOrchestrator(
            executor,
            planner=TaskPlanner(settings.planner_config()),
            model_policy=ModelPolicyManager(settings.model_policy_config()),
            retry_manager=RetryManager(
                settings.retry_config(),
                breaker_threshold=settings.circuit_breaker.threshold,
                breaker_cooldown_seconds=settings.circuit_breaker.cooldown_seconds,
            ),
            clarification_engine=ClarificationEngine(),
            config=settings.orchestrator_config(),
        )
        return QueueDispatcher(
            store=store,
            orchestrator=orchestrator,
            namespace=namespace or settings.queue.namespace,
            worker_id=settings.dispatcher.worker_id,
            poll_interval_seconds=settings.dispatcher.poll_interval_seconds,
            heartbeat_interval_seconds=settings.dispatcher.heartbeat_interval_seconds,
            stale_after_seconds=settings.queue.stale_after_seconds,
            store_retry_initial_seconds=settings.dispatcher.store_retry_initial_seconds,
            store_retry_max_seconds=settings.dispatcher.store_retry_max_seconds,
            plan_service=plan_service,
            max_parallel_tasks=settings.dispatcher.max_parallel_subtasks,
        )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().upper())


def _parse_task_type(value: str | None) -> TaskType | None:
    if value is None:
        return None
    return TaskType(value.strip().upper())


def _task_outcome_lines(task: TaskView) -> list[str]:
    lines = [f"Task {task.task_id}: {task.status.value}"]
    if task.status == TaskStatus.AWAITING_RESPONSE and task.clarification is not None:
        lines.append(f"Question: {task.clarification.question}")
    if task.error_message:
        lines.append(f"Error: {task.error_message}")
    if task.output:
        lines.append("Output:")
        lines.extend(f"  {line}" for line in task.output.splitlines())
    return lines


def _plan_lines(plan: PlanView) -> list[str]:
    lines = [
        f"Plan: {plan.plan_id} project={plan.project_id} ns={plan.namespace} status={plan.status.value}",
        f"Task counts: {json.dumps(plan.status_counts(), sort_keys=True)}",
    ]
    for item in plan.tasks:
        deps = ",".join(dep.rsplit(":", 1)[-1] for dep in item.dependencies) or "-"
        lines.append(
            f"  #{item.position + 1} {item.status.value} deps={deps} "
            f"run={item.linked_run_id or '-'}: {item.description}",
        )
    return lines


def _submission_service(settings: Settings, store: SqlQueueStore) -> TaskSubmissionService:
    return TaskSubmissionService(
        store=store,
        settings_provider=EnvSettingsProvider(settings.task_defaults),
    )


def _plan_service(settings: Settings, store: SqlQueueStore, plan_store: SqlPlanStore) -> PlanService:
    return PlanService(
        plan_store=plan_store,
        queue_store=store,
        submission=_submission_service(settings, store),
        planner=TaskPlanner(settings.planner_config()),
    )


@contextmanager
def _queue_store(settings: Settings) -> Iterator[SqlQueueStore]:
    store = SqlQueueStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.queue.sqlite_busy_timeout_ms,
    )
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _plan_store(settings: Settings) -> Iterator[SqlPlanStore]:
    store = SqlPlanStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.queue.sqlite_busy_timeout_ms,
    )
    try:
        yield store
    finally:
        store.close()
