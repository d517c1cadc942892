"""Plan fan-out: create, dispatch, refresh and verify multi-task plans."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from uuid import uuid4

from pm_orchestrator.dispatch.errors import PlanError
from pm_orchestrator.dispatch.gate import GateChecker, TasksCompleteGate
from pm_orchestrator.dispatch.models import (
    FAILED_PLAN_TASK_STATUSES,
    FINISHED_PLAN_TASK_STATUSES,
    PlanStatus,
    PlanTaskSpec,
    PlanTaskStatus,
    PlanTaskView,
    PlanView,
    plan_task_status_for,
)
from pm_orchestrator.dispatch.plan_repository import PlanStore
from pm_orchestrator.planning.planner import TaskPlanner
from pm_orchestrator.queue.errors import InvalidTransitionError, QueueStoreError
from pm_orchestrator.queue.models import TaskType
from pm_orchestrator.queue.store import QueueStore
from pm_orchestrator.services import TaskSubmission, TaskSubmissionService
from pm_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


def ready_plan_tasks(plan: PlanView) -> list[PlanTaskView]:
    """PENDING tasks whose dependencies are all COMPLETE, by priority then position."""

    by_id = {item.plan_task_id: item for item in plan.tasks}
    ready = [
        item
        for item in plan.tasks
        if item.status == PlanTaskStatus.PENDING
        and all(by_id[dep].status == PlanTaskStatus.COMPLETE for dep in item.dependencies if dep in by_id)
    ]
    return sorted(ready, key=lambda item: (item.priority, item.position))


class PlanService:
    """Owns the plan lifecycle DRAFT -> DISPATCHING -> RUNNING -> VERIFYING -> VERIFIED/FAILED."""

    def __init__(
        self,
        *,
        plan_store: PlanStore,
        queue_store: QueueStore,
        submission: TaskSubmissionService,
        planner: TaskPlanner | None = None,
    ) -> None:
        self.plan_store = plan_store
        self.queue_store = queue_store
        self.submission = submission
        self.planner = planner or TaskPlanner()

    def create(
        self,
        project_id: str,
        tasks: Sequence[PlanTaskSpec],
        *,
        namespace: str = "default",
    ) -> PlanView:
        """Create a DRAFT plan; dependencies are indexes of earlier tasks."""

        if not project_id.strip():
            raise PlanError("Plan project_id must not be empty.")
        if not tasks:
            raise PlanError("Plan must contain at least one task.")

        plan_id = f"plan_{uuid4().hex}"
        task_ids = [f"{plan_id}:{index + 1}" for index in range(len(tasks))]
        views: list[PlanTaskView] = []
        now = utc_now()
        for index, spec in enumerate(tasks):
            if not spec.description.strip():
                raise PlanError(f"Plan task {index} has an empty description.")
            for dependency in spec.dependencies:
                if not 0 <= dependency < index:
                    raise PlanError(
                        f"Plan task {index} depends on {dependency}; "
                        "dependencies must reference earlier tasks.",
                    )
            views.append(
                PlanTaskView(
                    plan_task_id=task_ids[index],
                    plan_id=plan_id,
                    position=index,
                    description=spec.description.strip(),
                    task_type=spec.task_type,
                    priority=spec.priority,
                    dependencies=tuple(task_ids[dependency] for dependency in sorted(set(spec.dependencies))),
                    blocking=spec.blocking,
                    status=PlanTaskStatus.PENDING,
                    linked_run_id=None,
                    created_at=now,
                    updated_at=now,
                ),
            )
        plan = self.plan_store.create_plan(
            PlanView(
                plan_id=plan_id,
                project_id=project_id,
                namespace=namespace,
                status=PlanStatus.DRAFT,
                tasks=views,
            ),
        )
        logger.info("Created plan %s with %d task(s)", plan_id, len(views))
        return plan

    def create_from_prompt(
        self,
        project_id: str,
        prompt: str,
        *,
        namespace: str = "default",
        task_type: TaskType = TaskType.IMPLEMENTATION,
    ) -> PlanView:
        """Let the planner split ``prompt`` into plan tasks."""

        execution_plan = self.planner.plan(prompt)
        units = execution_plan.units()
        position = {unit.subtask_id: index for index, unit in enumerate(units)}
        specs = [
            PlanTaskSpec(
                description=unit.description,
                priority=100 + index,
                dependencies=tuple(
                    position[dependency]
                    for dependency in execution_plan.dependencies_of(unit.subtask_id)
                    if dependency in position and position[dependency] < index
                ),
                task_type=task_type,
                blocking=unit.blocking,
            )
            for index, unit in enumerate(units)
        ]
        return self.create(project_id, specs, namespace=namespace)

    def get(self, plan_id: str) -> PlanView:
        return self.plan_store.get_plan(plan_id)

    def dispatch(self, plan_id: str) -> PlanView:
        """Enqueue every ready task of a DRAFT plan and mark it RUNNING."""

        plan = self.plan_store.transition_plan(plan_id, PlanStatus.DISPATCHING)
        try:
            self._enqueue_ready(plan)
        except QueueStoreError as error:
            self.plan_store.transition_plan(plan_id, PlanStatus.FAILED)
            raise PlanError(f"Dispatch of plan {plan_id} failed: {error}") from error
        plan = self.plan_store.transition_plan(plan_id, PlanStatus.RUNNING)
        logger.info("Dispatched plan %s: %s", plan_id, plan.status_counts())
        return plan

    def refresh(self, plan_id: str) -> PlanView:
        """Sync plan task statuses from the queue and release newly ready tasks."""

        plan = self.plan_store.get_plan(plan_id)
        if plan.status != PlanStatus.RUNNING:
            return plan

        for item in plan.tasks:
            if item.linked_run_id is None or item.status in FINISHED_PLAN_TASK_STATUSES:
                continue
            task = self.queue_store.get(item.linked_run_id)
            mirrored = plan_task_status_for(task.status)
            if mirrored != item.status:
                self.plan_store.update_plan_task(item.plan_task_id, status=mirrored)

        plan = self._skip_unreachable(self.plan_store.get_plan(plan_id))
        if any(
            item.blocking and item.status in {PlanTaskStatus.ERROR, PlanTaskStatus.CANCELLED}
            for item in plan.tasks
        ):
            logger.warning("Plan %s failed: a blocking task did not complete", plan_id)
            return self.plan_store.transition_plan(plan_id, PlanStatus.FAILED)

        self._enqueue_ready(plan)
        return self.plan_store.get_plan(plan_id)

    def verify(self, plan_id: str, gate: GateChecker | None = None) -> PlanView:
        """Run the gate over a RUNNING plan whose tasks are all finished."""

        plan = self.refresh(plan_id)
        if plan.status != PlanStatus.RUNNING:
            raise PlanError(f"Plan {plan_id} cannot be verified in status {plan.status.value}.")
        unfinished = [item.plan_task_id for item in plan.tasks if item.status not in FINISHED_PLAN_TASK_STATUSES]
        if unfinished:
            raise PlanError(f"Plan {plan_id} has unfinished tasks: {', '.join(unfinished)}")

        plan = self.plan_store.transition_plan(plan_id, PlanStatus.VERIFYING)
        result = (gate or TasksCompleteGate()).check(plan)
        status = PlanStatus.VERIFIED if result.passed else PlanStatus.FAILED
        return self.plan_store.transition_plan(plan_id, status, gate_result=result)

    def cancel(self, plan_id: str) -> PlanView:
        """Cancel a plan and every queue task it still has in flight."""

        plan = self.plan_store.get_plan(plan_id)
        for item in plan.tasks:
            if item.status in FINISHED_PLAN_TASK_STATUSES:
                continue
            if item.linked_run_id is not None:
                try:
                    self.queue_store.cancel(item.linked_run_id)
                except InvalidTransitionError as error:
                    logger.info("Plan task %s already finished: %s", item.plan_task_id, error)
                    task = self.queue_store.get(item.linked_run_id)
                    self.plan_store.update_plan_task(
                        item.plan_task_id,
                        status=plan_task_status_for(task.status),
                    )
                    continue
            self.plan_store.update_plan_task(item.plan_task_id, status=PlanTaskStatus.CANCELLED)
        return self.plan_store.transition_plan(plan_id, PlanStatus.CANCELLED)

    def _skip_unreachable(self, plan: PlanView) -> PlanView:
        changed = True
        while changed:
            changed = False
            by_id = {item.plan_task_id: item for item in plan.tasks}
            for item in plan.tasks:
                if item.status != PlanTaskStatus.PENDING:
                    continue
                if any(
                    by_id[dep].status in FAILED_PLAN_TASK_STATUSES
                    for dep in item.dependencies
                    if dep in by_id
                ):
                    self.plan_store.update_plan_task(item.plan_task_id, status=PlanTaskStatus.SKIPPED)
                    item.status = PlanTaskStatus.SKIPPED
                    changed = True
        return plan

    def _enqueue_ready(self, plan: PlanView) -> list[str]:
        enqueued: list[str] = []
        for item in ready_plan_tasks(plan):
            task = self.submission.submit(
                TaskSubmission(
                    prompt=item.description,
                    namespace=plan.namespace,
                    group_id=plan.plan_id,
                    task_type=item.task_type,
                ),
            )
            self.plan_store.update_plan_task(
                item.plan_task_id,
                status=plan_task_status_for(task.status),
                linked_run_id=task.task_id,
            )
            enqueued.append(task.task_id)
        if enqueued:
            logger.info("Plan %s released %d task(s)", plan.plan_id, len(enqueued))
        return enqueued
