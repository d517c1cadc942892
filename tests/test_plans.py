from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path

import allure
import pytest

from pm_orchestrator.config import TaskDefaultsSettings
from pm_orchestrator.dispatch.errors import InvalidPlanTransitionError, PlanError, PlanNotFoundError
from pm_orchestrator.dispatch.gate import CommandGateChecker, TasksCompleteGate
from pm_orchestrator.dispatch.models import PlanStatus, PlanTaskSpec, PlanTaskStatus
from pm_orchestrator.dispatch.plan_repository import InMemoryPlanStore, SqlPlanStore
from pm_orchestrator.dispatch.plans import PlanService, ready_plan_tasks
from pm_orchestrator.queue.memory import InMemoryQueueStore
from pm_orchestrator.queue.models import TaskStatus, TaskType
from pm_orchestrator.queue.repository import SqlQueueStore
from pm_orchestrator.services import EnvSettingsProvider, TaskSubmissionService

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Plans"),
]


@dataclass(slots=True)
class _PlanEnv:
    queue: object
    service: PlanService

    def finish(self, task_id: str, status: TaskStatus = TaskStatus.COMPLETE) -> None:
        self.queue.claim("default", worker_id="w1", task_id=task_id)
        self.queue.update_status(task_id, status, output="ok", error_message=None)


@pytest.fixture(params=["sql", "memory"])
def plans(request, tmp_path: Path):
    if request.param == "memory":
        queue = InMemoryQueueStore()
        plan_store = InMemoryPlanStore()
    else:
        queue = SqlQueueStore(tmp_path / "plans.db")
        queue.init_schema()
        plan_store = SqlPlanStore(tmp_path / "plans.db")
    service = PlanService(
        plan_store=plan_store,
        queue_store=queue,
        submission=TaskSubmissionService(
            store=queue,
            settings_provider=EnvSettingsProvider(TaskDefaultsSettings()),
        ),
    )
    yield _PlanEnv(queue=queue, service=service)
    plan_store.close()
    queue.close()


def _chain(plans: _PlanEnv, *, blocking: bool = True):
    return plans.service.create(
        "proj-1",
        [
            PlanTaskSpec(description="Create the schema"),
            PlanTaskSpec(description="Add the endpoints", dependencies=(0,), blocking=blocking),
            PlanTaskSpec(description="Write the docs", dependencies=(1,)),
        ],
    )


def test_create_assigns_ids_and_starts_as_draft(plans) -> None:
    plan = _chain(plans)

    assert plan.status == PlanStatus.DRAFT
    assert [item.plan_task_id for item in plan.tasks] == [f"{plan.plan_id}:{n}" for n in (1, 2, 3)]
    assert plan.tasks[1].dependencies == (f"{plan.plan_id}:1",)
    assert all(item.status == PlanTaskStatus.PENDING for item in plan.tasks)
    assert plans.service.get(plan.plan_id).project_id == "proj-1"


@pytest.mark.parametrize(
    ("project_id", "tasks", "message"),
    [
        ("  ", [PlanTaskSpec(description="x")], "project_id must not be empty"),
        ("proj", [], "at least one task"),
        ("proj", [PlanTaskSpec(description=" ")], "empty description"),
        ("proj", [PlanTaskSpec(description="a", dependencies=(0,))], "must reference earlier tasks"),
        (
            "proj",
            [PlanTaskSpec(description="a"), PlanTaskSpec(description="b", dependencies=(2,))],
            "must reference earlier tasks",
        ),
    ],
)
def test_create_rejects_invalid_plans(plans, project_id: str, tasks, message: str) -> None:
    with pytest.raises(PlanError, match=message):
        plans.service.create(project_id, tasks)


def test_dispatch_enqueues_only_ready_tasks(plans) -> None:
    plan = _chain(plans)

    running = plans.service.dispatch(plan.plan_id)

    assert running.status == PlanStatus.RUNNING
    assert running.dispatched_at is not None
    statuses = [item.status for item in running.tasks]
    assert statuses == [PlanTaskStatus.QUEUED, PlanTaskStatus.PENDING, PlanTaskStatus.PENDING]
    queued = plans.queue.get(running.tasks[0].linked_run_id)
    assert queued.group_id == plan.plan_id
    assert queued.task_type == TaskType.IMPLEMENTATION
    assert queued.prompt == "Create the schema"

    with pytest.raises(InvalidPlanTransitionError):
        plans.service.dispatch(plan.plan_id)


def test_refresh_releases_dependents_and_verify_passes(plans) -> None:
    plan = _chain(plans)
    plans.service.dispatch(plan.plan_id)

    for _ in range(3):
        current = plans.service.refresh(plan.plan_id)
        queued = [item for item in current.tasks if item.status == PlanTaskStatus.QUEUED]
        assert len(queued) == 1
        plans.finish(queued[0].linked_run_id)

    verified = plans.service.verify(plan.plan_id)

    assert verified.status == PlanStatus.VERIFIED
    assert verified.verified_at is not None
    assert verified.gate_result is not None
    assert verified.gate_result.passed is True
    assert len(verified.gate_result.checks) == 3


def test_blocking_failure_fails_plan_and_skips_dependents(plans) -> None:
    plan = _chain(plans)
    running = plans.service.dispatch(plan.plan_id)
    plans.finish(running.tasks[0].linked_run_id, TaskStatus.ERROR)

    failed = plans.service.refresh(plan.plan_id)

    assert failed.status == PlanStatus.FAILED
    assert [item.status for item in failed.tasks] == [
        PlanTaskStatus.ERROR,
        PlanTaskStatus.SKIPPED,
        PlanTaskStatus.SKIPPED,
    ]
    with pytest.raises(PlanError, match="cannot be verified"):
        plans.service.verify(plan.plan_id)


def test_non_blocking_failure_keeps_plan_running(plans) -> None:
    plan = _chain(plans, blocking=False)
    running = plans.service.dispatch(plan.plan_id)
    plans.finish(running.tasks[0].linked_run_id)
    second = plans.service.refresh(plan.plan_id).tasks[1]
    plans.finish(second.linked_run_id, TaskStatus.ERROR)

    current = plans.service.refresh(plan.plan_id)

    assert current.status == PlanStatus.RUNNING
    assert [item.status for item in current.tasks] == [
        PlanTaskStatus.COMPLETE,
        PlanTaskStatus.ERROR,
        PlanTaskStatus.SKIPPED,
    ]
    # The docs task is blocking and was skipped, so the default gate rejects the plan.
    assert plans.service.verify(plan.plan_id).status == PlanStatus.FAILED


def test_verify_rejects_unfinished_plan(plans) -> None:
    plan = _chain(plans)
    plans.service.dispatch(plan.plan_id)

    with pytest.raises(PlanError, match="unfinished tasks"):
        plans.service.verify(plan.plan_id)


def test_command_gate(plans, tmp_path: Path) -> None:
    plan = plans.service.create("proj-1", [PlanTaskSpec(description="Create the schema")])
    running = plans.service.dispatch(plan.plan_id)
    plans.finish(running.tasks[0].linked_run_id)
    gate = CommandGateChecker(
        commands=[
            f"{sys.executable} -c \"print('lint ok')\"",
            f"{sys.executable} -c \"raise SystemExit(3)\"",
        ],
        cwd=tmp_path,
    )

    verified = plans.service.verify(plan.plan_id, gate)

    assert verified.status == PlanStatus.FAILED
    assert verified.gate_result is not None
    first, second = verified.gate_result.checks
    assert (first.passed, first.message) == (True, "lint ok")
    assert second.passed is False
    assert second.message.startswith("exit code 3")


def test_command_gate_without_commands_fails(plans) -> None:
    plan = plans.service.create("proj-1", [PlanTaskSpec(description="Create the schema")])

    result = CommandGateChecker(commands=[]).check(plans.service.get(plan.plan_id))

    assert result.passed is False
    assert result.checks[0].message == "No gate commands configured"


def test_cancel_plan_cancels_queued_tasks(plans) -> None:
    plan = _chain(plans)
    running = plans.service.dispatch(plan.plan_id)

    cancelled = plans.service.cancel(plan.plan_id)

    assert cancelled.status == PlanStatus.CANCELLED
    assert all(item.status == PlanTaskStatus.CANCELLED for item in cancelled.tasks)
    assert plans.queue.get(running.tasks[0].linked_run_id).status == TaskStatus.CANCELLED
    with pytest.raises(InvalidPlanTransitionError):
        plans.service.cancel(plan.plan_id)


def test_create_from_prompt_uses_planner(plans) -> None:
    plan = plans.service.create_from_prompt(
        "proj-1",
        "Implement the full authentication API with database migrations:\n"
        "1. Create the database schema\n"
        "2. Build the REST endpoints\n"
        "3. Write tests for the endpoints",
    )

    assert [item.description for item in plan.tasks] == [
        "Create the database schema",
        "Build the REST endpoints",
        "Write tests for the endpoints",
    ]
    assert plan.tasks[2].dependencies == (plan.tasks[1].plan_task_id,)
    assert [item.priority for item in plan.tasks] == [100, 101, 102]


def test_ready_tasks_sorted_by_priority(plans) -> None:
    plan = plans.service.create(
        "proj-1",
        [
            PlanTaskSpec(description="Later", priority=200),
            PlanTaskSpec(description="Sooner", priority=10),
            PlanTaskSpec(description="Blocked", dependencies=(1,)),
        ],
    )

    assert [item.description for item in ready_plan_tasks(plan)] == ["Sooner", "Later"]


def test_unknown_plan_raises(plans) -> None:
    with pytest.raises(PlanNotFoundError):
        plans.service.get("plan_missing")


def test_tasks_complete_gate_treats_optional_failures_as_passing(plans) -> None:
    plan = plans.service.create(
        "proj-1",
        [PlanTaskSpec(description="Core"), PlanTaskSpec(description="Extra", blocking=False)],
    )
    plan.tasks[0].status = PlanTaskStatus.COMPLETE
    plan.tasks[1].status = PlanTaskStatus.ERROR

    assert TasksCompleteGate().check(plan).passed is True
