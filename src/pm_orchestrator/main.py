"""CLI entrypoint for pm-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from pm_orchestrator import __version__
from pm_orchestrator.config import Settings
from pm_orchestrator.controllers import (
    EstimateCommand,
    NamespaceCommand,
    PlanCommand,
    PlanCreateCommand,
    PlanVerifyCommand,
    PmOrchestratorCliController,
    TaskEnqueueCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskRecoverCommand,
    TaskRespondCommand,
    WorkerRunCommand,
)
from pm_orchestrator.dispatch.errors import PlanError
from pm_orchestrator.queue.errors import QueueStoreError
from pm_orchestrator.queue.models import TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = PmOrchestratorCliController()

T = TypeVar("T")

_DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)
_NAMESPACE_OPTION = click.option(
    "--namespace",
    default=None,
    help="Queue namespace. Defaults to PM_ORCHESTRATOR_NAMESPACE or `default`.",
)


@click.group()
@click.version_option(version=__version__, prog_name="pm-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level. Defaults to PM_ORCHESTRATOR_LOG_LEVEL or WARNING.",
)
def pm_orchestrator(log_level: str | None) -> None:
    """Project-manager task orchestrator CLI."""

    level = (log_level or Settings.from_env().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@pm_orchestrator.group()
def task() -> None:
    """Queue task commands."""


@task.command("enqueue")
@_DB_PATH_OPTION
@_NAMESPACE_OPTION
@click.option("--prompt", required=True, help="Task prompt.")
@click.option("--group-id", default=None, help="Group id; a new group is created when omitted.")
@click.option(
    "--type",
    "task_type",
    type=click.Choice([item.value for item in TaskType], case_sensitive=False),
    default=None,
    help="Task type. Classified from the prompt when omitted.",
)
@click.option("--model", default=None, help="Model override for this task.")
@click.option("--provider", default=None, help="Provider override for this task.")
def task_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    namespace: str | None,
    prompt: str,
    group_id: str | None,
    task_type: str | None,
    model: str | None,
    provider: str | None,
) -> None:
    """Submit a task to the queue."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.enqueue(
                TaskEnqueueCommand(
                    db_path=db_path,
                    prompt=prompt,
                    namespace=namespace,
                    group_id=group_id,
                    task_type=task_type,
                    model=model,
                    provider=provider,
                ),
            ),
        ),
    )


@task.command("list")
@_DB_PATH_OPTION
@_NAMESPACE_OPTION
@click.option(
    "--status",
    type=click.Choice([item.value for item in TaskStatus], case_sensitive=False),
    default=None,
    help="Filter by status.",
)
@click.option("--group-id", default=None, help="Filter by group id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def task_list(
    db_path: Path | None,
    namespace: str | None,
    status: str | None,
    group_id: str | None,
    limit: int,
) -> None:
    """List queued tasks, newest first."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.list_tasks(
                TaskListCommand(
                    db_path=db_path,
                    namespace=namespace,
                    status=status,
                    group_id=group_id,
                    limit=limit,
                ),
            ),
        ),
    )


@task.command("inspect")
@_DB_PATH_OPTION
@click.argument("task_id")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task details and its event log."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id))),
    )


@task.command("cancel")
@_DB_PATH_OPTION
@click.argument("task_id")
def task_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a task that has not finished."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.cancel_task(TaskInspectCommand(db_path=db_path, task_id=task_id))),
    )


@task.command("respond")
@_DB_PATH_OPTION
@click.argument("task_id")
@click.option("--answer", required=True, help="Answer to the pending clarification question.")
@click.option(
    "--run/--no-run",
    default=True,
    show_default=True,
    help="Run the resumed task in this process. With --no-run it stays RUNNING until `task recover`.",
)
def task_respond(db_path: Path | None, task_id: str, answer: str, run: bool) -> None:
    """Answer a task waiting in AWAITING_RESPONSE."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.respond(
                TaskRespondCommand(db_path=db_path, task_id=task_id, answer=answer, run=run),
            ),
        ),
    )


@task.command("groups")
@_DB_PATH_OPTION
@_NAMESPACE_OPTION
def task_groups(db_path: Path | None, namespace: str | None) -> None:
    """Summarize task groups in a namespace."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.groups(NamespaceCommand(db_path=db_path, namespace=namespace))),
    )


@task.command("namespaces")
@_DB_PATH_OPTION
def task_namespaces(db_path: Path | None) -> None:
    """List namespaces that have tasks."""

    _emit_lines(
        _guarded(lambda: CONTROLLER.namespaces(NamespaceCommand(db_path=db_path, namespace=None))),
    )


@task.command("recover")
@_DB_PATH_OPTION
@_NAMESPACE_OPTION
@click.option(
    "--stale-only/--all-running",
    default=False,
    show_default=True,
    help="Only requeue RUNNING tasks whose heartbeat is stale.",
)
def task_recover(db_path: Path | None, namespace: str | None, stale_only: bool) -> None:
    """Requeue RUNNING tasks left behind by a crashed worker."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.recover(
                TaskRecoverCommand(db_path=db_path, namespace=namespace, stale_only=stale_only),
            ),
        ),
    )


@pm_orchestrator.group()
def worker() -> None:
    """Dispatcher commands."""


@worker.command("run")
@_DB_PATH_OPTION
@_NAMESPACE_OPTION
@click.option("--once", is_flag=True, default=False, help="Process at most one task and exit.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many processed tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many consecutive empty polls. Runs until stopped when omitted.",
)
def worker_run(
    db_path: Path | None,
    namespace: str | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run the dispatcher loop over the queue."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.run_worker(
                WorkerRunCommand(
                    db_path=db_path,
                    namespace=namespace,
                    once=once,
                    max_tasks=max_tasks,
                    max_idle_polls=max_idle_polls,
                ),
            ),
        ),
    )


@pm_orchestrator.group()
def plan() -> None:
    """Multi-task plan commands."""


@plan.command("create")
@_DB_PATH_OPTION
@_NAMESPACE_OPTION
@click.option("--project-id", required=True, help="Project the plan belongs to.")
@click.option("--task", "tasks", multiple=True, help="Plan task description. Can be repeated.")
@click.option("--prompt", default=None, help="Let the planner split this prompt into plan tasks.")
@click.option(
    "--chain/--no-chain",
    default=False,
    show_default=True,
    help="Make each --task depend on the previous one.",
)
def plan_create(  # noqa: PLR0913
    db_path: Path | None,
    namespace: str | None,
    project_id: str,
    tasks: tuple[str, ...],
    prompt: str | None,
    chain: bool,
) -> None:
    """Create a DRAFT plan."""

    if bool(tasks) == bool(prompt):
        raise click.UsageError("Provide either --task (repeatable) or --prompt.")
    _emit_lines(
        _guarded(
            lambda: CONTROLLER.create_plan(
                PlanCreateCommand(
                    db_path=db_path,
                    project_id=project_id,
                    namespace=namespace,
                    tasks=tasks,
                    prompt=prompt,
                    chain=chain,
                ),
            ),
        ),
    )


@plan.command("show")
@_DB_PATH_OPTION
@click.argument("plan_id")
def plan_show(db_path: Path | None, plan_id: str) -> None:
    """Show plan status and its tasks."""

    _emit_lines(_guarded(lambda: CONTROLLER.show_plan(PlanCommand(db_path=db_path, plan_id=plan_id))))


@plan.command("dispatch")
@_DB_PATH_OPTION
@click.argument("plan_id")
def plan_dispatch(db_path: Path | None, plan_id: str) -> None:
    """Enqueue ready tasks of a DRAFT plan."""

    _emit_lines(_guarded(lambda: CONTROLLER.dispatch_plan(PlanCommand(db_path=db_path, plan_id=plan_id))))


@plan.command("refresh")
@_DB_PATH_OPTION
@click.argument("plan_id")
def plan_refresh(db_path: Path | None, plan_id: str) -> None:
    """Sync plan task statuses and release newly ready tasks."""

    _emit_lines(_guarded(lambda: CONTROLLER.refresh_plan(PlanCommand(db_path=db_path, plan_id=plan_id))))


@plan.command("run")
@_DB_PATH_OPTION
@click.argument("plan_id")
def plan_run(db_path: Path | None, plan_id: str) -> None:
    """Execute a dispatched plan's tasks in this process until none are left."""

    _emit_lines(_guarded(lambda: CONTROLLER.run_plan(PlanCommand(db_path=db_path, plan_id=plan_id))))


@plan.command("verify")
@_DB_PATH_OPTION
@click.argument("plan_id")
@click.option(
    "--gate-command",
    "gate_commands",
    multiple=True,
    help="Shell command that must exit 0, for example `pytest -q`. Can be repeated.",
)
def plan_verify(db_path: Path | None, plan_id: str, gate_commands: tuple[str, ...]) -> None:
    """Run the verification gate over a finished plan."""

    _emit_lines(
        _guarded(
            lambda: CONTROLLER.verify_plan(
                PlanVerifyCommand(db_path=db_path, plan_id=plan_id, gate_commands=gate_commands),
            ),
        ),
    )


@plan.command("cancel")
@_DB_PATH_OPTION
@click.argument("plan_id")
def plan_cancel(db_path: Path | None, plan_id: str) -> None:
    """Cancel a plan and its unfinished tasks."""

    _emit_lines(_guarded(lambda: CONTROLLER.cancel_plan(PlanCommand(db_path=db_path, plan_id=plan_id))))


@pm_orchestrator.command("estimate")
@click.option("--prompt", required=True, help="Prompt to size.")
@click.option(
    "--show-plan/--no-show-plan",
    default=True,
    show_default=True,
    help="Print the subtask breakdown when the prompt would be chunked.",
)
def estimate(prompt: str, show_plan: bool) -> None:
    """Estimate task size and show how it would be planned."""

    _emit_lines(_guarded(lambda: CONTROLLER.estimate(EstimateCommand(prompt=prompt, show_plan=show_plan))))


@pm_orchestrator.command("models")
def models() -> None:
    """List known models and model profiles."""

    _emit_lines(_guarded(CONTROLLER.models))


def _guarded(action: Callable[[], T]) -> T:
    try:
        return action()
    except (QueueStoreError, PlanError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    pm_orchestrator()
