"""Queue dispatch loop and plan fan-out."""

from pm_orchestrator.dispatch.dispatcher import DispatcherRunSummary, QueueDispatcher
from pm_orchestrator.dispatch.errors import InvalidPlanTransitionError, PlanError, PlanNotFoundError
from pm_orchestrator.dispatch.gate import CommandGateChecker, GateChecker, TasksCompleteGate
from pm_orchestrator.dispatch.models import (
    GateCheck,
    GateResult,
    PlanStatus,
    PlanTaskSpec,
    PlanTaskStatus,
    PlanTaskView,
    PlanView,
)
from pm_orchestrator.dispatch.plan_repository import InMemoryPlanStore, PlanStore, SqlPlanStore
from pm_orchestrator.dispatch.plans import PlanService, ready_plan_tasks

__all__ = [
    "CommandGateChecker",
    "DispatcherRunSummary",
    "GateCheck",
    "GateChecker",
    "GateResult",
    "InMemoryPlanStore",
    "InvalidPlanTransitionError",
    "PlanError",
    "PlanNotFoundError",
    "PlanService",
    "PlanStatus",
    "PlanStore",
    "PlanTaskSpec",
    "PlanTaskStatus",
    "PlanTaskView",
    "PlanView",
    "QueueDispatcher",
    "SqlPlanStore",
    "TasksCompleteGate",
    "ready_plan_tasks",
]
