"""Per-task orchestration pipeline."""

from pm_orchestrator.orchestration.events import (
    EventBus,
    OrchestrationEvent,
    OrchestrationEventType,
)
from pm_orchestrator.orchestration.orchestrator import (
    CIRCUIT_OPEN,
    COST_LIMIT_EXCEEDED,
    OrchestrationResult,
    OrchestrationStatus,
    OrchestratorConfig,
    SubtaskResult,
    TaskOrchestrator,
)

__all__ = [
    "CIRCUIT_OPEN",
    "COST_LIMIT_EXCEEDED",
    "EventBus",
    "OrchestrationEvent",
    "OrchestrationEventType",
    "OrchestrationResult",
    "OrchestrationStatus",
    "OrchestratorConfig",
    "SubtaskResult",
    "TaskOrchestrator",
]
