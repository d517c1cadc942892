"""Task size estimation, chunking and dependency planning."""

from pm_orchestrator.planning.dependencies import DependencyGraph, analyze_dependencies
from pm_orchestrator.planning.planner import (
    ChunkingDecision,
    ExecutionPlan,
    ExecutionStrategy,
    PlannerConfig,
    TaskPlanner,
    should_chunk,
)
from pm_orchestrator.planning.size_estimator import (
    SizeCategory,
    SizeEstimate,
    estimate_size,
    quick_size_check,
)
from pm_orchestrator.planning.subtasks import Subtask, extract_subtasks

__all__ = [
    "ChunkingDecision",
    "DependencyGraph",
    "ExecutionPlan",
    "ExecutionStrategy",
    "PlannerConfig",
    "SizeCategory",
    "SizeEstimate",
    "Subtask",
    "TaskPlanner",
    "analyze_dependencies",
    "estimate_size",
    "extract_subtasks",
    "quick_size_check",
    "should_chunk",
]
