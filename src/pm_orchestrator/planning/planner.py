"""Complexity-driven planning: size estimation, chunking and execution waves."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from pm_orchestrator.planning.dependencies import DependencyGraph, analyze_dependencies
from pm_orchestrator.planning.size_estimator import SizeEstimate, estimate_size
from pm_orchestrator.planning.subtasks import Subtask, extract_subtasks

logger = logging.getLogger(__name__)

BASE_SUBTASK_DURATION_MS = 30_000
CHUNKED_DURATION_FACTOR = 0.7
SINGLE_DURATION_FACTOR = 0.5
SINGLE_SUBTASK_ID = "main"


class ExecutionStrategy(str, Enum):
    SINGLE = "single"
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    MIXED = "mixed"


@dataclass(slots=True)
class PlannerConfig:
    auto_chunk: bool = True
    chunk_complexity_threshold: int = 6
    chunk_token_threshold: int = 8_000
    min_subtasks: int = 2
    max_subtasks: int = 10
    enable_dependency_analysis: bool = True
    execution_mode: str = "parallel"

    def validate(self) -> None:
        if not 1 <= self.chunk_complexity_threshold <= 10:  # noqa: PLR2004
            raise ValueError("chunk_complexity_threshold must be within 1..10.")
        if self.chunk_token_threshold < 1:
            raise ValueError("chunk_token_threshold must be >= 1.")
        if self.min_subtasks < 1:
            raise ValueError("min_subtasks must be >= 1.")
        if self.max_subtasks < self.min_subtasks:
            raise ValueError("max_subtasks must be >= min_subtasks.")
        if self.execution_mode not in {"parallel", "sequential"}:
            raise ValueError("execution_mode must be 'parallel' or 'sequential'.")


@dataclass(slots=True)
class ChunkingDecision:
    should_chunk: bool
    reason: str


@dataclass(slots=True)
class ExecutionPlan:
    task_id: str | None
    prompt: str
    size: SizeEstimate
    chunking_decision: ChunkingDecision
    subtasks: list[Subtask] = field(default_factory=list)
    dependency_graph: DependencyGraph | None = None
    execution_strategy: ExecutionStrategy = ExecutionStrategy.SINGLE
    estimated_duration_ms: int = 0

    @property
    def is_chunked(self) -> bool:
        return self.chunking_decision.should_chunk

    def units(self) -> list[Subtask]:
        """Executable units; an unchunked plan is one ``main`` unit."""

        if self.is_chunked:
            return list(self.subtasks)
        return [Subtask(subtask_id=SINGLE_SUBTASK_ID, order=1, description=self.prompt)]

    def waves(self) -> list[list[Subtask]]:
        units = self.units()
        if not self.is_chunked or self.dependency_graph is None:
            return [units] if len(units) == 1 else [[unit] for unit in units]
        by_id = {unit.subtask_id: unit for unit in units}
        return [[by_id[node] for node in wave] for wave in self.dependency_graph.waves]

    def dependencies_of(self, subtask_id: str) -> list[str]:
        if self.dependency_graph is None:
            return []
        return self.dependency_graph.dependencies_of(subtask_id)

    def to_summary(self) -> dict[str, object]:
        return {
            "size": self.size.to_dict(),
            "chunked": self.is_chunked,
            "chunking_reason": self.chunking_decision.reason,
            "subtask_count": len(self.subtasks),
            "execution_strategy": self.execution_strategy.value,
            "estimated_duration_ms": self.estimated_duration_ms,
        }


def should_chunk(estimate: SizeEstimate, config: PlannerConfig) -> bool:
    if not config.auto_chunk:
        return False
    return (
        estimate.score >= config.chunk_complexity_threshold
        or estimate.token_estimate >= config.chunk_token_threshold
    )


class TaskPlanner:
    """Pure planner over prompt text; an invalid config falls back to defaults."""

    def __init__(self, config: PlannerConfig | None = None) -> None:
        resolved = config or PlannerConfig()
        try:
            resolved.validate()
        except ValueError as error:
            logger.warning("Invalid planner config (%s); using defaults.", error)
            resolved = PlannerConfig()
        self.config = resolved

    def estimate_size(self, prompt: str) -> SizeEstimate:
        return estimate_size(prompt)

    def plan(self, prompt: str, *, task_id: str | None = None) -> ExecutionPlan:
        size = estimate_size(prompt)
        decision = self._chunking_decision(size)
        subtasks: list[Subtask] = []
        if decision.should_chunk:
            source, extracted = extract_subtasks(prompt)
            if len(extracted) < self.config.min_subtasks:
                decision = ChunkingDecision(
                    should_chunk=False,
                    reason=(
                        f"{decision.reason}; only {len(extracted)} subtask(s) found "
                        f"(minimum {self.config.min_subtasks})"
                    ),
                )
            else:
                subtasks = extracted[: self.config.max_subtasks]
                decision = ChunkingDecision(
                    should_chunk=True,
                    reason=f"{decision.reason}; {len(subtasks)} subtasks from {source}",
                )

        graph: DependencyGraph | None = None
        if subtasks:
            graph = analyze_dependencies(
                subtasks,
                infer_soft_edges=self.config.enable_dependency_analysis,
            )
            dependencies = {node: graph.dependencies_of(node) for node in graph.nodes}
            for subtask in subtasks:
                subtask.dependencies = tuple(dependencies[subtask.subtask_id])

        plan = ExecutionPlan(
            task_id=task_id,
            prompt=prompt,
            size=size,
            chunking_decision=decision,
            subtasks=subtasks,
            dependency_graph=graph,
            execution_strategy=self._strategy(decision, graph),
            estimated_duration_ms=self._estimated_duration(size, subtasks),
        )
        logger.debug(
            "Planned task %s: score=%d chunked=%s strategy=%s",
            task_id,
            size.score,
            plan.is_chunked,
            plan.execution_strategy.value,
        )
        return plan

    def _chunking_decision(self, size: SizeEstimate) -> ChunkingDecision:
        if not self.config.auto_chunk:
            return ChunkingDecision(should_chunk=False, reason="auto_chunk disabled")
        if size.score >= self.config.chunk_complexity_threshold:
            return ChunkingDecision(
                should_chunk=True,
                reason=f"score {size.score} >= {self.config.chunk_complexity_threshold}",
            )
        if size.token_estimate >= self.config.chunk_token_threshold:
            return ChunkingDecision(
                should_chunk=True,
                reason=f"tokens {size.token_estimate} >= {self.config.chunk_token_threshold}",
            )
        return ChunkingDecision(should_chunk=False, reason="below chunking thresholds")

    def _strategy(
        self,
        decision: ChunkingDecision,
        graph: DependencyGraph | None,
    ) -> ExecutionStrategy:
        if not decision.should_chunk or graph is None:
            return ExecutionStrategy.SINGLE
        if graph.has_cycle or all(len(wave) == 1 for wave in graph.waves):
            return ExecutionStrategy.SEQUENTIAL
        if len(graph.waves) == 1:
            if self.config.execution_mode == "sequential":
                return ExecutionStrategy.SEQUENTIAL
            return ExecutionStrategy.PARALLEL
        return ExecutionStrategy.MIXED

    @staticmethod
    def _estimated_duration(size: SizeEstimate, subtasks: list[Subtask]) -> int:
        if subtasks:
            return int(BASE_SUBTASK_DURATION_MS * len(subtasks) * CHUNKED_DURATION_FACTOR)
        return int(BASE_SUBTASK_DURATION_MS * size.score * SINGLE_DURATION_FACTOR)
