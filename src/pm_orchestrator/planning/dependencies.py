"""Dependency analysis between extracted subtasks."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from pm_orchestrator.planning.subtasks import Subtask

DEPENDENCY_KEYWORDS: tuple[str, ...] = (
    "after",
    "once",
    "when",
    "following",
    "based on",
    "using",
    "with",
)
_KEYWORD_PATTERNS = tuple(
    re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE) for keyword in DEPENDENCY_KEYWORDS
)
_TOKEN = re.compile(r"[a-z0-9_]+")
MIN_SHARED_WORD_LENGTH = 4


@dataclass(slots=True, frozen=True)
class DependencyEdge:
    source: str
    target: str
    kind: str


@dataclass(slots=True)
class DependencyGraph:
    nodes: list[str]
    edges: list[DependencyEdge] = field(default_factory=list)
    topological_order: list[str] = field(default_factory=list)
    waves: list[list[str]] = field(default_factory=list)
    has_cycle: bool = False

    def dependencies_of(self, node: str) -> list[str]:
        return [edge.source for edge in self.edges if edge.target == node]

    def to_dict(self) -> dict[str, object]:
        return {
            "nodes": list(self.nodes),
            "edges": [
                {"source": edge.source, "target": edge.target, "kind": edge.kind}
                for edge in self.edges
            ],
            "topological_order": list(self.topological_order),
            "waves": [list(wave) for wave in self.waves],
            "has_cycle": self.has_cycle,
        }


def analyze_dependencies(
    subtasks: Sequence[Subtask],
    *,
    infer_soft_edges: bool = True,
) -> DependencyGraph:
    """Build the graph from declared dependencies plus inferred soft edges.

    A soft edge ``earlier -> later`` is inferred when the later description
    uses a dependency keyword and shares a significant word with the earlier one.
    """

    nodes = [subtask.subtask_id for subtask in subtasks]
    known = set(nodes)
    edges: list[DependencyEdge] = []
    seen: set[tuple[str, str]] = set()
    for subtask in subtasks:
        for dependency in subtask.dependencies:
            if dependency in known and (dependency, subtask.subtask_id) not in seen:
                seen.add((dependency, subtask.subtask_id))
                edges.append(DependencyEdge(dependency, subtask.subtask_id, "hard"))

    if infer_soft_edges:
        words = {subtask.subtask_id: _significant_words(subtask.description) for subtask in subtasks}
        for index, later in enumerate(subtasks):
            if not _has_dependency_keyword(later.description):
                continue
            for earlier in subtasks[:index]:
                pair = (earlier.subtask_id, later.subtask_id)
                if pair in seen:
                    continue
                if words[earlier.subtask_id] & words[later.subtask_id]:
                    seen.add(pair)
                    edges.append(DependencyEdge(earlier.subtask_id, later.subtask_id, "soft"))

    order, has_cycle = _topological_sort(nodes, edges)
    return DependencyGraph(
        nodes=nodes,
        edges=edges,
        topological_order=order,
        waves=_waves(nodes, edges, order) if not has_cycle else [[node] for node in order],
        has_cycle=has_cycle,
    )


def _has_dependency_keyword(description: str) -> bool:
    return any(pattern.search(description) for pattern in _KEYWORD_PATTERNS)


def _significant_words(description: str) -> set[str]:
    return {
        token
        for token in _TOKEN.findall(description.lower())
        if len(token) >= MIN_SHARED_WORD_LENGTH and token not in DEPENDENCY_KEYWORDS
    }


def _topological_sort(nodes: list[str], edges: list[DependencyEdge]) -> tuple[list[str], bool]:
    position = {node: index for index, node in enumerate(nodes)}
    in_degree = dict.fromkeys(nodes, 0)
    outgoing: dict[str, list[str]] = {node: [] for node in nodes}
    for edge in edges:
        in_degree[edge.target] += 1
        outgoing[edge.source].append(edge.target)

    ready = sorted((node for node in nodes if in_degree[node] == 0), key=position.__getitem__)
    order: list[str] = []
    while ready:
        node = ready.pop(0)
        order.append(node)
        for target in outgoing[node]:
            in_degree[target] -= 1
            if in_degree[target] == 0:
                ready.append(target)
        ready.sort(key=position.__getitem__)

    if len(order) == len(nodes):
        return order, False
    remaining = [node for node in nodes if node not in set(order)]
    return order + remaining, True


def _waves(nodes: list[str], edges: list[DependencyEdge], order: list[str]) -> list[list[str]]:
    level: dict[str, int] = {}
    incoming: dict[str, list[str]] = {node: [] for node in nodes}
    for edge in edges:
        incoming[edge.target].append(edge.source)
    for node in order:
        level[node] = 1 + max((level[source] for source in incoming[node]), default=-1)
    waves: list[list[str]] = []
    for node in order:
        while len(waves) <= level[node]:
            waves.append([])
        waves[level[node]].append(node)
    return waves
