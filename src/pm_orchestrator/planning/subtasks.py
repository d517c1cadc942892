"""Subtask extraction from structured prompts."""

from __future__ import annotations

import re
from dataclasses import dataclass

_NUMBERED_ITEM = re.compile(r"(?:^|\n)\s*(\d+)[.)]\s+(.+?)(?=\n\s*\d+[.)]\s|$)", re.DOTALL)
_BULLET_ITEM = re.compile(r"^\s*[-*•]\s+(.+)$", re.MULTILINE)
_SEQUENCE_ITEM = re.compile(
    r"\b(first|then|next|after that|finally|lastly)\b[,:]?\s+(.+?)(?=\.|,|;|$)",
    re.IGNORECASE | re.MULTILINE,
)
_OPTIONAL_MARKERS: tuple[str, ...] = ("optional", "if possible", "nice to have", "if time permits")
_WHITESPACE = re.compile(r"\s+")


@dataclass(slots=True)
class Subtask:
    """One chunk of a decomposed task."""

    subtask_id: str
    order: int
    description: str
    dependencies: tuple[str, ...] = ()
    blocking: bool = True

    def to_dict(self) -> dict[str, object]:
        return {
            "subtask_id": self.subtask_id,
            "order": self.order,
            "description": self.description,
            "dependencies": list(self.dependencies),
            "blocking": self.blocking,
        }


def extract_subtasks(prompt: str) -> tuple[str, list[Subtask]]:
    """Return ``(source, subtasks)`` where source names the structure found.

    Numbered lists and sequence words yield chained subtasks; bullets are
    independent.
    """

    numbered = [_clean(match.group(2)) for match in _NUMBERED_ITEM.finditer(prompt)]
    numbered = [item for item in numbered if item]
    if numbered:
        return "numbered", _build(numbered, sequential=True)

    bullets = [_clean(match.group(1)) for match in _BULLET_ITEM.finditer(prompt)]
    bullets = [item for item in bullets if item]
    if bullets:
        return "bullets", _build(bullets, sequential=False)

    descriptions = [_clean(match.group(2)) for match in _SEQUENCE_ITEM.finditer(prompt)]
    steps = [description for description in descriptions if description]
    if steps:
        return "sequence", _build(steps, sequential=True)

    return "none", []


def is_optional(description: str) -> bool:
    lowered = description.lower()
    return any(marker in lowered for marker in _OPTIONAL_MARKERS)


def _build(descriptions: list[str], *, sequential: bool) -> list[Subtask]:
    subtasks: list[Subtask] = []
    for index, description in enumerate(descriptions, start=1):
        dependencies: tuple[str, ...] = ()
        if sequential and subtasks:
            dependencies = (subtasks[-1].subtask_id,)
        subtasks.append(
            Subtask(
                subtask_id=f"subtask-{index}",
                order=index,
                description=description,
                dependencies=dependencies,
                blocking=not is_optional(description),
            ),
        )
    return subtasks


def _clean(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()
