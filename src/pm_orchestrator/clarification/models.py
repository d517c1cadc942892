"""Clarification types and their detection from question text."""

from __future__ import annotations

import re
from enum import Enum


class ClarificationType(str, Enum):
    TARGET_FILE_AMBIGUOUS = "target_file_ambiguous"
    SCOPE_UNCLEAR = "scope_unclear"
    ACTION_AMBIGUOUS = "action_ambiguous"
    MISSING_CONTEXT = "missing_context"
    UNKNOWN = "unknown"

    @classmethod
    def coerce(cls, value: ClarificationType | str | None) -> ClarificationType:
        if isinstance(value, ClarificationType):
            return value
        try:
            return cls(str(value or cls.UNKNOWN.value).lower())
        except ValueError:
            return cls.UNKNOWN


_TYPE_PATTERNS: tuple[tuple[ClarificationType, re.Pattern[str]], ...] = (
    (
        ClarificationType.TARGET_FILE_AMBIGUOUS,
        re.compile(
            r"\b(?:which|what)\s+(?:file|path|directory|folder)|\bwhere\b.*\b(?:save|create|put|write)\b"
            r"|\bfile\s*(?:name|path)\b|ファイル|保存先",
            re.IGNORECASE,
        ),
    ),
    (
        ClarificationType.SCOPE_UNCLEAR,
        re.compile(
            r"\b(?:scope|how much|how many|which parts?|all or|entire|only)\b",
            re.IGNORECASE,
        ),
    ),
    (
        ClarificationType.ACTION_AMBIGUOUS,
        re.compile(
            r"\b(?:should i|do you want|shall i|which approach|which option|would you like|proceed)\b",
            re.IGNORECASE,
        ),
    ),
    (
        ClarificationType.MISSING_CONTEXT,
        re.compile(
            r"\b(?:please provide|need more (?:information|context)|what is|what are|can you provide|"
            r"missing)\b",
            re.IGNORECASE,
        ),
    ),
)
_EXPLICIT_MARKER = re.compile(r"clarification_(?:required|needed):(\w+)", re.IGNORECASE)


def detect_clarification_type(question: str) -> ClarificationType:
    marker = _EXPLICIT_MARKER.search(question)
    if marker is not None:
        return ClarificationType.coerce(marker.group(1))
    for clarification_type, pattern in _TYPE_PATTERNS:
        if pattern.search(question):
            return clarification_type
    return ClarificationType.UNKNOWN
