"""Session-scoped memory of answered clarification questions."""

from __future__ import annotations

import hashlib
import re
import threading
from dataclasses import dataclass
from datetime import datetime

from pm_orchestrator.queue.models import Clarification
from pm_orchestrator.storage.common import utc_now

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCTUATION = re.compile(r"[\s?？!！.。,，:;]+$")


def normalize_question(question: str) -> str:
    """Lower-case, trim, collapse whitespace and strip trailing punctuation."""

    collapsed = _WHITESPACE.sub(" ", question.strip().lower())
    return _TRAILING_PUNCTUATION.sub("", collapsed)


def question_key(question: str) -> str:
    return hashlib.sha256(normalize_question(question).encode("utf-8")).hexdigest()


@dataclass(slots=True)
class HistoryEntry:
    question: str
    answer: str
    times_answered: int
    updated_at: datetime


class ClarificationHistory:
    """Latest answer per normalized question; lost when the session ends."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, HistoryEntry] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def lookup(self, question: str) -> str | None:
        with self._lock:
            entry = self._entries.get(question_key(question))
            return entry.answer if entry is not None else None

    def record(self, question: str, answer: str) -> HistoryEntry:
        key = question_key(question)
        with self._lock:
            previous = self._entries.get(key)
            entry = HistoryEntry(
                question=question,
                answer=answer,
                times_answered=(previous.times_answered if previous is not None else 0) + 1,
                updated_at=utc_now(),
            )
            self._entries[key] = entry
            return entry

    def seed(self, clarification: Clarification | None) -> bool:
        """Record an answered clarification restored from a stored task."""

        if clarification is None or not clarification.answer or not clarification.question:
            return False
        self.record(clarification.question, clarification.answer)
        return True

    def entries(self) -> list[HistoryEntry]:
        with self._lock:
            return list(self._entries.values())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
