"""Clarification handling: resolver, then session history, then escalation."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from pm_orchestrator.clarification.history import ClarificationHistory
from pm_orchestrator.clarification.models import ClarificationType, detect_clarification_type
from pm_orchestrator.clarification.resolver import SemanticResolver
from pm_orchestrator.queue.models import Clarification

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ClarificationOutcome:
    resolved: bool
    question: str
    clarification_type: ClarificationType
    answer: str | None = None
    source: str | None = None
    clarification: Clarification | None = None


class ClarificationEngine:
    """Answers a question without a human when a rule or earlier answer applies."""

    def __init__(
        self,
        *,
        resolver: SemanticResolver | None = None,
        history: ClarificationHistory | None = None,
    ) -> None:
        self.resolver = resolver or SemanticResolver()
        self.history = history or ClarificationHistory()

    def handle(  # noqa: PLR0913
        self,
        question: str,
        *,
        clarification_type: ClarificationType | str | None = None,
        options: Sequence[str] = (),
        partial_output: str | None = None,
        reason: str = "executor_question",
    ) -> ClarificationOutcome:
        kind = (
            ClarificationType.coerce(clarification_type)
            if clarification_type
            else detect_clarification_type(question)
        )
        resolution = self.resolver.resolve(question, kind, options=options)
        if resolution is not None:
            logger.info("Auto-resolved clarification via %s: %r -> %r", resolution.rule, question, resolution.answer)
            return ClarificationOutcome(
                resolved=True,
                question=question,
                clarification_type=kind,
                answer=resolution.answer,
                source=f"resolver:{resolution.rule}",
            )

        remembered = self.history.lookup(question)
        if remembered is not None:
            logger.info("Answered clarification from session history: %r -> %r", question, remembered)
            return ClarificationOutcome(
                resolved=True,
                question=question,
                clarification_type=kind,
                answer=remembered,
                source="history",
            )

        logger.info("Escalating clarification (%s): %r", kind.value, question)
        return ClarificationOutcome(
            resolved=False,
            question=question,
            clarification_type=kind,
            clarification=Clarification(
                question=question,
                reason=reason,
                clarification_type=kind.value,
                options=tuple(options),
                partial_output=partial_output or None,
            ),
        )

    def record_answer(self, question: str, answer: str) -> None:
        self.history.record(question, answer)
