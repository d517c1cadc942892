"""Clarification auto-resolution, session history and result finalization."""

from pm_orchestrator.clarification.engine import ClarificationEngine, ClarificationOutcome
from pm_orchestrator.clarification.finalization import (
    FINALIZATION_TABLE,
    FinalizationDecision,
    FinalizationOutcome,
    finalize,
)
from pm_orchestrator.clarification.history import ClarificationHistory, normalize_question
from pm_orchestrator.clarification.models import ClarificationType, detect_clarification_type
from pm_orchestrator.clarification.question_detector import (
    detect_questions,
    extract_questions,
    has_unanswered_questions,
)
from pm_orchestrator.clarification.resolver import Resolution, SemanticResolver, match_option

__all__ = [
    "FINALIZATION_TABLE",
    "ClarificationEngine",
    "ClarificationHistory",
    "ClarificationOutcome",
    "ClarificationType",
    "FinalizationDecision",
    "FinalizationOutcome",
    "Resolution",
    "SemanticResolver",
    "detect_clarification_type",
    "detect_questions",
    "extract_questions",
    "finalize",
    "has_unanswered_questions",
    "match_option",
    "normalize_question",
]
