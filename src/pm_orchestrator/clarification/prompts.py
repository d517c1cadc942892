"""Prompt text used when resuming or re-asking after a clarification."""

from __future__ import annotations

import re

from pm_orchestrator.queue.models import Clarification

_SUMMARY = re.compile(r"\b(?:summar\w*|overview|recap|tl;?dr)\b", re.IGNORECASE)
_STATUS = re.compile(r"\b(?:status|progress|state)\b", re.IGNORECASE)
_ANALYSIS = re.compile(r"\b(?:analy[sz]\w*|audit|review|inspect|investigat\w*|check)\b", re.IGNORECASE)


def build_explicit_prompt(original_prompt: str, question: str, answer: str) -> str:
    """Re-prompt with a clarification decision applied."""

    return (
        f"{original_prompt.rstrip()}\n\n"
        f"Clarification: {question.strip()}\n"
        f"Decision: {answer.strip()}\n"
        "Proceed using this decision without asking again."
    )


def build_resumed_prompt(prompt: str, clarification: Clarification | None) -> str:
    """Prefix an answered clarification to a resumed task prompt."""

    if clarification is None or not clarification.answer:
        return prompt
    header = (
        "Previously asked clarification:\n"
        f"Q: {clarification.question.strip()}\n"
        f"A: {clarification.answer.strip()}\n"
    )
    if clarification.partial_output:
        header += f"\nOutput produced before the question:\n{clarification.partial_output.strip()}\n"
    return f"{header}\n{prompt}"


def generate_fallback_question(prompt: str) -> str:
    """Question asked when a read-only task produced no output at all."""

    if _SUMMARY.search(prompt):
        return "The summary came back empty. Which sources or time range should the summary cover?"
    if _STATUS.search(prompt):
        return "No status information was found. Which component or task should the status report cover?"
    if _ANALYSIS.search(prompt):
        return "The analysis produced no findings. Which files or areas should be analyzed?"
    return "The task produced no output. Could you clarify what result you expect?"
