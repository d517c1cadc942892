"""Detect unanswered questions in executor output."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

QUESTION_THRESHOLD = 0.6


@dataclass(slots=True, frozen=True)
class _WeightedPattern:
    pattern: re.Pattern[str]
    weight: float
    description: str


def _weighted(pattern: str, weight: float, description: str, flags: int = re.IGNORECASE) -> _WeightedPattern:
    return _WeightedPattern(re.compile(pattern, flags), weight, description)


_QUESTION_PATTERNS: tuple[_WeightedPattern, ...] = (
    _weighted(r"please (?:let me know|confirm|clarify|specify)", 0.7, "please let me know"),
    _weighted(r"could you (?:please )?(?:specify|clarify)", 0.7, "could you specify"),
    _weighted(r"can you (?:clarify|tell|specify|provide)", 0.6, "can you clarify"),
    _weighted(r"which (?:option|approach|method|file|one)", 0.6, "which option"),
    _weighted(r"do you (?:want|prefer|need)", 0.7, "do you want"),
    _weighted(r"should I (?:proceed|continue|use)", 0.6, "should I proceed"),
    _weighted(r"would you like", 0.7, "would you like"),
    _weighted(r"what (?:do you|would you)", 0.7, "what do you"),
    _weighted(r"how (?:do you|would you|should)", 0.6, "how should"),
    _weighted(r"どう(?:します|しましょう)か", 0.8, "ja: dou shimasu ka", 0),
    _weighted(r"どちら(?:にしますか|を選びますか)", 0.9, "ja: dochira", 0),
    _weighted(r"よろしい(?:です)?か", 0.8, "ja: yoroshii desu ka", 0),
    _weighted(r"教えてください", 0.6, "ja: oshiete kudasai", 0),
)
_QUESTION_MARK_PATTERNS: tuple[_WeightedPattern, ...] = (
    _weighted(r"[?？][\s]*$", 0.4, "ends with question mark", re.MULTILINE),
    _weighted(r"[?？][ \t]*\n", 0.3, "question mark at line end", re.MULTILINE),
)
_OPTION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^\s*[1-9][.)]\s+\S", re.MULTILINE),
    re.compile(r"^\s*[A-D][.)]\s+\S", re.MULTILINE),
)
_AWAITING_WITH_OPTIONS: tuple[_WeightedPattern, ...] = (
    _weighted(r"please (?:select|choose)", 0.5, "please select (with options)"),
    _weighted(r"which.*prefer", 0.4, "which prefer (with options)"),
)
_CODE_BLOCK = re.compile(r"```.*?```", re.DOTALL)
_SENTENCE_QUESTION = re.compile(r"[^.!?\n]*[?？]")


@dataclass(slots=True)
class QuestionDetection:
    has_questions: bool
    confidence: float
    matched_patterns: list[str] = field(default_factory=list)


def strip_code_blocks(text: str) -> str:
    return _CODE_BLOCK.sub("", text)


def detect_questions(output: str | None) -> QuestionDetection:
    """Score ``output`` for pending questions; code blocks are ignored."""

    if not output:
        return QuestionDetection(has_questions=False, confidence=0.0)
    text = strip_code_blocks(output)
    total = 0.0
    matched: list[str] = []
    for item in (*_QUESTION_PATTERNS, *_QUESTION_MARK_PATTERNS):
        if item.pattern.search(text):
            total += item.weight
            matched.append(item.description)
    if any(pattern.search(text) for pattern in _OPTION_PATTERNS):
        for item in _AWAITING_WITH_OPTIONS:
            if item.pattern.search(text):
                total += item.weight
                matched.append(item.description)
    confidence = min(total, 1.0)
    return QuestionDetection(
        has_questions=confidence >= QUESTION_THRESHOLD,
        confidence=round(confidence, 2),
        matched_patterns=matched,
    )


def has_unanswered_questions(output: str | None) -> bool:
    return detect_questions(output).has_questions


def extract_questions(output: str | None) -> list[str]:
    """Question sentences outside code blocks, in order of appearance."""

    if not output:
        return []
    text = strip_code_blocks(output)
    questions: list[str] = []
    for match in _SENTENCE_QUESTION.finditer(text):
        sentence = " ".join(match.group(0).split())
        if len(sentence) > 1 and sentence not in questions:
            questions.append(sentence)
    return questions
