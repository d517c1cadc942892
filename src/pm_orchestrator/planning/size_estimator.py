"""Rule-based task size estimation.

Scores are a sum of weighted indicator matches, so estimation is
deterministic and adding indicator phrases never lowers a score.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

MIN_SCORE = 1
MAX_SCORE = 10


class SizeCategory(str, Enum):
    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


CATEGORY_TOKEN_BASELINE: dict[SizeCategory, int] = {
    SizeCategory.XS: 1_000,
    SizeCategory.S: 4_000,
    SizeCategory.M: 8_000,
    SizeCategory.L: 16_000,
    SizeCategory.XL: 32_000,
}


@dataclass(slots=True, frozen=True)
class SizeIndicator:
    name: str
    weight: int
    pattern: re.Pattern[str]


def _indicator(name: str, weight: int, pattern: str) -> SizeIndicator:
    return SizeIndicator(name=name, weight=weight, pattern=re.compile(pattern, re.IGNORECASE))


INDICATORS: tuple[SizeIndicator, ...] = (
    _indicator(
        "full_implementation",
        3,
        r"\b(?:implement|build|create|develop)\b.*\b(?:full|complete|entire|whole)\b",
    ),
    _indicator("authentication", 2, r"\b(?:auth|authentication|authorization)\b"),
    _indicator("security", 2, r"\bsecurity\b"),
    _indicator("database", 2, r"\b(?:database|migrations?|sql)\b"),
    _indicator("api", 2, r"\b(?:api|endpoints?|rest|graphql)\b"),
    _indicator("integration", 2, r"\b(?:integrat\w*|connect|combine|merge)\b"),
    _indicator("refactor", 2, r"\b(?:refactor\w*|rewrite|redesign|overhaul)\b"),
    _indicator("multiple_files", 1, r"\b(?:multiple|several)\s+files?\b"),
    _indicator("tests", 1, r"\btest(?:s|ing)?\b"),
    _indicator("performance", 1, r"\b(?:optimi[sz]e\w*|performance)\b"),
    _indicator("bug_fix", 1, r"\b(?:fix|bugs?)\b"),
)

_EXPLICIT_FILE_COUNT = re.compile(r"\b(\d+)\s+files?\b", re.IGNORECASE)
_MULTIPLE_FILES = re.compile(r"\b(?:multiple|several)\s+files?\b", re.IGNORECASE)
_ALL_FILES = re.compile(r"\b(?:all|every)\s+(?:\w+\s+)?files?\b", re.IGNORECASE)
_WORD = re.compile(r"\S+")


@dataclass(slots=True)
class SizeEstimate:
    score: int
    category: SizeCategory
    token_estimate: int
    file_count: int
    word_count: int
    reasons: list[str] = field(default_factory=list)

    @property
    def category_token_baseline(self) -> int:
        return CATEGORY_TOKEN_BASELINE[self.category]

    def to_dict(self) -> dict[str, object]:
        return {
            "score": self.score,
            "category": self.category.value,
            "token_estimate": self.token_estimate,
            "file_count": self.file_count,
            "reasons": list(self.reasons),
        }


def category_for_score(score: int) -> SizeCategory:
    if score <= 2:
        return SizeCategory.XS
    if score <= 4:
        return SizeCategory.S
    if score <= 6:
        return SizeCategory.M
    if score <= 8:
        return SizeCategory.L
    return SizeCategory.XL


def estimate_file_count(prompt: str) -> int:
    explicit = _EXPLICIT_FILE_COUNT.search(prompt)
    if explicit is not None:
        return max(1, int(explicit.group(1)))
    if _ALL_FILES.search(prompt):
        return 10
    if _MULTIPLE_FILES.search(prompt):
        return 5
    return 1


def estimate_size(prompt: str, *, collect_reasons: bool = True) -> SizeEstimate:
    """Score ``prompt`` on a 1..10 scale and bucket it into a size category."""

    raw_score = 0
    reasons: list[str] = []
    for indicator in INDICATORS:
        if indicator.pattern.search(prompt):
            raw_score += indicator.weight
            if collect_reasons:
                reasons.append(f"{indicator.name} (+{indicator.weight})")
    score = min(MAX_SCORE, max(MIN_SCORE, raw_score))
    word_count = len(_WORD.findall(prompt))
    file_count = estimate_file_count(prompt)
    token_estimate = int(round(word_count * 2 * (1 + score * 0.5) * file_count))
    if collect_reasons and file_count > 1:
        reasons.append(f"file_count={file_count}")
    return SizeEstimate(
        score=score,
        category=category_for_score(score),
        token_estimate=token_estimate,
        file_count=file_count,
        word_count=word_count,
        reasons=reasons,
    )


def quick_size_check(prompt: str) -> SizeEstimate:
    """Pre-flight triage: same score, no reason collection or subtask work."""

    return estimate_size(prompt, collect_reasons=False)
