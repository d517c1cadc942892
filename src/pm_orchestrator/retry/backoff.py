"""Backoff delay computation for retry scheduling."""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import Enum

JITTER_MIN_FACTOR = 0.9
JITTER_MAX_FACTOR = 1.1


class BackoffKind(str, Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


@dataclass(slots=True, frozen=True)
class BackoffStrategy:
    """Delay policy between attempts, in milliseconds."""

    kind: BackoffKind = BackoffKind.EXPONENTIAL
    initial_ms: int = 1_000
    multiplier: float = 2.0
    max_ms: int = 30_000
    jitter: bool = False

    def validate(self) -> None:
        if self.initial_ms < 0:
            raise ValueError("Backoff initial delay must be >= 0.")
        if self.max_ms < self.initial_ms:
            raise ValueError("Backoff max delay must be >= initial delay.")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be >= 1.")


def calculate_backoff(
    attempt: int,
    strategy: BackoffStrategy | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """Return the delay before retry number ``attempt`` (0-based).

    Exponential: ``min(initial * multiplier**attempt, max)``. With jitter the
    capped delay is multiplied by a uniform factor in ``[0.9, 1.1]`` and capped
    again, so with the default multiplier of 2 delays stay strictly increasing
    below the cap.
    """

    resolved = strategy or BackoffStrategy()
    attempt = max(0, attempt)
    if resolved.kind == BackoffKind.FIXED:
        delay = float(resolved.initial_ms)
    elif resolved.kind == BackoffKind.LINEAR:
        delay = float(resolved.initial_ms * (attempt + 1))
    else:
        delay = resolved.initial_ms * (resolved.multiplier**attempt)
    delay = min(delay, float(resolved.max_ms))
    if resolved.jitter:
        generator = rng or random.Random()  # noqa: S311
        delay = min(delay * generator.uniform(JITTER_MIN_FACTOR, JITTER_MAX_FACTOR), float(resolved.max_ms))
    return int(round(delay))
