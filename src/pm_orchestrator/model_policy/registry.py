"""Known models, their providers, context windows and prices."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ModelCategory(str, Enum):
    PLANNING = "planning"
    STANDARD = "standard"
    ADVANCED = "advanced"


class Phase(str, Enum):
    PLANNING = "PLANNING"
    IMPLEMENTATION = "IMPLEMENTATION"
    QUALITY_CHECK = "QUALITY_CHECK"
    RETRY = "RETRY"


PHASE_CATEGORY: dict[Phase, ModelCategory] = {
    Phase.PLANNING: ModelCategory.PLANNING,
    Phase.IMPLEMENTATION: ModelCategory.STANDARD,
    Phase.QUALITY_CHECK: ModelCategory.STANDARD,
    Phase.RETRY: ModelCategory.ADVANCED,
}


@dataclass(slots=True, frozen=True)
class ModelInfo:
    name: str
    provider: str
    category: ModelCategory
    context_window: int
    input_usd_per_1m: float
    output_usd_per_1m: float

    @property
    def input_usd_per_1k(self) -> float:
        return self.input_usd_per_1m / 1_000

    @property
    def output_usd_per_1k(self) -> float:
        return self.output_usd_per_1m / 1_000


MODEL_REGISTRY: dict[str, ModelInfo] = {
    info.name: info
    for info in (
        ModelInfo("gpt-4o", "openai", ModelCategory.STANDARD, 128_000, 2.50, 10.00),
        ModelInfo("gpt-4o-mini", "openai", ModelCategory.PLANNING, 128_000, 0.15, 0.60),
        ModelInfo("gpt-4-turbo", "openai", ModelCategory.ADVANCED, 128_000, 10.00, 30.00),
        ModelInfo(
            "claude-3-5-sonnet-20241022",
            "anthropic",
            ModelCategory.ADVANCED,
            200_000,
            3.00,
            15.00,
        ),
        ModelInfo(
            "claude-3-haiku-20240307",
            "anthropic",
            ModelCategory.PLANNING,
            200_000,
            0.25,
            1.25,
        ),
    )
}


def get_model_info(model: str | None) -> ModelInfo | None:
    if not model:
        return None
    return MODEL_REGISTRY.get(model)


def estimate_cost(model: str, tokens_in: int, tokens_out: int) -> float:
    """USD cost of one call; unknown models cost nothing."""

    info = get_model_info(model)
    if info is None:
        return 0.0
    cost = (tokens_in / 1_000) * info.input_usd_per_1k + (tokens_out / 1_000) * info.output_usd_per_1k
    return round(cost, 4)


def find_larger_context_model(current: str) -> ModelInfo | None:
    """Smallest model in the same category with a strictly larger context window."""

    info = get_model_info(current)
    if info is None:
        return None
    candidates = [
        candidate
        for candidate in MODEL_REGISTRY.values()
        if candidate.category == info.category and candidate.context_window > info.context_window
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda item: (item.context_window, item.input_usd_per_1m, item.name))


def find_model_for_context(required_tokens: int) -> ModelInfo | None:
    """Smallest (then cheapest) model whose window fits ``required_tokens``."""

    candidates = [item for item in MODEL_REGISTRY.values() if item.context_window >= required_tokens]
    if not candidates:
        return None
    return min(candidates, key=lambda item: (item.context_window, item.input_usd_per_1m, item.name))
