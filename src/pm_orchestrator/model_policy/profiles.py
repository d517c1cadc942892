"""Preset model profiles."""

from __future__ import annotations

from dataclasses import dataclass, field

from pm_orchestrator.model_policy.registry import ModelCategory, Phase

SONNET = "claude-3-5-sonnet-20241022"
HAIKU = "claude-3-haiku-20240307"


@dataclass(slots=True, frozen=True)
class ModelProfile:
    name: str
    description: str
    category_defaults: dict[ModelCategory, str]
    fallback_model: str
    escalation_threshold: int
    escalation_path: tuple[str, ...]
    daily_cost_limit: float
    phase_models: dict[Phase, str] = field(default_factory=dict)


PROFILES: dict[str, ModelProfile] = {
    "stable": ModelProfile(
        name="stable",
        description="Balanced quality and cost.",
        category_defaults={
            ModelCategory.PLANNING: "gpt-4o-mini",
            ModelCategory.STANDARD: "gpt-4o",
            ModelCategory.ADVANCED: SONNET,
        },
        fallback_model="gpt-4o",
        escalation_threshold=2,
        escalation_path=("gpt-4o", SONNET),
        daily_cost_limit=50.0,
    ),
    "cheap": ModelProfile(
        name="cheap",
        description="Minimum cost; small models wherever possible.",
        category_defaults={
            ModelCategory.PLANNING: "gpt-4o-mini",
            ModelCategory.STANDARD: "gpt-4o-mini",
            ModelCategory.ADVANCED: "gpt-4o",
        },
        fallback_model="gpt-4o-mini",
        escalation_threshold=3,
        escalation_path=("gpt-4o",),
        daily_cost_limit=10.0,
        phase_models={Phase.IMPLEMENTATION: "gpt-4o"},
    ),
    "fast": ModelProfile(
        name="fast",
        description="Minimum latency.",
        category_defaults={
            ModelCategory.PLANNING: HAIKU,
            ModelCategory.STANDARD: "gpt-4o-mini",
            ModelCategory.ADVANCED: "gpt-4o",
        },
        fallback_model="gpt-4o-mini",
        escalation_threshold=2,
        escalation_path=("gpt-4o",),
        daily_cost_limit=30.0,
    ),
}

DEFAULT_PROFILE = "stable"


def get_profile(name: str) -> ModelProfile:
    profile = PROFILES.get(name)
    if profile is None:
        available = ", ".join(sorted(PROFILES))
        raise ValueError(f"Unknown model profile {name!r}; available: {available}")
    return profile
