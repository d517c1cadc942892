"""Model selection per phase, escalation and cost limits."""

from pm_orchestrator.model_policy.manager import (
    CostLimitStatus,
    ModelPolicyConfig,
    ModelPolicyManager,
    ModelSelection,
    ModelUsageRecord,
    SelectionContext,
    UsageSummary,
)
from pm_orchestrator.model_policy.profiles import PROFILES, ModelProfile, get_profile
from pm_orchestrator.model_policy.registry import (
    MODEL_REGISTRY,
    ModelCategory,
    ModelInfo,
    Phase,
    estimate_cost,
)

__all__ = [
    "MODEL_REGISTRY",
    "PROFILES",
    "CostLimitStatus",
    "ModelCategory",
    "ModelInfo",
    "ModelPolicyConfig",
    "ModelPolicyManager",
    "ModelProfile",
    "ModelSelection",
    "ModelUsageRecord",
    "Phase",
    "SelectionContext",
    "UsageSummary",
    "estimate_cost",
    "get_profile",
]
