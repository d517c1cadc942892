from __future__ import annotations

import allure
import pytest

from pm_orchestrator.model_policy.manager import (
    ModelPolicyConfig,
    ModelPolicyManager,
    SelectionContext,
)
from pm_orchestrator.model_policy.profiles import HAIKU, SONNET
from pm_orchestrator.model_policy.registry import Phase, estimate_cost, find_larger_context_model

pytestmark = [
    allure.epic("Model Policy"),
    allure.feature("Model Selection & Cost"),
]


def test_phase_defaults_for_stable_profile() -> None:
    manager = ModelPolicyManager()

    implementation = manager.select(Phase.IMPLEMENTATION)
    planning = manager.select(Phase.PLANNING)

    assert (implementation.model, implementation.provider, implementation.reason) == (
        "gpt-4o",
        "openai",
        "phase_default",
    )
    assert planning.model == "gpt-4o-mini"
    assert manager.select(Phase.RETRY).model == SONNET


def test_profile_phase_model_and_user_override() -> None:
    manager = ModelPolicyManager(ModelPolicyConfig(profile="cheap"))

    assert manager.select(Phase.IMPLEMENTATION).reason == "profile_phase_model"
    assert manager.select(Phase.PLANNING).model == "gpt-4o-mini"

    override = manager.select(Phase.IMPLEMENTATION, SelectionContext(user_override=HAIKU))
    assert (override.model, override.provider, override.reason) == (HAIKU, "anthropic", "user_override")


def test_retry_escalates_along_profile_path() -> None:
    manager = ModelPolicyManager()

    early = manager.select(Phase.RETRY, SelectionContext(retry_count=1, current_model="gpt-4o"))
    escalated = manager.select(Phase.RETRY, SelectionContext(retry_count=2, current_model="gpt-4o"))

    assert early.reason == "phase_default"
    assert (escalated.model, escalated.reason) == (SONNET, "retry_escalation")
    assert manager.usage_summary().escalation_count == 1

    at_top = manager.select(Phase.RETRY, SelectionContext(retry_count=5, current_model=SONNET))
    assert at_top.reason == "phase_default"


def test_context_overflow_picks_larger_window() -> None:
    manager = ModelPolicyManager()

    selection = manager.select(Phase.IMPLEMENTATION, SelectionContext(estimated_tokens=150_000))

    assert selection.model == HAIKU
    assert selection.reason == "context_overflow"


def test_escalate_model_returns_none_at_largest_window() -> None:
    manager = ModelPolicyManager()

    assert manager.escalate_model("gpt-4o-mini") == HAIKU
    assert manager.escalate_model("gpt-4o") is None
    assert manager.escalate_model(SONNET) is None
    assert find_larger_context_model("not-a-model") is None


def test_provider_fallback_rotates_order() -> None:
    manager = ModelPolicyManager()

    from_openai = manager.fallback_model("openai")
    from_anthropic = manager.fallback_model("anthropic")

    assert from_openai is not None
    assert (from_openai.provider, from_openai.model) == ("anthropic", HAIKU)
    assert from_openai.reason == "provider_fallback:openai"
    assert from_anthropic is not None
    assert (from_anthropic.provider, from_anthropic.model) == ("openai", "gpt-4o")
    assert ModelPolicyManager(ModelPolicyConfig(fallback_order=("openai",))).fallback_model("openai") is None


def test_cost_tracking_and_limit() -> None:
    manager = ModelPolicyManager(ModelPolicyConfig(cost_limit=4.0))

    record = manager.record_usage(Phase.IMPLEMENTATION, "gpt-4o", 1_000_000, 100_000, task_id="t1")
    status = manager.check_cost_limit()

    assert record.cost == 3.5
    assert record.provider == "openai"
    assert status.warn is True
    assert status.exceeded is False
    assert status.remaining == 0.5

    manager.record_usage(Phase.RETRY, "gpt-4o-mini", 10_000_000, 0)
    status = manager.check_cost_limit()
    assert status.exceeded is True
    assert status.remaining == 0.0

    summary = manager.usage_summary().to_dict()
    assert summary["total"]["calls"] == 2
    assert summary["total"]["cost"] == 5.0
    assert set(summary["by_phase"]) == {"IMPLEMENTATION", "RETRY"}


def test_cost_limit_defaults_to_profile_daily_limit() -> None:
    assert ModelPolicyManager(ModelPolicyConfig(profile="cheap")).cost_limit() == 10.0
    assert estimate_cost("unknown-model", 1_000, 1_000) == 0.0


def test_unknown_profile_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown model profile"):
        ModelPolicyManager(ModelPolicyConfig(profile="turbo"))

    manager = ModelPolicyManager()
    assert manager.set_profile("fast").name == "fast"
    assert [profile.name for profile in manager.available_profiles()] == ["cheap", "fast", "stable"]
