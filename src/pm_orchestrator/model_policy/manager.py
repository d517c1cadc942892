"""Per-phase model selection, escalation and session cost tracking."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pm_orchestrator.model_policy.profiles import (
    DEFAULT_PROFILE,
    PROFILES,
    ModelProfile,
    get_profile,
)
from pm_orchestrator.model_policy.registry import (
    MODEL_REGISTRY,
    PHASE_CATEGORY,
    ModelCategory,
    Phase,
    estimate_cost,
    find_larger_context_model,
    find_model_for_context,
    get_model_info,
)
from pm_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ModelPolicyConfig:
    profile: str = DEFAULT_PROFILE
    cost_limit: float | None = None
    cost_warning_ratio: float = 0.8
    fallback_provider: str = "openai"
    fallback_order: tuple[str, ...] = ("openai", "anthropic")

    def validate(self) -> None:
        get_profile(self.profile)
        if self.cost_limit is not None and self.cost_limit <= 0:
            raise ValueError("cost_limit must be > 0.")
        if not 0 < self.cost_warning_ratio <= 1:
            raise ValueError("cost_warning_ratio must be within (0, 1].")


@dataclass(slots=True)
class SelectionContext:
    task_id: str | None = None
    subtask_id: str | None = None
    retry_count: int = 0
    estimated_tokens: int = 0
    user_override: str | None = None
    current_model: str | None = None


@dataclass(slots=True, frozen=True)
class ModelSelection:
    provider: str
    model: str
    reason: str
    phase: Phase


@dataclass(slots=True, frozen=True)
class ModelUsageRecord:
    phase: Phase
    model: str
    provider: str
    tokens_in: int
    tokens_out: int
    cost: float
    timestamp: datetime
    task_id: str | None = None
    subtask_id: str | None = None
    selection_reason: str | None = None


@dataclass(slots=True)
class UsageTotals:
    calls: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0

    def add(self, record: ModelUsageRecord) -> None:
        self.calls += 1
        self.tokens_in += record.tokens_in
        self.tokens_out += record.tokens_out
        self.cost = round(self.cost + record.cost, 4)


@dataclass(slots=True)
class UsageSummary:
    total: UsageTotals = field(default_factory=UsageTotals)
    by_model: dict[str, UsageTotals] = field(default_factory=dict)
    by_phase: dict[str, UsageTotals] = field(default_factory=dict)
    escalation_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        def totals(item: UsageTotals) -> dict[str, Any]:
            return {
                "calls": item.calls,
                "tokens_in": item.tokens_in,
                "tokens_out": item.tokens_out,
                "cost": item.cost,
            }

        return {
            "total": totals(self.total),
            "by_model": {name: totals(item) for name, item in sorted(self.by_model.items())},
            "by_phase": {name: totals(item) for name, item in sorted(self.by_phase.items())},
            "escalation_count": self.escalation_count,
        }


@dataclass(slots=True, frozen=True)
class CostLimitStatus:
    warn: bool
    exceeded: bool
    current_cost: float
    limit: float
    remaining: float


class ModelPolicyManager:
    """Chooses a model per phase and accumulates session cost.

    Selection order: user override, retry escalation, context overflow,
    profile phase model, category default for the phase.
    """

    def __init__(self, config: ModelPolicyConfig | None = None) -> None:
        self.config = config or ModelPolicyConfig()
        self.config.validate()
        self._profile = get_profile(self.config.profile)
        self._lock = threading.Lock()
        self._records: list[ModelUsageRecord] = []
        self._escalations = 0

    @property
    def profile(self) -> ModelProfile:
        return self._profile

    def set_profile(self, name: str) -> ModelProfile:
        self._profile = get_profile(name)
        logger.info("Model profile switched to %s", name)
        return self._profile

    @staticmethod
    def available_profiles() -> list[ModelProfile]:
        return [PROFILES[name] for name in sorted(PROFILES)]

    def select(self, phase: Phase, context: SelectionContext | None = None) -> ModelSelection:
        ctx = context or SelectionContext()
        if ctx.user_override:
            return self._selection(phase, ctx.user_override, "user_override")

        profile = self._profile
        if phase == Phase.RETRY and ctx.retry_count >= profile.escalation_threshold:
            escalated = self._next_on_escalation_path(ctx.current_model)
            if escalated is not None:
                self._note_escalation(ctx.current_model, escalated, "retry_escalation")
                return self._selection(phase, escalated, "retry_escalation")

        base = profile.phase_models.get(phase)
        base_reason = "profile_phase_model"
        if base is None:
            base = profile.category_defaults[PHASE_CATEGORY[phase]]
            base_reason = "phase_default"

        info = get_model_info(base)
        if info is not None and ctx.estimated_tokens > info.context_window:
            larger = find_model_for_context(ctx.estimated_tokens)
            if larger is not None and larger.name != base:
                self._note_escalation(base, larger.name, "context_overflow")
                return self._selection(phase, larger.name, "context_overflow")

        return self._selection(phase, base, base_reason)

    def escalate_model(self, current: str) -> str | None:
        """Next larger-context model in the same category, or None at the top."""

        larger = find_larger_context_model(current)
        if larger is None:
            return None
        self._note_escalation(current, larger.name, "escalate_model")
        return larger.name

    def get_provider_for_model(self, model: str | None) -> str:
        info = get_model_info(model)
        if info is None:
            return self.config.fallback_provider
        return info.provider

    def fallback_model(
        self,
        provider_failed: str,
        *,
        category: ModelCategory = ModelCategory.STANDARD,
    ) -> ModelSelection | None:
        """First model of the next provider in ``fallback_order``."""

        order = list(self.config.fallback_order)
        if provider_failed in order:
            start = order.index(provider_failed) + 1
            order = order[start:] + order[:start]
        for provider in order:
            if provider == provider_failed:
                continue
            models = [info for info in MODEL_REGISTRY.values() if info.provider == provider]
            if not models:
                continue
            preferred = [info for info in models if info.category == category] or models
            chosen = min(preferred, key=lambda item: (item.input_usd_per_1m, item.name))
            return ModelSelection(
                provider=provider,
                model=chosen.name,
                reason=f"provider_fallback:{provider_failed}",
                phase=Phase.RETRY,
            )
        return None

    def record_usage(  # noqa: PLR0913
        self,
        phase: Phase,
        model: str,
        tokens_in: int,
        tokens_out: int,
        *,
        provider: str | None = None,
        task_id: str | None = None,
        subtask_id: str | None = None,
        selection_reason: str | None = None,
    ) -> ModelUsageRecord:
        record = ModelUsageRecord(
            phase=phase,
            model=model,
            provider=provider or self.get_provider_for_model(model),
            tokens_in=max(0, tokens_in),
            tokens_out=max(0, tokens_out),
            cost=estimate_cost(model, max(0, tokens_in), max(0, tokens_out)),
            timestamp=utc_now(),
            task_id=task_id,
            subtask_id=subtask_id,
            selection_reason=selection_reason,
        )
        with self._lock:
            self._records.append(record)
        return record

    def records(self) -> list[ModelUsageRecord]:
        with self._lock:
            return list(self._records)

    def current_cost(self) -> float:
        with self._lock:
            return round(sum(record.cost for record in self._records), 4)

    def cost_limit(self) -> float:
        if self.config.cost_limit is not None:
            return self.config.cost_limit
        return self._profile.daily_cost_limit

    def check_cost_limit(self) -> CostLimitStatus:
        limit = self.cost_limit()
        current = self.current_cost()
        status = CostLimitStatus(
            warn=current >= limit * self.config.cost_warning_ratio,
            exceeded=current >= limit,
            current_cost=current,
            limit=limit,
            remaining=round(max(0.0, limit - current), 4),
        )
        if status.exceeded:
            logger.error("Cost limit exceeded: %.4f >= %.2f USD", current, limit)
        elif status.warn:
            logger.warning("Cost approaching limit: %.4f of %.2f USD", current, limit)
        return status

    def usage_summary(self) -> UsageSummary:
        summary = UsageSummary()
        with self._lock:
            records = list(self._records)
            summary.escalation_count = self._escalations
        for record in records:
            summary.total.add(record)
            summary.by_model.setdefault(record.model, UsageTotals()).add(record)
            summary.by_phase.setdefault(record.phase.value, UsageTotals()).add(record)
        return summary

    def _next_on_escalation_path(self, current: str | None) -> str | None:
        path = self._profile.escalation_path
        if not path:
            return None
        if current in path:
            index = path.index(current)
            return path[index + 1] if index + 1 < len(path) else None
        return path[0]

    def _note_escalation(self, previous: str | None, current: str, reason: str) -> None:
        with self._lock:
            self._escalations += 1
        logger.info("Model escalation (%s): %s -> %s", reason, previous, current)

    def _selection(self, phase: Phase, model: str, reason: str) -> ModelSelection:
        return ModelSelection(
            provider=self.get_provider_for_model(model),
            model=model,
            reason=reason,
            phase=phase,
        )
