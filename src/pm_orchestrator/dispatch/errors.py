"""Plan error hierarchy."""

from __future__ import annotations


class PlanError(RuntimeError):
    """Base class for plan failures surfaced to callers."""


class PlanNotFoundError(PlanError):
    def __init__(self, plan_id: str) -> None:
        super().__init__(f"Plan not found: {plan_id}")
        self.plan_id = plan_id


class InvalidPlanTransitionError(PlanError):
    def __init__(self, plan_id: str, status_from: str, status_to: str) -> None:
        super().__init__(
            f"Invalid status transition for plan {plan_id}: {status_from} -> {status_to}",
        )
        self.plan_id = plan_id
        self.status_from = status_from
        self.status_to = status_to
