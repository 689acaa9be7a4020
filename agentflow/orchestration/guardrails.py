from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, Sequence

from ..core.config import PlanningSettings
from ..core.logging import get_logger
from ..schemas.intent import IntentResult
from ..schemas.plan import ExecutionPlan

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .context import TaskExecutionContext

logger = get_logger(name=__name__)

APPROVAL_REASON = "This plan contains actions that require human approval."
CONFIRMATION_REASON = "The request asked for confirmation before execution."


@dataclass(slots=True)
class PlanReview:
    truncated_steps: int = 0
    flagged_actions: tuple[str, ...] = ()
    requires_confirmation: bool = False

    @property
    def requires_approval(self) -> bool:
        return self.requires_confirmation or bool(self.flagged_actions)


class PlanGuard:
    """Applies safety limits to every plan before it runs."""

    def __init__(self, settings: PlanningSettings | None = None) -> None:
        self._settings = settings or PlanningSettings()
        self._keywords = tuple(keyword.lower() for keyword in self._settings.sensitive_keywords)

    @property
    def max_steps(self) -> int:
        return self._settings.max_plan_steps

    def sensitive_actions(self, plan: ExecutionPlan) -> list[str]:
        return [
            step.action
            for step in plan.steps
            if any(keyword in step.action.lower() for keyword in self._keywords)
        ]

    def review(self, plan: ExecutionPlan, intent: IntentResult | None = None) -> PlanReview:
        """Truncate oversized plans and flag those needing approval, in place."""
        outcome = PlanReview()
        overflow = len(plan.steps) - self.max_steps
        if overflow > 0:
            plan.steps = plan.steps[: self.max_steps]
            outcome.truncated_steps = overflow
            logger.warning("plan_truncated", plan_id=plan.plan_id, max_steps=self.max_steps, dropped=overflow)

        outcome.flagged_actions = tuple(self.sensitive_actions(plan))
        outcome.requires_confirmation = bool(intent and intent.requires_confirmation)
        if outcome.requires_approval:
            plan.requires_human_approval = True
            if not plan.human_approval_reason:
                plan.human_approval_reason = (
                    APPROVAL_REASON if outcome.flagged_actions else CONFIRMATION_REASON
                )
            logger.info(
                "plan_flagged_for_approval",
                plan_id=plan.plan_id,
                flagged=len(outcome.flagged_actions),
                confirmation=outcome.requires_confirmation,
            )
        return outcome


class ApprovalGate(Protocol):
    async def request_approval(self, plan: ExecutionPlan, context: "TaskExecutionContext") -> bool:
        ...


class AutoApprovalGate:
    """Gate that approves every plan; the decision is still logged."""

    def __init__(self, *, approve: bool = True) -> None:
        self._approve = approve

    async def request_approval(self, plan: ExecutionPlan, context: "TaskExecutionContext") -> bool:
        logger.info(
            "plan_approval_decided",
            task_id=context.task_id,
            plan_id=plan.plan_id,
            approved=self._approve,
            reason=plan.human_approval_reason,
        )
        return self._approve


def flagged_summary(actions: Sequence[str]) -> str:
    return "; ".join(actions)


__all__ = [
    "APPROVAL_REASON",
    "ApprovalGate",
    "AutoApprovalGate",
    "PlanGuard",
    "PlanReview",
    "flagged_summary",
]
