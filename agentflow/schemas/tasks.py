from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from .plan import ExecutionMode, ExecutionPlan, StepStatus
from .status import ExecutionStatus

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.context import TaskExecutionContext


class TaskStatusView(BaseModel):
    task_id: str
    status: ExecutionStatus
    progress: float = Field(ge=0.0, le=1.0)
    replan_count: int = 0
    started_at: datetime
    completed_at: datetime | None = None
    is_completed: bool = False
    errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_context(cls, context: "TaskExecutionContext") -> "TaskStatusView":
        return cls(
            task_id=context.task_id,
            status=context.status,
            progress=context.progress,
            replan_count=context.replan_count,
            started_at=context.started_at,
            completed_at=context.completed_at,
            is_completed=context.is_completed,
            errors=context.errors,
        )


class PlanStepView(BaseModel):
    step_id: str
    order: int
    agent_name: str
    action: str
    status: StepStatus
    result: str | None = None
    error: str | None = None
    retry_count: int = 0


class PlanView(BaseModel):
    plan_id: str
    objective: str
    mode: ExecutionMode
    version: int
    progress: float
    requires_human_approval: bool = False
    human_approval_reason: str | None = None
    steps: list[PlanStepView] = Field(default_factory=list)

    @classmethod
    def from_plan(cls, plan: ExecutionPlan) -> "PlanView":
        return cls(
            plan_id=plan.plan_id,
            objective=plan.objective,
            mode=plan.mode,
            version=plan.version,
            progress=plan.progress,
            requires_human_approval=plan.requires_human_approval,
            human_approval_reason=plan.human_approval_reason,
            steps=[
                PlanStepView(
                    step_id=step.step_id,
                    order=step.order,
                    agent_name=step.agent_name,
                    action=step.action,
                    status=step.status,
                    result=step.result,
                    error=step.error,
                    retry_count=step.retry_count,
                )
                for step in plan.ordered_steps()
            ],
        )


__all__ = ["PlanStepView", "PlanView", "TaskStatusView"]
