from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


class ExecutionMode(str, Enum):
    SEQUENTIAL = "Sequential"
    PARALLEL = "Parallel"
    HIERARCHICAL = "Hierarchical"
    CONDITIONAL = "Conditional"

    @classmethod
    def parse(cls, value: Any) -> "ExecutionMode":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for mode in cls:
                if mode.value.lower() == lowered:
                    return mode
        return cls.SEQUENTIAL


class StepStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    WAITING_DEPENDENCY = "WaitingDependency"  # reserved for dependency gating
    RETRYING = "Retrying"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})


class TaskStep(BaseModel):
    """One unit of work assigned to a named worker."""

    model_config = ConfigDict(populate_by_name=True)

    step_id: str = Field(default_factory=_new_id, alias="stepId")
    order: int = 0
    agent_name: str = Field(..., min_length=1, alias="agentName")
    action: str = Field(default="")
    parameters: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    status: StepStatus = StepStatus.PENDING
    result: str | None = None
    error: str | None = None
    started_at: datetime | None = Field(default=None, alias="startedAt")
    completed_at: datetime | None = Field(default=None, alias="completedAt")
    is_conditional: bool = Field(default=False, alias="isConditional")
    condition: str | None = None
    retry_count: int = Field(default=0, ge=0, alias="retryCount")
    max_retries: int = Field(default=3, ge=0, alias="maxRetries")

    @field_validator("parameters", mode="before")
    @classmethod
    def _coerce_parameters(cls, value: Any) -> dict[str, Any]:
        return dict(value) if value else {}

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    @property
    def duration(self) -> timedelta | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at


class ExecutionPlan(BaseModel):
    """Ordered set of steps plus a concurrency mode and version."""

    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(default_factory=_new_id, alias="planId")
    objective: str = Field(default="")
    steps: list[TaskStep] = Field(default_factory=list)
    mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    created_at: datetime = Field(default_factory=_utcnow, alias="createdAt")
    version: int = Field(default=1, ge=1)
    requires_human_approval: bool = Field(default=False, alias="requiresHumanApproval")
    human_approval_reason: str | None = Field(default=None, alias="humanApprovalReason")

    @field_validator("mode", mode="before")
    @classmethod
    def _parse_mode(cls, value: Any) -> ExecutionMode:
        return ExecutionMode.parse(value)

    def next_pending_step(self) -> TaskStep | None:
        return next((step for step in self.steps if step.status is StepStatus.PENDING), None)

    def ordered_steps(self) -> list[TaskStep]:
        return sorted(self.steps, key=lambda step: step.order)

    def completed_steps(self) -> list[TaskStep]:
        return [step for step in self.steps if step.status is StepStatus.COMPLETED]

    @property
    def is_complete(self) -> bool:
        return all(step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED) for step in self.steps)

    @property
    def has_failed(self) -> bool:
        return any(step.status is StepStatus.FAILED for step in self.steps)

    @property
    def progress(self) -> float:
        if not self.steps:
            return 0.0
        return len(self.completed_steps()) / len(self.steps)

    def summary(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "objective": self.objective,
            "mode": self.mode.value,
            "version": self.version,
            "is_complete": self.is_complete,
            "progress": self.progress,
            "steps": [
                {
                    "step_id": step.step_id,
                    "order": step.order,
                    "agent_name": step.agent_name,
                    "action": step.action,
                    "status": step.status.value,
                    "result": step.result,
                    "error": step.error,
                }
                for step in self.steps
            ],
        }


__all__ = [
    "ExecutionMode",
    "ExecutionPlan",
    "StepStatus",
    "TERMINAL_STEP_STATUSES",
    "TaskStep",
]
