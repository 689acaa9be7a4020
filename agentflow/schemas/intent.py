from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Priority(str, Enum):
    LOW = "Low"
    NORMAL = "Normal"
    HIGH = "High"
    CRITICAL = "Critical"


class IntentResult(BaseModel):
    """Structured reading of a raw task prompt."""

    model_config = ConfigDict(populate_by_name=True)

    raw_input: str = Field(default="", alias="rawInput")
    objective: str = Field(default="")
    sub_goals: list[str] = Field(default_factory=list, alias="subGoals")
    parameters: dict[str, Any] = Field(default_factory=dict)
    constraints: list[str] = Field(default_factory=list)
    priority: Priority = Priority.NORMAL
    preferred_agent: str | None = Field(default=None, alias="preferredAgent")
    required_capabilities: list[str] = Field(default_factory=list, alias="requiredCapabilities")
    requires_confirmation: bool = Field(default=False, alias="requiresConfirmation")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("priority", mode="before")
    @classmethod
    def _parse_priority(cls, value: Any) -> Priority:
        if isinstance(value, Priority):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            for priority in Priority:
                if priority.value.lower() == lowered:
                    return priority
        return Priority.NORMAL


__all__ = ["IntentResult", "Priority"]
