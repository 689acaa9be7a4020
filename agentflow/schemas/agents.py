from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AgentResult(BaseModel):
    """Outcome reported by a worker for one step attempt."""

    model_config = ConfigDict(populate_by_name=True)

    agent_name: str = Field(..., alias="agentName")
    result: Any = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    success: bool = True
    error: str | None = None

    @classmethod
    def ok(cls, agent_name: str, result: Any = None) -> "AgentResult":
        return cls(agent_name=agent_name, result=result, success=True)

    @classmethod
    def failure(cls, agent_name: str, error: str, result: Any = None) -> "AgentResult":
        return cls(agent_name=agent_name, result=result, success=False, error=error)


__all__ = ["AgentResult"]
