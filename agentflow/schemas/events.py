"""
Lifecycle events broadcast on the event bus.

Each event kind is a pydantic model tagged by ``event_type``; the tag values are
stable strings so that push bridges and other sinks can route on them without
importing these classes. ``parse_event`` rebuilds a typed event from a wire
payload.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Mapping, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter

from .agents import AgentResult
from .plan import ExecutionPlan
from .status import ExecutionStatus


class EventType(str, Enum):
    PLAN_CREATED = "PlanCreated"
    PLAN_UPDATED = "PlanUpdated"
    AGENT_START = "AgentStart"
    AGENT_ACTION = "AgentAction"
    AGENT_RESULT = "AgentResult"
    AGENT_ERROR = "AgentError"
    TOOL_CALL = "ToolCall"
    REPLAN = "Replan"
    WORKFLOW_COMPLETED = "WorkflowCompleted"
    STATUS_CHANGED = "StatusChanged"
    HUMAN_APPROVAL_REQUIRED = "HumanApprovalRequired"
    LOG_MESSAGE = "LogMessage"


class AgentEvent(BaseModel):
    """Fields shared by every event kind."""

    event_id: str = Field(default_factory=lambda: uuid4().hex)
    task_id: str = Field(default="")
    agent_name: str = Field(default="")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_type: EventType

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class PlanCreatedEvent(AgentEvent):
    event_type: Literal[EventType.PLAN_CREATED] = EventType.PLAN_CREATED
    plan: ExecutionPlan


class PlanUpdatedEvent(AgentEvent):
    event_type: Literal[EventType.PLAN_UPDATED] = EventType.PLAN_UPDATED
    plan: ExecutionPlan
    reason: str = ""


class AgentStartEvent(AgentEvent):
    event_type: Literal[EventType.AGENT_START] = EventType.AGENT_START
    step_id: str | None = None
    action: str = ""
    parameters: dict[str, Any] = Field(default_factory=dict)


class AgentActionEvent(AgentEvent):
    event_type: Literal[EventType.AGENT_ACTION] = EventType.AGENT_ACTION
    action: str = ""
    description: str = ""


class AgentResultEvent(AgentEvent):
    event_type: Literal[EventType.AGENT_RESULT] = EventType.AGENT_RESULT
    step_id: str | None = None
    result: Any = None
    success: bool = True
    duration: timedelta = timedelta(0)


class AgentErrorEvent(AgentEvent):
    event_type: Literal[EventType.AGENT_ERROR] = EventType.AGENT_ERROR
    step_id: str | None = None
    error: str = ""
    will_retry: bool = False
    retry_attempt: int = 0


class ToolCallEvent(AgentEvent):
    event_type: Literal[EventType.TOOL_CALL] = EventType.TOOL_CALL
    tool_name: str = ""
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    success: bool = False


class ReplanEvent(AgentEvent):
    event_type: Literal[EventType.REPLAN] = EventType.REPLAN
    reason: str = ""
    old_plan: ExecutionPlan
    new_plan: ExecutionPlan


class WorkflowCompletedEvent(AgentEvent):
    event_type: Literal[EventType.WORKFLOW_COMPLETED] = EventType.WORKFLOW_COMPLETED
    success: bool = False
    total_duration: timedelta = timedelta(0)
    results: list[AgentResult] = Field(default_factory=list)
    summary: str | None = None


class StatusChangedEvent(AgentEvent):
    event_type: Literal[EventType.STATUS_CHANGED] = EventType.STATUS_CHANGED
    old_status: ExecutionStatus
    new_status: ExecutionStatus


class HumanApprovalRequiredEvent(AgentEvent):
    event_type: Literal[EventType.HUMAN_APPROVAL_REQUIRED] = EventType.HUMAN_APPROVAL_REQUIRED
    reason: str = ""
    action_description: str = ""
    context: dict[str, Any] = Field(default_factory=dict)


class LogMessageEvent(AgentEvent):
    event_type: Literal[EventType.LOG_MESSAGE] = EventType.LOG_MESSAGE
    message: str = ""
    level: Literal["Debug", "Info", "Warning", "Error"] = "Info"


AnyAgentEvent = Annotated[
    Union[
        PlanCreatedEvent,
        PlanUpdatedEvent,
        AgentStartEvent,
        AgentActionEvent,
        AgentResultEvent,
        AgentErrorEvent,
        ToolCallEvent,
        ReplanEvent,
        WorkflowCompletedEvent,
        StatusChangedEvent,
        HumanApprovalRequiredEvent,
        LogMessageEvent,
    ],
    Field(discriminator="event_type"),
]

_EVENT_ADAPTER: TypeAdapter[AnyAgentEvent] = TypeAdapter(AnyAgentEvent)


def parse_event(payload: Mapping[str, Any]) -> AgentEvent:
    return _EVENT_ADAPTER.validate_python(dict(payload))


__all__ = [
    "AgentActionEvent",
    "AgentErrorEvent",
    "AgentEvent",
    "AgentResultEvent",
    "AgentStartEvent",
    "AnyAgentEvent",
    "EventType",
    "HumanApprovalRequiredEvent",
    "LogMessageEvent",
    "PlanCreatedEvent",
    "PlanUpdatedEvent",
    "ReplanEvent",
    "StatusChangedEvent",
    "ToolCallEvent",
    "WorkflowCompletedEvent",
    "parse_event",
]
