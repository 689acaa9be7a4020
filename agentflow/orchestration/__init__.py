"""Task orchestration: planning, step execution, retries and replanning."""

from .cancellation import CancellationScope
from .context import TaskExecutionContext
from .errors import (
    OrchestrationError,
    ReplanningExhaustedError,
    StepExecutionError,
    TaskCancelledError,
    TaskNotFoundError,
    WorkerNotFoundError,
)
from .event_bus import AgentEventBus, Subscription
from .guardrails import ApprovalGate, AutoApprovalGate, PlanGuard
from .intent import IntentParser, PassthroughIntentParser
from .orchestrator import AgentOrchestrator
from .planner import PlanParseError, TaskPlanner, TemplateTaskPlanner, parse_plan_payload
from .registry import AgentRegistry

__all__ = [
    "AgentEventBus",
    "AgentOrchestrator",
    "AgentRegistry",
    "ApprovalGate",
    "AutoApprovalGate",
    "CancellationScope",
    "IntentParser",
    "OrchestrationError",
    "PassthroughIntentParser",
    "PlanGuard",
    "PlanParseError",
    "ReplanningExhaustedError",
    "StepExecutionError",
    "Subscription",
    "TaskCancelledError",
    "TaskExecutionContext",
    "TaskNotFoundError",
    "TaskPlanner",
    "TemplateTaskPlanner",
    "WorkerNotFoundError",
    "parse_plan_payload",
]
