from __future__ import annotations

from typing import Iterable

from ..agents.base import BaseAgent
from ..core.config import Settings, get_settings
from ..core.logging import configure_logging, get_logger
from ..core.metrics import set_metrics_enabled
from ..orchestration.event_bus import AgentEventBus
from ..orchestration.guardrails import ApprovalGate
from ..orchestration.intent import IntentParser, PassthroughIntentParser
from ..orchestration.orchestrator import AgentOrchestrator
from ..orchestration.planner import TaskPlanner, TemplateTaskPlanner
from ..orchestration.registry import AgentRegistry
from .tasks import TaskManager

logger = get_logger(name=__name__)


def build_task_manager(
    agents: Iterable[BaseAgent],
    *,
    settings: Settings | None = None,
    planner: TaskPlanner | None = None,
    intent_parser: IntentParser | None = None,
    event_bus: AgentEventBus | None = None,
    approval_gate: ApprovalGate | None = None,
    configure_logs: bool = True,
) -> TaskManager:
    """Wire registry, collaborators and orchestrator into a ready task manager.

    Missing collaborators fall back to the template planner and the passthrough
    intent parser, so a registry of workers is all that is strictly required.
    """

    settings = settings or get_settings()
    if configure_logs:
        configure_logging(settings.observability.log_level, json_logs=settings.observability.json_logs)
    set_metrics_enabled(settings.observability.prometheus_enabled)

    registry = AgentRegistry.from_agents(agents)
    orchestrator = AgentOrchestrator(
        registry,
        planner or TemplateTaskPlanner(max_retries=settings.orchestrator.default_max_retries),
        intent_parser or PassthroughIntentParser(),
        event_bus or AgentEventBus(),
        settings,
        approval_gate=approval_gate,
    )
    logger.info(
        "orchestrator_bootstrapped",
        environment=settings.environment,
        workers=registry.names(),
        max_replans=settings.orchestrator.max_replans,
    )
    return TaskManager(orchestrator)


__all__ = ["build_task_manager"]
