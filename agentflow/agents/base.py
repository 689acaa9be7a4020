from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Protocol, Sequence, Union, runtime_checkable

from ..schemas.agents import AgentResult
from ..schemas.plan import TaskStep

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.cancellation import CancellationScope
    from ..orchestration.context import TaskExecutionContext


@runtime_checkable
class BaseAgent(Protocol):
    """Contract every worker satisfies.

    The orchestrator only ever calls ``execute``; ``description`` and
    ``capabilities`` are surfaced to planners through the registry.
    """

    name: str
    description: str
    capabilities: Sequence[str]

    async def execute(
        self,
        step: TaskStep,
        context: "TaskExecutionContext",
        cancellation: "CancellationScope",
    ) -> AgentResult:
        ...


AgentCallable = Callable[
    [TaskStep, "TaskExecutionContext", "CancellationScope"],
    Union[Awaitable[Any], Any],
]


@dataclass
class FunctionAgent:
    """Wrap a plain callable as a worker.

    The callable may be sync or async. Returning an ``AgentResult`` passes it
    through unchanged; any other value is wrapped as a successful result.
    """

    name: str
    func: AgentCallable
    description: str = ""
    capabilities: list[str] = field(default_factory=list)

    async def execute(
        self,
        step: TaskStep,
        context: "TaskExecutionContext",
        cancellation: "CancellationScope",
    ) -> AgentResult:
        outcome = self.func(step, context, cancellation)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if isinstance(outcome, AgentResult):
            return outcome
        return AgentResult.ok(self.name, outcome)


__all__ = ["AgentCallable", "BaseAgent", "FunctionAgent"]
