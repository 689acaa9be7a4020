from __future__ import annotations

from typing import Any, Iterable

from ..agents.base import BaseAgent
from ..core.logging import get_logger
from .errors import WorkerNotFoundError

logger = get_logger(name=__name__)


class AgentRegistry:
    """Name-keyed lookup of workers, populated at startup.

    Lookups are case-insensitive. An unknown name raises rather than falling back
    to some default worker.
    """

    def __init__(self) -> None:
        self._agents: dict[str, BaseAgent] = {}
        self._display_names: dict[str, str] = {}

    @classmethod
    def from_agents(cls, agents: Iterable[BaseAgent]) -> "AgentRegistry":
        registry = cls()
        for agent in agents:
            registry.register(agent)
        return registry

    @staticmethod
    def _key(name: str) -> str:
        return name.strip().lower()

    def register(self, agent: BaseAgent, *, name: str | None = None) -> None:
        display = name or agent.name
        key = self._key(display)
        if not key:
            raise ValueError("Worker name must not be empty")
        if key in self._agents:
            raise ValueError(f"Worker already registered: {display}")
        self._agents[key] = agent
        self._display_names[key] = display
        logger.debug("worker_registered", agent=display)

    def unregister(self, name: str) -> BaseAgent:
        key = self._key(name)
        try:
            agent = self._agents.pop(key)
        except KeyError:
            raise WorkerNotFoundError(name) from None
        self._display_names.pop(key, None)
        return agent

    def get(self, name: str) -> BaseAgent:
        agent = self._agents.get(self._key(name))
        if agent is None:
            raise WorkerNotFoundError(name)
        return agent

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self._key(name) in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def names(self) -> list[str]:
        return list(self._display_names.values())

    def describe(self) -> list[dict[str, Any]]:
        return [
            {
                "name": self._display_names[key],
                "description": getattr(agent, "description", ""),
                "capabilities": list(getattr(agent, "capabilities", ()) or ()),
            }
            for key, agent in self._agents.items()
        ]


__all__ = ["AgentRegistry"]
