from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator
from uuid import uuid4

from ..schemas.agents import AgentResult
from ..schemas.intent import IntentResult
from ..schemas.plan import ExecutionPlan
from ..schemas.status import ExecutionStatus
from .cancellation import CancellationScope

_MISSING = object()


def _result_key(agent_name: str) -> str:
    return f"{agent_name}_last_result"


@dataclass
class TaskExecutionContext:
    """Shared blackboard for one task.

    The orchestrator and workers write to it concurrently while a Parallel plan
    fans out, so the log, shared state, results and errors sit behind a lock and
    every accessor hands out a snapshot.
    """

    prompt: str
    task_id: str = field(default_factory=lambda: uuid4().hex)
    metadata: dict[str, Any] = field(default_factory=dict)
    plan: ExecutionPlan | None = None
    intent: IntentResult | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    replan_count: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    is_completed: bool = False
    cancellation: CancellationScope = field(default_factory=CancellationScope)

    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _logs: list[str] = field(default_factory=list, init=False, repr=False)
    _shared_state: dict[str, Any] = field(default_factory=dict, init=False, repr=False)
    _results: list[AgentResult] = field(default_factory=list, init=False, repr=False)
    _errors: list[str] = field(default_factory=list, init=False, repr=False)

    # Log stream

    def log(self, message: str) -> None:
        with self._lock:
            self._logs.append(message)

    @property
    def logs(self) -> list[str]:
        with self._lock:
            return list(self._logs)

    def read_logs(self, offset: int = 0) -> list[str]:
        """Return log lines from ``offset`` onwards for incremental consumers."""
        with self._lock:
            return list(self._logs[max(0, offset):])

    # Shared state

    def set_shared(self, key: str, value: Any) -> None:
        with self._lock:
            self._shared_state[key] = value

    def get_shared(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._shared_state.get(key, default)

    def pop_shared(self, key: str, default: Any = _MISSING) -> Any:
        with self._lock:
            if default is _MISSING:
                return self._shared_state.pop(key)
            return self._shared_state.pop(key, default)

    @property
    def shared_state(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._shared_state)

    def last_result_for(self, agent_name: str) -> Any:
        return self.get_shared(_result_key(agent_name))

    # Results and errors

    def add_result(self, result: AgentResult) -> None:
        with self._lock:
            self._results.append(result)
            self._shared_state[_result_key(result.agent_name)] = result.result

    @property
    def results(self) -> list[AgentResult]:
        with self._lock:
            return list(self._results)

    def iter_results(self, agent_name: str) -> Iterator[AgentResult]:
        return (result for result in self.results if result.agent_name == agent_name)

    def add_error(self, message: str) -> None:
        with self._lock:
            self._errors.append(message)

    @property
    def errors(self) -> list[str]:
        with self._lock:
            return list(self._errors)

    # Derived views

    @property
    def progress(self) -> float:
        return self.plan.progress if self.plan is not None else 0.0

    @property
    def duration(self) -> timedelta:
        end = self.completed_at or datetime.now(timezone.utc)
        return end - self.started_at


__all__ = ["TaskExecutionContext"]
