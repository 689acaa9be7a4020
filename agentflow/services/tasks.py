from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, Mapping

from ..core.logging import get_logger
from ..orchestration.context import TaskExecutionContext
from ..orchestration.errors import TaskNotFoundError
from ..orchestration.orchestrator import AgentOrchestrator
from ..schemas.tasks import PlanView, TaskStatusView

logger = get_logger(name=__name__)


@dataclass(slots=True)
class _TrackedTask:
    context: TaskExecutionContext
    runner: asyncio.Task[TaskExecutionContext]


class TaskManager:
    """Submit, inspect and cancel orchestrated tasks on the running event loop."""

    def __init__(self, orchestrator: AgentOrchestrator) -> None:
        self._orchestrator = orchestrator
        self._tasks: dict[str, _TrackedTask] = {}

    async def submit(self, prompt: str, metadata: Mapping[str, Any] | None = None) -> str:
        if not prompt or not prompt.strip():
            raise ValueError("Prompt must not be empty")
        context = TaskExecutionContext(prompt=prompt, metadata=dict(metadata or {}))
        runner = asyncio.create_task(self._orchestrator.run(context), name=f"agentflow-task-{context.task_id}")
        runner.add_done_callback(self._on_done)
        self._tasks[context.task_id] = _TrackedTask(context=context, runner=runner)
        logger.info("task_submitted", task_id=context.task_id, tracked=len(self._tasks))
        return context.task_id

    def _on_done(self, runner: asyncio.Task[TaskExecutionContext]) -> None:
        if runner.cancelled():
            logger.warning("task_runner_cancelled", runner=runner.get_name())
            return
        exc = runner.exception()
        if exc is not None:
            logger.error("task_runner_crashed", runner=runner.get_name(), error=str(exc))

    def _lookup(self, task_id: str) -> _TrackedTask:
        tracked = self._tasks.get(task_id)
        if tracked is None:
            raise TaskNotFoundError(task_id)
        return tracked

    def get(self, task_id: str) -> TaskExecutionContext:
        return self._lookup(task_id).context

    def status(self, task_id: str) -> TaskStatusView:
        return TaskStatusView.from_context(self.get(task_id))

    def plan(self, task_id: str) -> PlanView | None:
        plan = self.get(task_id).plan
        return PlanView.from_plan(plan) if plan is not None else None

    def cancel(self, task_id: str, reason: str = "Cancelled by user") -> bool:
        """Request cooperative cancellation; False when the task already finished."""
        context = self.get(task_id)
        if context.is_completed or context.cancellation.cancelled:
            return False
        context.cancellation.cancel(reason)
        logger.info("task_cancel_requested", task_id=task_id, reason=reason)
        return True

    async def wait(self, task_id: str, timeout: float | None = None) -> TaskExecutionContext:
        tracked = self._lookup(task_id)
        return await asyncio.wait_for(asyncio.shield(tracked.runner), timeout=timeout)

    def evict(self, task_id: str) -> bool:
        """Forget a finished task; running tasks are kept and False is returned."""
        tracked = self._lookup(task_id)
        if not tracked.runner.done():
            return False
        del self._tasks[task_id]
        return True

    def list_tasks(self) -> list[TaskStatusView]:
        return [TaskStatusView.from_context(tracked.context) for tracked in self._tasks.values()]

    async def shutdown(self, timeout: float | None = 5.0) -> None:
        pending = [tracked for tracked in self._tasks.values() if not tracked.runner.done()]
        for tracked in pending:
            tracked.context.cancellation.cancel("Task manager shutting down")
        if not pending:
            return
        runners = [tracked.runner for tracked in pending]
        _, still_running = await asyncio.wait(runners, timeout=timeout)
        for runner in still_running:
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        logger.info("task_manager_stopped", drained=len(runners) - len(still_running), aborted=len(still_running))


__all__ = ["TaskManager"]
