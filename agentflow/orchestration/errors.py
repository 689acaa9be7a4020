from __future__ import annotations


class OrchestrationError(RuntimeError):
    """Base class for orchestration failures."""


class StepExecutionError(OrchestrationError):
    """A single step attempt failed; the step may be retried."""

    def __init__(self, message: str, *, step_id: str | None = None, agent: str | None = None) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.agent = agent


class WorkerNotFoundError(OrchestrationError, LookupError):
    """A step names a worker that is not registered. Never retried."""

    def __init__(self, agent_name: str) -> None:
        super().__init__(f"Worker not found: {agent_name}")
        self.agent_name = agent_name


class ReplanningExhaustedError(OrchestrationError):
    """A step exhausted its retries after the task used up its replans."""

    def __init__(self, *, replans: int, reason: str) -> None:
        super().__init__(f"Replanning exhausted after {replans} replan(s): {reason}")
        self.replans = replans
        self.reason = reason


class TaskCancelledError(OrchestrationError):
    """Cancellation was requested for the task."""


class TaskNotFoundError(OrchestrationError, LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


__all__ = [
    "OrchestrationError",
    "ReplanningExhaustedError",
    "StepExecutionError",
    "TaskCancelledError",
    "TaskNotFoundError",
    "WorkerNotFoundError",
]
