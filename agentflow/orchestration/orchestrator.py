from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Literal

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.stop import stop_base

from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..core.metrics import (
    increment_step_event,
    mark_workflow_completed,
    mark_workflow_started,
    observe_step_latency,
    record_replan,
)
from ..schemas.agents import AgentResult
from ..schemas.events import (
    AgentErrorEvent,
    AgentEvent,
    AgentResultEvent,
    AgentStartEvent,
    HumanApprovalRequiredEvent,
    LogMessageEvent,
    PlanCreatedEvent,
    PlanUpdatedEvent,
    ReplanEvent,
    StatusChangedEvent,
    WorkflowCompletedEvent,
)
from ..schemas.plan import ExecutionMode, ExecutionPlan, StepStatus, TaskStep
from ..schemas.status import ExecutionStatus
from .cancellation import CancellationScope
from .context import TaskExecutionContext
from .errors import (
    ReplanningExhaustedError,
    StepExecutionError,
    TaskCancelledError,
    WorkerNotFoundError,
)
from .event_bus import AgentEventBus
from .guardrails import ApprovalGate, AutoApprovalGate, PlanGuard, flagged_summary
from .intent import IntentParser
from .planner import TaskPlanner
from .registry import AgentRegistry

logger = get_logger(name=__name__)

ORCHESTRATOR_NAME = "Orchestrator"

LogLevel = Literal["Debug", "Info", "Warning", "Error"]


class stop_when_cancelled(stop_base):
    """Stop retrying once the task's cancellation scope has fired."""

    def __init__(self, scope: CancellationScope) -> None:
        self._scope = scope

    def __call__(self, retry_state: Any) -> bool:
        return self._scope.cancelled


class AgentOrchestrator:
    """Drives one task from prompt to terminal status.

    Planning asks the intent parser and planner for a plan, the plan guard
    applies safety limits, and an approval gate runs when the plan is flagged.
    Execution then follows the plan's mode. Sequential plans replan when a step
    exhausts its retries and restart from the new plan's first step; Parallel
    and Hierarchical plans never replan.
    """

    def __init__(
        self,
        registry: AgentRegistry,
        planner: TaskPlanner,
        intent_parser: IntentParser,
        event_bus: AgentEventBus | None = None,
        settings: Settings | None = None,
        *,
        approval_gate: ApprovalGate | None = None,
        plan_guard: PlanGuard | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._registry = registry
        self._planner = planner
        self._intent_parser = intent_parser
        self._event_bus = event_bus or AgentEventBus()
        self._approval_gate: ApprovalGate = approval_gate or AutoApprovalGate(
            approve=self._settings.planning.auto_approve
        )
        self._plan_guard = plan_guard or PlanGuard(self._settings.planning)

    @property
    def event_bus(self) -> AgentEventBus:
        return self._event_bus

    @property
    def registry(self) -> AgentRegistry:
        return self._registry

    @property
    def settings(self) -> Settings:
        return self._settings

    async def run(self, context: TaskExecutionContext) -> TaskExecutionContext:
        scope = context.cancellation
        started = time.perf_counter()
        mark_workflow_started()
        logger.info("workflow_started", task_id=context.task_id)
        try:
            await self._plan(context, scope)
            if not scope.cancelled:
                await self._transition(context, ExecutionStatus.EXECUTING)
                await self._execute_plan(context, scope)
        except asyncio.CancelledError:
            context.add_error("Task runner was cancelled")
            scope.cancel("Task runner was cancelled")
            await self._finalize(context, started)
            raise
        except ReplanningExhaustedError as exc:
            context.add_error(str(exc))
            await self._log(context, f"Task failed: {exc}", level="Error")
            logger.warning("replanning_exhausted", task_id=context.task_id, replans=exc.replans)
        except Exception as exc:
            context.add_error(str(exc))
            await self._log(context, f"Workflow error: {exc}", level="Error")
            logger.exception("workflow_failed", task_id=context.task_id)
        await self._finalize(context, started)
        return context

    # Planning

    async def _plan(self, context: TaskExecutionContext, scope: CancellationScope) -> None:
        await self._transition(context, ExecutionStatus.PLANNING)
        await self._log(context, f"Task {context.task_id} started")

        context.intent = await self._intent_parser.parse_intent(context.prompt)
        await self._log(
            context,
            f"Objective identified: {context.intent.objective} (confidence {context.intent.confidence:.0%})",
        )

        plan = await self._planner.create_plan(context.intent, context)
        self._plan_guard.review(plan, context.intent)
        context.plan = plan
        await self._publish(
            PlanCreatedEvent(task_id=context.task_id, agent_name=ORCHESTRATOR_NAME, plan=plan.model_copy(deep=True))
        )
        await self._log(context, f"Plan created with {len(plan.steps)} step(s) in {plan.mode.value} mode")
        for step in plan.ordered_steps():
            await self._log(context, f"  {step.order}. [{step.agent_name}] {step.action}", level="Debug")

        if plan.requires_human_approval:
            await self._request_approval(context, plan, scope)

    async def _request_approval(
        self,
        context: TaskExecutionContext,
        plan: ExecutionPlan,
        scope: CancellationScope,
    ) -> bool:
        await self._transition(context, ExecutionStatus.WAITING_HUMAN_APPROVAL)
        reason = plan.human_approval_reason or "Sensitive action detected"
        actions = self._plan_guard.sensitive_actions(plan) or [step.action for step in plan.ordered_steps()]
        await self._log(context, f"Waiting for human approval: {reason}", level="Warning")
        await self._publish(
            HumanApprovalRequiredEvent(
                task_id=context.task_id,
                agent_name=ORCHESTRATOR_NAME,
                reason=reason,
                action_description=flagged_summary(actions),
                context={"plan_id": plan.plan_id, "version": plan.version},
            )
        )
        approved = await self._approval_gate.request_approval(plan, context)
        if not approved:
            scope.cancel("Plan approval denied")
            await self._log(context, "Plan approval denied", level="Warning")
            return False
        await self._log(context, "Plan approved")
        return True

    # Execution strategies

    async def _execute_plan(self, context: TaskExecutionContext, scope: CancellationScope) -> None:
        plan = self._require_plan(context)
        await self._log(context, f"Executing plan in {plan.mode.value} mode")
        if plan.mode is ExecutionMode.PARALLEL:
            await self._run_parallel(context, scope)
        elif plan.mode is ExecutionMode.HIERARCHICAL:
            await self._run_hierarchical(context, scope)
        else:
            await self._run_sequential(context, scope)

    async def _run_sequential(self, context: TaskExecutionContext, scope: CancellationScope) -> None:
        while True:
            plan = self._require_plan(context)
            restart = False
            for step in plan.ordered_steps():
                if scope.cancelled:
                    await self._log(context, "Execution cancelled", level="Warning")
                    return
                if step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                    continue
                completed = await self._execute_step(step, context, scope)
                if completed or scope.cancelled:
                    continue
                await self._replan(context, step, scope)
                restart = True
                break
            if not restart:
                return

    async def _run_parallel(self, context: TaskExecutionContext, scope: CancellationScope) -> None:
        plan = self._require_plan(context)
        ordered = plan.ordered_steps()
        # Dependency lists are only checked for emptiness, never resolved to step ids.
        independent = [step for step in ordered if not step.depends_on]
        dependent = [step for step in ordered if step.depends_on]

        if scope.cancelled:
            await self._log(context, "Execution cancelled", level="Warning")
            return

        limit = self._settings.orchestrator.parallel_max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None

        async def gated(step: TaskStep) -> bool:
            if semaphore is None:
                return await self._execute_step(step, context, scope)
            async with semaphore:
                return await self._execute_step(step, context, scope)

        outcomes = await asyncio.gather(*(gated(step) for step in independent), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        for step in dependent:
            if scope.cancelled:
                await self._log(context, "Execution cancelled", level="Warning")
                return
            await self._execute_step(step, context, scope)

    async def _run_hierarchical(self, context: TaskExecutionContext, scope: CancellationScope) -> None:
        plan = self._require_plan(context)
        config = self._settings.orchestrator
        coordinator_name = config.coordinator_agent.lower()
        ordered = plan.ordered_steps()
        coordinator = next((step for step in ordered if step.agent_name.lower() == coordinator_name), None)

        queue = ([coordinator] if coordinator is not None else []) + [
            step for step in ordered if step.agent_name.lower() != coordinator_name
        ]
        for step in ordered:
            if step is not coordinator and step.agent_name.lower() == coordinator_name:
                step.status = StepStatus.SKIPPED
                await self._log(
                    context,
                    f"Skipping extra coordinator step {step.order}: {step.action}",
                    level="Warning",
                )
        for step in queue:
            if scope.cancelled:
                await self._log(context, "Execution cancelled", level="Warning")
                return
            await self._execute_step(step, context, scope)

        if coordinator is None or scope.cancelled:
            return

        validation = TaskStep(
            agent_name=coordinator.agent_name,
            action=config.validation_action,
            order=max(step.order for step in ordered) + 1,
            max_retries=coordinator.max_retries,
        )
        if not await self._execute_step(validation, context, scope) and not scope.cancelled:
            context.add_error(f"Validation failed: {validation.error or 'unknown error'}")

    # Replanning

    async def _replan(self, context: TaskExecutionContext, failed: TaskStep, scope: CancellationScope) -> None:
        reason = failed.error or "Step failed"
        max_replans = self._settings.orchestrator.max_replans
        if context.replan_count >= max_replans:
            record_replan(status="exhausted")
            raise ReplanningExhaustedError(replans=context.replan_count, reason=reason)

        old_plan = self._require_plan(context)
        await self._transition(context, ExecutionStatus.REPLANNING)
        await self._log(context, f"Replanning: {reason}", level="Warning")
        logger.info(
            "replan_requested",
            task_id=context.task_id,
            step_id=failed.step_id,
            agent=failed.agent_name,
            attempt=context.replan_count + 1,
        )

        new_plan = await self._planner.replan(old_plan, reason, context)
        if new_plan.version <= old_plan.version:
            new_plan.version = old_plan.version + 1
        self._plan_guard.review(new_plan, context.intent)

        context.plan = new_plan
        context.replan_count += 1
        record_replan(status="accepted")

        await self._publish(
            ReplanEvent(
                task_id=context.task_id,
                agent_name=ORCHESTRATOR_NAME,
                reason=reason,
                old_plan=old_plan.model_copy(deep=True),
                new_plan=new_plan.model_copy(deep=True),
            )
        )
        await self._publish(
            PlanUpdatedEvent(
                task_id=context.task_id,
                agent_name=ORCHESTRATOR_NAME,
                plan=new_plan.model_copy(deep=True),
                reason=reason,
            )
        )
        await self._log(context, f"New plan v{new_plan.version} created with {len(new_plan.steps)} step(s)")

        if new_plan.requires_human_approval and not await self._request_approval(context, new_plan, scope):
            return
        await self._transition(context, ExecutionStatus.EXECUTING)

    # Per-step execution

    async def _execute_step(self, step: TaskStep, context: TaskExecutionContext, scope: CancellationScope) -> bool:
        """Run one step to completion or exhaustion; True when it completed."""
        config = self._settings.orchestrator
        attempts = max(1, step.max_retries - step.retry_count)
        # Filled by the sync before_sleep hook, published before the next attempt.
        pending: list[str] = []

        def before_sleep(retry_state: Any) -> None:
            step.status = StepStatus.RETRYING
            increment_step_event(agent=step.agent_name, event="retrying")
            pending.append(f"Retrying [{step.agent_name}] ({step.retry_count}/{step.max_retries})")

        async def flush() -> None:
            while pending:
                await self._log(context, pending.pop(0), level="Warning")

        if step.is_conditional and step.condition:
            await self._log(context, f"Evaluating condition: {step.condition}", level="Debug")

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts) | stop_when_cancelled(scope),
            wait=wait_exponential(
                multiplier=2 * config.backoff_base_seconds,
                exp_base=2,
                max=config.max_backoff_seconds,
            ),
            retry=retry_if_exception_type(StepExecutionError),
            sleep=scope.sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                await flush()
                with attempt:
                    await self._attempt_step(step, context, scope)
        except StepExecutionError:
            logger.warning(
                "step_exhausted",
                task_id=context.task_id,
                step_id=step.step_id,
                agent=step.agent_name,
                retries=step.retry_count,
            )
            return False
        except WorkerNotFoundError:
            return False
        except TaskCancelledError:
            await flush()
            step.status = StepStatus.FAILED
            await self._log(context, f"[{step.agent_name}] retry abandoned: task cancelled", level="Warning")
            return False
        return True

    async def _attempt_step(self, step: TaskStep, context: TaskExecutionContext, scope: CancellationScope) -> None:
        step.status = StepStatus.RUNNING
        step.started_at = datetime.now(timezone.utc)
        step.completed_at = None
        increment_step_event(agent=step.agent_name, event="started")
        await self._log(context, f"Running [{step.agent_name}] {step.action}")
        await self._publish(
            AgentStartEvent(
                task_id=context.task_id,
                agent_name=step.agent_name,
                step_id=step.step_id,
                action=step.action,
                parameters=dict(step.parameters),
            )
        )

        try:
            worker = self._registry.get(step.agent_name)
        except WorkerNotFoundError as exc:
            await self._record_failure(step, context, str(exc), will_retry=False)
            raise

        clock = time.perf_counter()
        try:
            outcome = await worker.execute(step, context, scope)
            if not isinstance(outcome, AgentResult):
                raise TypeError(f"{step.agent_name} returned {type(outcome).__name__} instead of AgentResult")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            observe_step_latency(agent=step.agent_name, latency=time.perf_counter() - clock)
            logger.exception("step_raised", task_id=context.task_id, step_id=step.step_id, agent=step.agent_name)
            error = str(exc) or type(exc).__name__
            await self._record_failure(step, context, error, will_retry=self._will_retry(step, scope))
            raise StepExecutionError(error, step_id=step.step_id, agent=step.agent_name) from exc
        latency = time.perf_counter() - clock
        observe_step_latency(agent=step.agent_name, latency=latency)

        if not outcome.success:
            error = outcome.error or "Worker reported failure"
            await self._record_failure(step, context, error, will_retry=self._will_retry(step, scope))
            raise StepExecutionError(error, step_id=step.step_id, agent=step.agent_name)

        step.status = StepStatus.COMPLETED
        step.completed_at = datetime.now(timezone.utc)
        step.result = None if outcome.result is None else str(outcome.result)
        step.error = None
        if outcome.agent_name != step.agent_name:
            outcome = outcome.model_copy(update={"agent_name": step.agent_name})
        context.add_result(outcome)
        increment_step_event(agent=step.agent_name, event="completed")
        await self._log(context, f"[{step.agent_name}] completed")
        await self._publish(
            AgentResultEvent(
                task_id=context.task_id,
                agent_name=step.agent_name,
                step_id=step.step_id,
                result=outcome.result,
                success=True,
                duration=step.completed_at - step.started_at,
            )
        )

    @staticmethod
    def _will_retry(step: TaskStep, scope: CancellationScope) -> bool:
        # retry_count has not been incremented for the current failure yet.
        return step.retry_count + 1 < step.max_retries and not scope.cancelled

    async def _record_failure(
        self,
        step: TaskStep,
        context: TaskExecutionContext,
        error: str,
        *,
        will_retry: bool,
    ) -> None:
        step.status = StepStatus.FAILED
        step.error = error
        step.retry_count += 1
        step.completed_at = datetime.now(timezone.utc)
        increment_step_event(agent=step.agent_name, event="failed")
        await self._log(context, f"[{step.agent_name}] error: {error}", level="Error")
        await self._publish(
            AgentErrorEvent(
                task_id=context.task_id,
                agent_name=step.agent_name,
                step_id=step.step_id,
                error=error,
                will_retry=will_retry,
                retry_attempt=step.retry_count,
            )
        )

    # Finalization

    async def _finalize(self, context: TaskExecutionContext, started: float) -> None:
        plan = context.plan
        if context.cancellation.cancelled:
            terminal = ExecutionStatus.CANCELLED
        elif context.errors or plan is None or plan.has_failed:
            terminal = ExecutionStatus.FAILED
        else:
            terminal = ExecutionStatus.COMPLETED

        context.completed_at = datetime.now(timezone.utc)
        await self._transition(context, terminal)
        success = terminal is ExecutionStatus.COMPLETED
        if success:
            summary = f"Plan executed successfully in {len(plan.steps)} step(s)"
        elif terminal is ExecutionStatus.CANCELLED:
            summary = f"Cancelled: {context.cancellation.reason}"
        else:
            summary = f"Failed: {context.errors[-1] if context.errors else 'one or more steps failed'}"

        await self._publish(
            WorkflowCompletedEvent(
                task_id=context.task_id,
                agent_name=ORCHESTRATOR_NAME,
                success=success,
                total_duration=context.duration,
                results=context.results,
                summary=summary,
            )
        )
        await self._log(
            context,
            f"Workflow finished with status {terminal.value} in {context.duration.total_seconds():.1f}s",
        )
        context.is_completed = True

        mode = plan.mode.value if plan is not None else "none"
        mark_workflow_completed(mode=mode, status=terminal.value, latency=time.perf_counter() - started)
        logger.info(
            "workflow_finished",
            task_id=context.task_id,
            status=terminal.value,
            replans=context.replan_count,
            progress=context.progress,
        )

    # Helpers

    @staticmethod
    def _require_plan(context: TaskExecutionContext) -> ExecutionPlan:
        if context.plan is None:
            raise RuntimeError("Task has no execution plan")
        return context.plan

    async def _transition(self, context: TaskExecutionContext, new_status: ExecutionStatus) -> None:
        old_status = context.status
        if old_status is new_status:
            return
        context.status = new_status
        logger.debug("task_status_changed", task_id=context.task_id, old=old_status.value, new=new_status.value)
        await self._publish(
            StatusChangedEvent(
                task_id=context.task_id,
                agent_name=ORCHESTRATOR_NAME,
                old_status=old_status,
                new_status=new_status,
            )
        )

    async def _log(self, context: TaskExecutionContext, message: str, *, level: LogLevel = "Info") -> None:
        context.log(message)
        await self._publish(
            LogMessageEvent(task_id=context.task_id, agent_name=ORCHESTRATOR_NAME, message=message, level=level)
        )

    async def _publish(self, event: AgentEvent) -> None:
        await self._event_bus.publish(event)


__all__ = ["AgentOrchestrator", "ORCHESTRATOR_NAME", "stop_when_cancelled"]
