from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from agentflow.orchestration.cancellation import CancellationScope
from agentflow.orchestration.context import TaskExecutionContext
from agentflow.orchestration.event_bus import AgentEventBus
from agentflow.orchestration.guardrails import AutoApprovalGate
from agentflow.orchestration.orchestrator import AgentOrchestrator
from agentflow.orchestration.registry import AgentRegistry
from agentflow.schemas.agents import AgentResult
from agentflow.schemas.events import EventType
from agentflow.schemas.plan import ExecutionMode, StepStatus
from agentflow.schemas.status import ExecutionStatus

from tests.helpers.stubs import (
    EventRecorder,
    ScriptedAgent,
    StubIntentParser,
    StubPlanner,
    Timeline,
    fast_settings,
    make_plan,
)


def _orchestrator(agents, planner, *, settings=None, bus=None, intent_parser=None, approval_gate=None):
    return AgentOrchestrator(
        AgentRegistry.from_agents(agents),
        planner,
        intent_parser or StubIntentParser(),
        bus or AgentEventBus(),
        settings or fast_settings(),
        approval_gate=approval_gate,
    )


@pytest.mark.asyncio
async def test_three_step_plan_completes_with_ordered_events():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    timeline = Timeline()
    agents = [ScriptedAgent(name, [f"{name} output"], timeline=timeline) for name in ("Alpha", "Beta", "Gamma")]
    orchestrator = _orchestrator(agents, StubPlanner(make_plan("Alpha", "Beta", "Gamma")), bus=bus)
    context = TaskExecutionContext(prompt="three easy steps")

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.COMPLETED
    assert context.progress == pytest.approx(1.0)
    assert context.is_completed is True
    assert context.completed_at is not None
    interesting = {EventType.AGENT_START, EventType.AGENT_RESULT, EventType.WORKFLOW_COMPLETED}
    assert [kind for kind in recorder.types() if kind in interesting] == [
        EventType.AGENT_START,
        EventType.AGENT_RESULT,
        EventType.AGENT_START,
        EventType.AGENT_RESULT,
        EventType.AGENT_START,
        EventType.AGENT_RESULT,
        EventType.WORKFLOW_COMPLETED,
    ]
    completed = recorder.of(EventType.WORKFLOW_COMPLETED)[0]
    assert completed.success is True
    assert [result.agent_name for result in completed.results] == ["Alpha", "Beta", "Gamma"]
    assert timeline.entries == [
        ("start", "Alpha"),
        ("end", "Alpha"),
        ("start", "Beta"),
        ("end", "Beta"),
        ("start", "Gamma"),
        ("end", "Gamma"),
    ]
    assert context.get_shared("Beta_last_result") == "Beta output"
    assert context.plan.steps[2].result == "Gamma output"


@pytest.mark.asyncio
async def test_status_transitions_are_published():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    orchestrator = _orchestrator([ScriptedAgent("Alpha")], StubPlanner(make_plan("Alpha")), bus=bus)

    await orchestrator.run(TaskExecutionContext(prompt="one step"))

    transitions = [(event.old_status, event.new_status) for event in recorder.of(EventType.STATUS_CHANGED)]
    assert transitions == [
        (ExecutionStatus.PENDING, ExecutionStatus.PLANNING),
        (ExecutionStatus.PLANNING, ExecutionStatus.EXECUTING),
        (ExecutionStatus.EXECUTING, ExecutionStatus.COMPLETED),
    ]
    assert recorder.of(EventType.PLAN_CREATED)
    assert recorder.of(EventType.LOG_MESSAGE)


@pytest.mark.asyncio
async def test_step_recovers_after_two_failures():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    flaky = ScriptedAgent("Beta", [RuntimeError("first"), RuntimeError("second"), "finally"])
    agents = [ScriptedAgent("Alpha"), flaky, ScriptedAgent("Gamma")]
    orchestrator = _orchestrator(agents, StubPlanner(make_plan("Alpha", "Beta", "Gamma", max_retries=3)), bus=bus)
    context = TaskExecutionContext(prompt="flaky middle step")

    await orchestrator.run(context)

    step = context.plan.steps[1]
    assert context.status is ExecutionStatus.COMPLETED
    assert step.status is StepStatus.COMPLETED
    assert step.retry_count == 2
    assert step.result == "finally"
    assert len(flaky.calls) == 3

    beta_events = [
        event
        for event in recorder.events
        if event.agent_name == "Beta" and event.event_type in {EventType.AGENT_ERROR, EventType.AGENT_RESULT}
    ]
    assert [event.event_type for event in beta_events] == [
        EventType.AGENT_ERROR,
        EventType.AGENT_ERROR,
        EventType.AGENT_RESULT,
    ]
    assert [event.will_retry for event in beta_events[:2]] == [True, True]
    assert [event.retry_attempt for event in beta_events[:2]] == [1, 2]
    assert context.replan_count == 0
    retry_lines = [
        event.message for event in recorder.of(EventType.LOG_MESSAGE) if event.message.startswith("Retrying [Beta]")
    ]
    assert retry_lines == ["Retrying [Beta] (1/3)", "Retrying [Beta] (2/3)"]
    assert retry_lines[0] in context.logs


@pytest.mark.asyncio
async def test_reported_failure_is_retried_like_exception():
    flaky = ScriptedAgent("Alpha", [AgentResult.failure("Alpha", "soft failure"), "ok"])
    orchestrator = _orchestrator([flaky], StubPlanner(make_plan("Alpha")))
    context = TaskExecutionContext(prompt="soft failure")

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.COMPLETED
    assert context.plan.steps[0].retry_count == 1
    assert len(flaky.calls) == 2


class MalformedAgent:
    """Returns a bare dict on its first call, then a proper result."""

    name = "Alpha"
    description = "returns the wrong type once"
    capabilities: list[str] = []

    def __init__(self) -> None:
        self.calls = 0

    async def execute(self, step, context, cancellation):
        self.calls += 1
        if self.calls == 1:
            return {"success": True}
        return AgentResult.ok(self.name, "recovered")


@pytest.mark.asyncio
async def test_malformed_worker_result_is_a_retryable_step_failure():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    agent = MalformedAgent()
    orchestrator = _orchestrator([agent], StubPlanner(make_plan("Alpha")), bus=bus)
    context = TaskExecutionContext(prompt="wrong return type")

    await orchestrator.run(context)

    step = context.plan.steps[0]
    assert context.status is ExecutionStatus.COMPLETED
    assert context.errors == []
    assert agent.calls == 2
    assert step.status is StepStatus.COMPLETED
    assert step.retry_count == 1
    errors = recorder.of(EventType.AGENT_ERROR)
    assert len(errors) == 1
    assert "dict" in errors[0].error
    assert errors[0].will_retry is True


class RecordingScope(CancellationScope):
    """Records requested backoff delays instead of sleeping."""

    def __init__(self) -> None:
        super().__init__()
        self.delays: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.delays.append(delay)
        self.raise_if_cancelled()


@pytest.mark.asyncio
async def test_retry_backoff_doubles_per_attempt():
    scope = RecordingScope()
    agent = ScriptedAgent("Alpha", [RuntimeError("always down")])
    orchestrator = _orchestrator(
        [agent],
        StubPlanner(make_plan("Alpha", max_retries=3)),
        settings=fast_settings(backoff_base_seconds=1.0, max_replans=0),
    )
    context = TaskExecutionContext(prompt="backoff", cancellation=scope)

    await orchestrator.run(context)

    assert len(agent.calls) == 3
    assert scope.delays == [2.0, 4.0]
    assert context.status is ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_retry_backoff_is_capped():
    scope = RecordingScope()
    agent = ScriptedAgent("Alpha", [RuntimeError("always down")])
    orchestrator = _orchestrator(
        [agent],
        StubPlanner(make_plan("Alpha", max_retries=4)),
        settings=fast_settings(backoff_base_seconds=1.0, max_backoff_seconds=3.0, max_replans=0),
    )
    context = TaskExecutionContext(prompt="capped backoff", cancellation=scope)

    await orchestrator.run(context)

    assert len(agent.calls) == 4
    assert scope.delays == [2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_exhausted_step_triggers_single_replan_and_restarts_new_plan():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    alpha = ScriptedAgent("Alpha")
    broken = ScriptedAgent("Broken", [RuntimeError("always down")])
    recovery = ScriptedAgent("Recovery")
    planner = StubPlanner(make_plan("Alpha", "Broken"), replans=[make_plan("Alpha", "Recovery")])
    orchestrator = _orchestrator(
        [alpha, broken, recovery],
        planner,
        bus=bus,
        settings=fast_settings(max_replans=2),
    )
    context = TaskExecutionContext(prompt="needs a replan")

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.COMPLETED
    assert context.replan_count == 1
    assert context.plan.version == 2
    assert planner.replan_calls == [(1, "always down")]
    assert len(broken.calls) == 3
    # Execution restarted from the first step of the new plan.
    assert len(alpha.calls) == 2
    assert len(recovery.calls) == 1

    replans = recorder.of(EventType.REPLAN)
    assert len(replans) == 1
    assert replans[0].old_plan.version == 1
    assert replans[0].new_plan.version == 2
    assert len(recorder.of(EventType.PLAN_UPDATED)) == 1
    errors = [event for event in recorder.of(EventType.AGENT_ERROR) if event.agent_name == "Broken"]
    assert [event.will_retry for event in errors] == [True, True, False]

    statuses = [event.new_status for event in recorder.of(EventType.STATUS_CHANGED)]
    assert ExecutionStatus.REPLANNING in statuses
    assert statuses[-1] is ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_replanning_exhausted_fails_task():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    planner = StubPlanner(
        lambda: make_plan("Broken", max_retries=2),
        replans=[lambda: make_plan("Broken", max_retries=2)],
    )
    orchestrator = _orchestrator(
        [ScriptedAgent("Broken", [RuntimeError("still down")])],
        planner,
        bus=bus,
        settings=fast_settings(max_replans=1),
    )
    labels = {"status": "exhausted"}
    before = REGISTRY.get_sample_value("agentflow_replans_total", labels) or 0.0
    context = TaskExecutionContext(prompt="never works")

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.FAILED
    assert context.replan_count == 1
    assert len(planner.replan_calls) == 1
    assert any("Replanning exhausted" in error for error in context.errors)
    completed = recorder.of(EventType.WORKFLOW_COMPLETED)[0]
    assert completed.success is False
    assert REGISTRY.get_sample_value("agentflow_replans_total", labels) == pytest.approx(before + 1.0)


@pytest.mark.asyncio
async def test_missing_worker_is_never_retried():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    orchestrator = _orchestrator(
        [ScriptedAgent("Alpha")],
        StubPlanner(make_plan("Alpha", "Ghost")),
        bus=bus,
        settings=fast_settings(max_replans=0),
    )
    context = TaskExecutionContext(prompt="typo in worker name")

    await orchestrator.run(context)

    ghost = context.plan.steps[1]
    assert context.status is ExecutionStatus.FAILED
    assert ghost.status is StepStatus.FAILED
    assert ghost.retry_count == 1
    assert ghost.error == "Worker not found: Ghost"
    errors = [event for event in recorder.of(EventType.AGENT_ERROR) if event.agent_name == "Ghost"]
    assert len(errors) == 1
    assert errors[0].will_retry is False
    starts = [event for event in recorder.of(EventType.AGENT_START) if event.agent_name == "Ghost"]
    assert len(starts) == 1


@pytest.mark.asyncio
async def test_cancellation_after_first_step_stops_remaining_steps():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    agents = [ScriptedAgent(name) for name in ("Alpha", "Beta", "Gamma", "Delta")]
    orchestrator = _orchestrator(agents, StubPlanner(make_plan("Alpha", "Beta", "Gamma", "Delta")), bus=bus)
    context = TaskExecutionContext(prompt="cancel me")

    def cancel_after_alpha(event):
        if event.agent_name == "Alpha":
            context.cancellation.cancel("user pressed stop")

    bus.subscribe(EventType.AGENT_RESULT, cancel_after_alpha)

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.CANCELLED
    assert [len(agent.calls) for agent in agents] == [1, 0, 0, 0]
    assert [step.status for step in context.plan.ordered_steps()[1:]] == [StepStatus.PENDING] * 3
    starts = [event.agent_name for event in recorder.of(EventType.AGENT_START)]
    assert starts == ["Alpha"]
    completed = recorder.of(EventType.WORKFLOW_COMPLETED)[0]
    assert completed.success is False
    assert "user pressed stop" in completed.summary


@pytest.mark.asyncio
async def test_cancellation_interrupts_retry_backoff():
    bus = AgentEventBus()
    flaky = ScriptedAgent("Alpha", [RuntimeError("slow failure")])
    orchestrator = _orchestrator(
        [flaky],
        StubPlanner(make_plan("Alpha", max_retries=5)),
        bus=bus,
        settings=fast_settings(backoff_base_seconds=30.0, max_backoff_seconds=60.0),
    )
    context = TaskExecutionContext(prompt="cancel during backoff")

    async def cancel_when_waiting():
        while context.status is not ExecutionStatus.EXECUTING or not flaky.calls:
            await asyncio.sleep(0.005)
        await asyncio.sleep(0.02)
        context.cancellation.cancel()

    canceller = asyncio.create_task(cancel_when_waiting())
    await asyncio.wait_for(orchestrator.run(context), timeout=5)
    await canceller

    assert context.status is ExecutionStatus.CANCELLED
    assert len(flaky.calls) == 1
    assert context.replan_count == 0


@pytest.mark.asyncio
async def test_conditional_mode_runs_like_sequential_and_logs_condition():
    plan = make_plan("Alpha", "Beta", mode=ExecutionMode.CONDITIONAL)
    plan.steps[1].is_conditional = True
    plan.steps[1].condition = "alpha produced output"
    timeline = Timeline()
    agents = [ScriptedAgent("Alpha", timeline=timeline), ScriptedAgent("Beta", timeline=timeline)]
    orchestrator = _orchestrator(agents, StubPlanner(plan))
    context = TaskExecutionContext(prompt="conditional")

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.COMPLETED
    assert timeline.started() == ["Alpha", "Beta"]
    assert any("alpha produced output" in line for line in context.logs)


@pytest.mark.asyncio
async def test_planner_fault_fails_task_and_reports_workflow_completed():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    orchestrator = _orchestrator(
        [ScriptedAgent("Alpha")],
        StubPlanner(make_plan("Alpha")),
        bus=bus,
        intent_parser=StubIntentParser(error=RuntimeError("intent service unavailable")),
    )
    context = TaskExecutionContext(prompt="broken intent")

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.FAILED
    assert context.errors == ["intent service unavailable"]
    assert context.plan is None
    assert context.is_completed is True
    completed = recorder.of(EventType.WORKFLOW_COMPLETED)
    assert len(completed) == 1
    assert completed[0].success is False


@pytest.mark.asyncio
async def test_sensitive_plan_waits_for_approval_then_runs():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    plan = make_plan("Alpha")
    plan.steps[0].action = "Deploy to production"
    orchestrator = _orchestrator([ScriptedAgent("Alpha")], StubPlanner(plan), bus=bus)
    context = TaskExecutionContext(prompt="ship it")

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.COMPLETED
    assert context.plan.requires_human_approval is True
    approvals = recorder.of(EventType.HUMAN_APPROVAL_REQUIRED)
    assert len(approvals) == 1
    assert "Deploy to production" in approvals[0].action_description
    statuses = [event.new_status for event in recorder.of(EventType.STATUS_CHANGED)]
    assert statuses[:3] == [
        ExecutionStatus.PLANNING,
        ExecutionStatus.WAITING_HUMAN_APPROVAL,
        ExecutionStatus.EXECUTING,
    ]


@pytest.mark.asyncio
async def test_denied_approval_cancels_before_any_step():
    bus = AgentEventBus()
    recorder = EventRecorder(bus)
    alpha = ScriptedAgent("Alpha")
    orchestrator = _orchestrator(
        [alpha],
        StubPlanner(make_plan("Alpha")),
        bus=bus,
        intent_parser=StubIntentParser(requires_confirmation=True),
        approval_gate=AutoApprovalGate(approve=False),
    )
    context = TaskExecutionContext(prompt="please confirm first")

    await orchestrator.run(context)

    assert context.status is ExecutionStatus.CANCELLED
    assert alpha.calls == []
    assert recorder.of(EventType.AGENT_START) == []


@pytest.mark.asyncio
async def test_workflow_metrics_recorded():
    labels = {"mode": "Sequential", "status": "Completed"}
    before = REGISTRY.get_sample_value("agentflow_workflow_runs_total", labels) or 0.0
    step_labels = {"agent": "MetricsAgent", "event": "completed"}
    step_before = REGISTRY.get_sample_value("agentflow_step_events_total", step_labels) or 0.0
    orchestrator = _orchestrator([ScriptedAgent("MetricsAgent")], StubPlanner(make_plan("MetricsAgent")))

    await orchestrator.run(TaskExecutionContext(prompt="metrics"))

    assert REGISTRY.get_sample_value("agentflow_workflow_runs_total", labels) == pytest.approx(before + 1.0)
    assert REGISTRY.get_sample_value("agentflow_step_events_total", step_labels) == pytest.approx(step_before + 1.0)
