from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

STEP_EVENTS_TOTAL = Counter(
    "agentflow_step_events_total",
    "Count of step lifecycle events (started/completed/failed/retrying)",
    labelnames=("agent", "event"),
)

STEP_LATENCY_SECONDS = Histogram(
    "agentflow_step_latency_seconds",
    "Latency of a single step attempt",
    labelnames=("agent",),
)

REPLANS_TOTAL = Counter(
    "agentflow_replans_total",
    "Replanning outcomes grouped by status",
    labelnames=("status",),
)

WORKFLOW_RUNS_TOTAL = Counter(
    "agentflow_workflow_runs_total",
    "Total workflow runs by final status",
    labelnames=("mode", "status"),
)

WORKFLOW_LATENCY_SECONDS = Histogram(
    "agentflow_workflow_latency_seconds",
    "End-to-end workflow runtime",
    labelnames=("mode",),
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, 900, float("inf")),
)

WORKFLOWS_ACTIVE_GAUGE = Gauge(
    "agentflow_workflows_active",
    "Workflows currently in flight",
)

EVENT_HANDLER_FAILURES_TOTAL = Counter(
    "agentflow_event_handler_failures_total",
    "Event bus handlers that raised while processing an event",
    labelnames=("event_type",),
)

_enabled = True


def set_metrics_enabled(enabled: bool) -> None:
    global _enabled
    _enabled = enabled


def increment_step_event(*, agent: str, event: str) -> None:
    if _enabled:
        STEP_EVENTS_TOTAL.labels(agent=agent, event=event).inc()


def observe_step_latency(*, agent: str, latency: float) -> None:
    if _enabled:
        STEP_LATENCY_SECONDS.labels(agent=agent).observe(max(0.0, latency))


def record_replan(*, status: str) -> None:
    if _enabled:
        REPLANS_TOTAL.labels(status=status).inc()


def mark_workflow_started() -> None:
    if _enabled:
        WORKFLOWS_ACTIVE_GAUGE.inc()


def mark_workflow_completed(*, mode: str, status: str, latency: float) -> None:
    if not _enabled:
        return
    WORKFLOWS_ACTIVE_GAUGE.dec()
    WORKFLOW_RUNS_TOTAL.labels(mode=mode, status=status).inc()
    WORKFLOW_LATENCY_SECONDS.labels(mode=mode).observe(max(0.0, latency))


def increment_event_handler_failure(*, event_type: str) -> None:
    if _enabled:
        EVENT_HANDLER_FAILURES_TOTAL.labels(event_type=event_type).inc()
