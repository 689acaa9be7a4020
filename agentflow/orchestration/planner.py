from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, Mapping, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.logging import get_logger
from ..schemas.intent import IntentResult
from ..schemas.plan import ExecutionMode, ExecutionPlan, StepStatus, TaskStep

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .context import TaskExecutionContext

logger = get_logger(name=__name__)

PLACEHOLDER_ACTION = "Execute task based on"
DEFAULT_AGENT = "CodeGeneratorAgent"
DEFAULT_ACTION = "Execute task"


class TaskPlanner(Protocol):
    async def create_plan(self, intent: IntentResult, context: "TaskExecutionContext") -> ExecutionPlan:
        ...

    async def replan(
        self,
        current_plan: ExecutionPlan,
        reason: str,
        context: "TaskExecutionContext",
    ) -> ExecutionPlan:
        ...


class PlanParseError(ValueError):
    """Raised when a planner payload cannot be turned into a usable plan."""


class _StepPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    order: int = 0
    agent_name: str | None = Field(default=None, alias="agentName")
    action: str | None = None
    parameters: dict[str, Any] | None = None
    depends_on: list[str] | None = Field(default=None, alias="dependsOn")
    is_conditional: bool = Field(default=False, alias="isConditional")
    condition: str | None = None

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        if isinstance(value, str):
            return [value]
        return [str(item) for item in value]


class _PlanPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    objective: str | None = None
    mode: str | None = None
    steps: list[_StepPayload] = Field(default_factory=list)


_CANONICAL_KEYS = {
    "objective": "objective",
    "mode": "mode",
    "steps": "steps",
    "order": "order",
    "agentname": "agentName",
    "agent_name": "agentName",
    "action": "action",
    "parameters": "parameters",
    "dependson": "dependsOn",
    "depends_on": "dependsOn",
    "isconditional": "isConditional",
    "is_conditional": "isConditional",
    "condition": "condition",
}


def _normalize_keys(value: Any) -> Any:
    # Planner output is matched case-insensitively ("AgentName", "agentname", ...).
    if isinstance(value, Mapping):
        normalized: dict[Any, Any] = {}
        for key, item in value.items():
            canonical = _CANONICAL_KEYS.get(str(key).lower(), key)
            normalized[canonical] = item if canonical == "parameters" else _normalize_keys(item)
        return normalized
    if isinstance(value, list):
        return [_normalize_keys(item) for item in value]
    return value


def _extract_json(text: str) -> Mapping[str, Any]:
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise PlanParseError("planner response contains no JSON object")
    try:
        decoded = json.loads(text[start : end + 1])
    except json.JSONDecodeError as exc:
        raise PlanParseError(f"planner response is not valid JSON: {exc.msg}") from exc
    if not isinstance(decoded, Mapping):
        raise PlanParseError("planner response must be a JSON object")
    return decoded


def parse_plan_payload(
    payload: str | Mapping[str, Any],
    *,
    fallback_objective: str,
    min_steps: int = 1,
) -> ExecutionPlan:
    """Validate a planner payload into an :class:`ExecutionPlan`.

    ``payload`` may be a decoded mapping or raw model text with a JSON object
    somewhere inside it. Generic placeholder steps ("Execute task based on ...")
    are dropped. Raises :class:`PlanParseError` when fewer than ``min_steps``
    usable steps remain.
    """

    raw = _extract_json(payload) if isinstance(payload, str) else payload
    try:
        parsed = _PlanPayload.model_validate(_normalize_keys(raw))
    except ValidationError as exc:
        raise PlanParseError(f"planner payload failed validation: {exc.error_count()} error(s)") from exc

    steps: list[TaskStep] = []
    for item in parsed.steps:
        if item.action and PLACEHOLDER_ACTION in item.action:
            continue
        steps.append(
            TaskStep(
                order=item.order,
                agent_name=item.agent_name or DEFAULT_AGENT,
                action=item.action or DEFAULT_ACTION,
                parameters=item.parameters or {},
                depends_on=item.depends_on or [],
                is_conditional=item.is_conditional,
                condition=item.condition,
            )
        )

    if len(steps) < min_steps:
        raise PlanParseError(f"planner payload yielded {len(steps)} usable step(s), expected at least {min_steps}")

    return ExecutionPlan(
        objective=parsed.objective or fallback_objective,
        mode=ExecutionMode.parse(parsed.mode),
        steps=steps,
    )


_WORKFLOW_TEMPLATE: tuple[tuple[str, str], ...] = (
    ("AnalystAgent", "Analyze requirements and define the workflow structure"),
    ("WorkflowAgent", "Create the base pipeline with a Build stage"),
    ("WorkflowAgent", "Add an automated Test stage"),
    ("WorkflowAgent", "Configure Deploy stages for staging and production"),
    ("ReviewerAgent", "Review the pipeline against CI/CD best practices"),
    ("SupervisorAgent", "Write documentation and a summary of the workflow"),
)

_INTEGRATION_TEMPLATE: tuple[tuple[str, str], ...] = (
    ("AnalystAgent", "Analyze the integration requirements"),
    ("APIIntegrationAgent", "Check connectivity and endpoints of the API"),
    ("CodeGeneratorAgent", "Generate client code for the API"),
    ("ReviewerAgent", "Review the integration code"),
    ("SupervisorAgent", "Validate and document the integration"),
)

_CODE_TEMPLATE: tuple[tuple[str, str], ...] = (
    ("AnalystAgent", "Analyze requirements for the code to generate"),
    ("CodeGeneratorAgent", "Generate code that meets the requirements"),
    ("ReviewerAgent", "Review code quality and conventions"),
    ("CodeGeneratorAgent", "Apply improvements suggested by the review"),
    ("SupervisorAgent", "Validate the final result and write documentation"),
)

_ANALYSIS_TEMPLATE: tuple[tuple[str, str], ...] = (
    ("RAGAgent", "Gather relevant information and context"),
    ("AnalystAgent", "Analyze the data and identify patterns"),
    ("AnalystAgent", "Derive insights and recommendations"),
    ("AnalystAgent", "Write a structured report"),
    ("SupervisorAgent", "Review and finalize the report"),
)


def _select_template(prompt: str, intent: IntentResult) -> list[tuple[str, str]]:
    text = prompt.lower()
    if any(keyword in text for keyword in ("workflow", "pipeline", "deploy", "ci/cd")):
        return list(_WORKFLOW_TEMPLATE)
    if "api" in text or "integr" in text:
        return list(_INTEGRATION_TEMPLATE)
    if "code" in text or "class" in text:
        return list(_CODE_TEMPLATE)
    if any(keyword in text for keyword in ("analys", "analyz", "report")):
        return list(_ANALYSIS_TEMPLATE)
    return [
        ("AnalystAgent", "Analyze requirements and define the approach"),
        (intent.preferred_agent or DEFAULT_AGENT, f"Carry out the main task: {intent.objective}"),
        ("ReviewerAgent", "Review the result and suggest improvements"),
        ("SupervisorAgent", "Validate the work and write a final summary"),
    ]


class TemplateTaskPlanner:
    """Keyword-driven planner that needs no language model.

    The prompt is matched against a handful of task families (workflows,
    integrations, code, analysis) and a fixed multi-step template is returned;
    anything else gets a generic analyze/execute/review/validate plan.
    """

    def __init__(self, *, mode: ExecutionMode = ExecutionMode.SEQUENTIAL, max_retries: int = 3) -> None:
        self._mode = mode
        self._max_retries = max_retries

    def _build(self, intent: IntentResult, prompt: str) -> ExecutionPlan:
        template = _select_template(prompt or intent.raw_input or intent.objective, intent)
        steps = [
            TaskStep(order=index, agent_name=agent, action=action, max_retries=self._max_retries)
            for index, (agent, action) in enumerate(template, start=1)
        ]
        return ExecutionPlan(objective=intent.objective, mode=self._mode, steps=steps)

    async def create_plan(self, intent: IntentResult, context: "TaskExecutionContext") -> ExecutionPlan:
        plan = self._build(intent, context.prompt)
        logger.info("plan_templated", task_id=context.task_id, steps=len(plan.steps))
        return plan

    async def replan(
        self,
        current_plan: ExecutionPlan,
        reason: str,
        context: "TaskExecutionContext",
    ) -> ExecutionPlan:
        intent = context.intent or IntentResult(raw_input=context.prompt, objective=current_plan.objective)
        fresh = self._build(intent, context.prompt)
        done = {
            (step.agent_name, step.action)
            for step in current_plan.steps
            if step.status is StepStatus.COMPLETED
        }
        remaining = [step for step in fresh.steps if (step.agent_name, step.action) not in done]
        logger.info(
            "plan_retemplated",
            task_id=context.task_id,
            reason=reason,
            kept=len(remaining),
            dropped=len(fresh.steps) - len(remaining),
        )
        return fresh.model_copy(
            update={
                "objective": current_plan.objective,
                "mode": current_plan.mode,
                "steps": remaining,
                "version": current_plan.version + 1,
            }
        )


__all__ = [
    "PLACEHOLDER_ACTION",
    "PlanParseError",
    "TaskPlanner",
    "TemplateTaskPlanner",
    "parse_plan_payload",
]
