from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SENSITIVE_KEYWORDS: tuple[str, ...] = (
    "delete",
    "remove",
    "deploy",
    "execute",
    "run",
    "api",
    "external",
    "production",
)


class OrchestratorSettings(BaseModel):
    max_replans: int = Field(3, ge=0, description="Replans allowed per task before it fails.")
    default_max_retries: int = Field(3, ge=0, description="Retry ceiling applied to steps that do not set one.")
    backoff_base_seconds: float = Field(
        1.0,
        ge=0.0,
        description="Retry delay is backoff_base_seconds * 2**attempt.",
    )
    max_backoff_seconds: float = Field(60.0, ge=0.0)
    coordinator_agent: str = Field(
        "SupervisorAgent",
        min_length=1,
        description="Worker that coordinates and validates hierarchical plans.",
    )
    validation_action: str = Field("validate-results", min_length=1)
    parallel_max_concurrency: int | None = Field(
        default=None,
        ge=1,
        description="Cap on concurrently running independent steps; None leaves fan-out unbounded.",
    )


class PlanningSettings(BaseModel):
    max_plan_steps: int = Field(20, ge=1)
    sensitive_keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_KEYWORDS))
    auto_approve: bool = Field(True, description="Approve flagged plans without waiting for a human.")


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    json_logs: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")

    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)  # type: ignore[arg-type]
    planning: PlanningSettings = Field(default_factory=PlanningSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="AGENTFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()


__all__ = [
    "DEFAULT_SENSITIVE_KEYWORDS",
    "ObservabilitySettings",
    "OrchestratorSettings",
    "PlanningSettings",
    "Settings",
    "get_settings",
]
