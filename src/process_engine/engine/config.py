"""Configuration for the process engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the process engine.

    Environment variables:
    - LOG_LEVEL                             (optional)
    - PROCESS_ENGINE_STATE_PATH             (optional)
    - PROCESS_ENGINE_DEFINITIONS_PATH       (optional)
    - PROCESS_ENGINE_RETRY_BUDGET           (optional)
    - PROCESS_ENGINE_JOIN_TIMEOUT_SECONDS   (optional)
    - PROCESS_ENGINE_LEASE_TTL_SECONDS      (optional)
    - PROCESS_ENGINE_LEASE_MAX_SECONDS      (optional)
    - PROCESS_ENGINE_TIMER_TICK_SECONDS     (optional)
    - PROCESS_ENGINE_WORKER_THREADS         (optional)
    - PROCESS_ENGINE_MAX_STEPS              (optional)
    - PROCESS_ENGINE_CORS_ORIGINS           (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("engine_state"),
        validation_alias="PROCESS_ENGINE_STATE_PATH",
        description="Directory where instances and audit logs are persisted",
    )

    definitions_path: Path = Field(
        default=Path("definitions"),
        validation_alias="PROCESS_ENGINE_DEFINITIONS_PATH",
        description="Directory of workflow definition JSON files",
    )

    retry_budget: int = Field(
        default=3,
        ge=0,
        validation_alias="PROCESS_ENGINE_RETRY_BUDGET",
        description="How many times a ReRun* directive may repeat one unit",
    )

    join_timeout_seconds: float = Field(
        default=3600.0,
        gt=0,
        validation_alias="PROCESS_ENGINE_JOIN_TIMEOUT_SECONDS",
        description="How long an AwaitParallel join may stay partially arrived",
    )

    lease_ttl_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias="PROCESS_ENGINE_LEASE_TTL_SECONDS",
        description="Lease lifetime without a heartbeat",
    )

    lease_max_seconds: float = Field(
        default=300.0,
        gt=0,
        validation_alias="PROCESS_ENGINE_LEASE_MAX_SECONDS",
        description="Hard ceiling on one lease, heartbeats included",
    )

    timer_tick_seconds: float = Field(
        default=1.0,
        gt=0,
        validation_alias="PROCESS_ENGINE_TIMER_TICK_SECONDS",
        description="Background timer thread wake-up interval",
    )

    worker_threads: int = Field(
        default=4,
        ge=1,
        validation_alias="PROCESS_ENGINE_WORKER_THREADS",
        description="Thread pool size for submitted advances",
    )

    max_steps: int = Field(
        default=1000,
        ge=1,
        validation_alias="PROCESS_ENGINE_MAX_STEPS",
        description="Most activity steps one advance may execute",
    )

    # Dev-friendly CORS for a dashboard served elsewhere.
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="PROCESS_ENGINE_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins for the observer API.",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @model_validator(mode="after")
    def _lease_ceiling_covers_ttl(self) -> EngineSettings:
        if self.lease_max_seconds < self.lease_ttl_seconds:
            raise ValueError(
                "PROCESS_ENGINE_LEASE_MAX_SECONDS must be >= PROCESS_ENGINE_LEASE_TTL_SECONDS"
            )
        return self

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def instances_dir(self) -> Path:
        """Directory holding instances.json and logs.jsonl."""

        return self.state_path / "instances"
