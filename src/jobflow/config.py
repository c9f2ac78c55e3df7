"""Runtime configuration for the job engine and workflow orchestrator."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from jobflow.errors import ConfigurationError


@dataclass(slots=True)
class SchedulerSettings:
    """Worker pool and polling settings."""

    worker_id: str = field(default_factory=lambda: f"jobflow-{uuid4().hex[:8]}")
    concurrency_limit: int = 4
    poll_interval_seconds: float = 0.5
    stale_after_seconds: int = 600
    sweep_interval_seconds: int = 60
    purge_after_days: int = 30


@dataclass(slots=True)
class RetrySettings:
    """Backoff parameters for automatic retries."""

    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 60.0
    max_retries: int = 3


@dataclass(slots=True)
class ModelDefaults:
    """Default model selection applied when a stage gives no hint."""

    default_model: str = "default"
    task_type_models: dict[str, str] = field(default_factory=dict)
    temperature: float = 0.7
    max_tokens: int = 4096


@dataclass(slots=True)
class WorkflowSettings:
    """Where workflow definitions are loaded from."""

    definitions_dir: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".jobflow.db")
    sqlite_busy_timeout_ms: int = 5_000
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    models: ModelDefaults = field(default_factory=ModelDefaults)
    workflows: WorkflowSettings = field(default_factory=WorkflowSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``JOBFLOW_*`` environment variables."""

        definitions_dir = os.getenv("JOBFLOW_WORKFLOW_DEFINITIONS_DIR", "").strip()
        worker_id = os.getenv("JOBFLOW_WORKER_ID", "").strip()
        scheduler = SchedulerSettings(
            concurrency_limit=_env_int("JOBFLOW_CONCURRENCY_LIMIT", 4),
            poll_interval_seconds=_env_float("JOBFLOW_POLL_INTERVAL_SECONDS", 0.5),
            stale_after_seconds=_env_int("JOBFLOW_STALE_AFTER_SECONDS", 600),
            sweep_interval_seconds=_env_int("JOBFLOW_SWEEP_INTERVAL_SECONDS", 60),
            purge_after_days=_env_int("JOBFLOW_PURGE_AFTER_DAYS", 30),
        )
        if worker_id:
            scheduler.worker_id = worker_id
        return cls(
            db_path=db_path or Path(os.getenv("JOBFLOW_DB_PATH", ".jobflow.db")),
            sqlite_busy_timeout_ms=_env_int("JOBFLOW_SQLITE_BUSY_TIMEOUT_MS", 5000),
            scheduler=scheduler,
            retry=RetrySettings(
                base_delay_seconds=_env_float("JOBFLOW_RETRY_BASE_SECONDS", 2.0),
                max_delay_seconds=_env_float("JOBFLOW_RETRY_MAX_SECONDS", 60.0),
                max_retries=_env_int("JOBFLOW_MAX_RETRIES", 3),
            ),
            models=ModelDefaults(
                default_model=os.getenv("JOBFLOW_DEFAULT_MODEL", "default").strip(),
                task_type_models=_collect_task_models(),
                temperature=_env_float("JOBFLOW_DEFAULT_TEMPERATURE", 0.7),
                max_tokens=_env_int("JOBFLOW_DEFAULT_MAX_TOKENS", 4096),
            ),
            workflows=WorkflowSettings(
                definitions_dir=Path(definitions_dir) if definitions_dir else None,
            ),
        )

    def validate(self) -> None:
        """Raise ``ConfigurationError`` when a setting is out of range."""

        if self.scheduler.concurrency_limit <= 0:
            raise ConfigurationError("JOBFLOW_CONCURRENCY_LIMIT must be > 0.")
        if self.scheduler.poll_interval_seconds <= 0:
            raise ConfigurationError("JOBFLOW_POLL_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.stale_after_seconds < 0:
            raise ConfigurationError("JOBFLOW_STALE_AFTER_SECONDS must be >= 0.")
        if self.scheduler.sweep_interval_seconds < 0:
            raise ConfigurationError("JOBFLOW_SWEEP_INTERVAL_SECONDS must be >= 0.")
        if self.scheduler.purge_after_days < 0:
            raise ConfigurationError("JOBFLOW_PURGE_AFTER_DAYS must be >= 0.")
        if self.retry.base_delay_seconds < 0:
            raise ConfigurationError("JOBFLOW_RETRY_BASE_SECONDS must be >= 0.")
        if self.retry.max_delay_seconds < self.retry.base_delay_seconds:
            raise ConfigurationError(
                "JOBFLOW_RETRY_MAX_SECONDS must be >= JOBFLOW_RETRY_BASE_SECONDS.",
            )
        if self.retry.max_retries < 0:
            raise ConfigurationError("JOBFLOW_MAX_RETRIES must be >= 0.")
        if not self.models.default_model:
            raise ConfigurationError("JOBFLOW_DEFAULT_MODEL must not be empty.")
        if not 0.0 <= self.models.temperature <= 2.0:  # noqa: PLR2004
            raise ConfigurationError("JOBFLOW_DEFAULT_TEMPERATURE must be within [0, 2].")
        if self.models.max_tokens <= 0:
            raise ConfigurationError("JOBFLOW_DEFAULT_MAX_TOKENS must be > 0.")
        if self.workflows.definitions_dir is not None and (
            self.workflows.definitions_dir.exists() and not self.workflows.definitions_dir.is_dir()
        ):
            raise ConfigurationError(
                "JOBFLOW_WORKFLOW_DEFINITIONS_DIR must point to a directory: "
                f"{self.workflows.definitions_dir}",
            )


def _collect_task_models() -> dict[str, str]:
    raw = os.getenv("JOBFLOW_TASK_MODELS", "").strip()
    if not raw:
        return {}

    overrides: dict[str, str] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if "=" not in token:
            raise ConfigurationError(
                f"Invalid JOBFLOW_TASK_MODELS entry: {token!r}. "
                "Expected format '<task_type>=<model>'.",
            )
        task_type, model = (value.strip() for value in token.split("=", 1))
        if not task_type or not model:
            raise ConfigurationError(f"Invalid JOBFLOW_TASK_MODELS entry: {token!r}")
        overrides[task_type] = model
    return overrides


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ConfigurationError(f"Invalid number value for {name}: {value!r}") from error
