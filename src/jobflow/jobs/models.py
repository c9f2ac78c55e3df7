"""Domain models for the job queue and its lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from jobflow.jobs.payloads import JobPayload


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.QUEUED},
    ),
    JobStatus.FAILED: frozenset({JobStatus.QUEUED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_transition_allowed(current: JobStatus, new: JobStatus) -> bool:
    """Whether ``current -> new`` is an edge of the lifecycle graph."""

    return new in ALLOWED_TRANSITIONS[current]


class FailureClass(str, Enum):
    """Normalized failure classes recorded on failed or retried jobs."""

    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    SERIALIZATION = "serialization"
    TRANSIENT_INFRA = "transient_infra"
    PROVIDER_TRANSIENT = "provider_transient"
    PROVIDER_PERMANENT = "provider_permanent"
    RATE_LIMITED = "rate_limited"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    CONTENT_POLICY = "content_policy"
    TIMEOUT = "timeout"
    NO_PROCESSOR = "no_processor"
    CANCELLED = "cancelled"
    STALE = "stale"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class ModelSettings:
    """Model selection frozen onto a job at creation time."""

    model: str
    temperature: float | None = None
    max_tokens: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ModelSettings:
        temperature = raw.get("temperature")
        max_tokens = raw.get("max_tokens")
        return cls(
            model=str(raw.get("model") or ""),
            temperature=float(temperature) if temperature is not None else None,
            max_tokens=int(max_tokens) if max_tokens is not None else None,
        )


@dataclass(slots=True, frozen=True)
class WorkflowLink:
    """Ties a job to one stage of a workflow run."""

    workflow_id: str
    definition_name: str
    stage_name: str
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobCreate:
    """Input for creating a queued job."""

    task_type: str
    payload: JobPayload
    job_id: str | None = None
    priority: int = 100
    run_after: datetime | None = None
    session_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    model_settings: ModelSettings | None = None
    workflow: WorkflowLink | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for processors, the scheduler and callers."""

    job_id: str
    task_type: str
    payload: JobPayload
    status: JobStatus
    priority: int
    retry_count: int
    run_after: datetime
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    finished_at: datetime | None
    worker_id: str | None
    session_id: str | None
    workflow: WorkflowLink | None
    model_settings: ModelSettings | None
    metadata: dict[str, Any]
    result: Any
    response_text: str | None
    error_message: str | None
    failure_class: FailureClass | None
    cancel_requested: bool

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class JobEventView:
    """Job event entry for the audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)
