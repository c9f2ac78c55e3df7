"""Error taxonomy shared by processors, the scheduler and the service layer."""

from __future__ import annotations

from jobflow.jobs.models import FailureClass


class JobflowError(Exception):
    """Base error; ``retryable`` tells the retry policy whether to re-queue."""

    retryable: bool = True
    failure_class: FailureClass = FailureClass.UNKNOWN


class ValidationError(JobflowError, ValueError):
    """Malformed payload or input; never retried."""

    retryable = False
    failure_class = FailureClass.VALIDATION


class ConfigurationError(JobflowError):
    """Invalid settings or definitions; never retried."""

    retryable = False
    failure_class = FailureClass.CONFIGURATION


class WorkflowDefinitionError(ConfigurationError):
    """Workflow definition failed validation at load time."""


class SerializationError(JobflowError):
    """Output could not be parsed into the expected structure; never retried."""

    retryable = False
    failure_class = FailureClass.SERIALIZATION


class TransientInfraError(JobflowError):
    """Temporary infrastructure failure (I/O, locks, network)."""

    failure_class = FailureClass.TRANSIENT_INFRA


class StorageError(TransientInfraError):
    """Database operation failed for a reason that may clear on retry."""


class ProviderError(JobflowError):
    """Chat provider failure with optional HTTP status."""

    failure_class = FailureClass.PROVIDER_TRANSIENT

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        permanent: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.permanent = permanent
        self.retryable = not permanent
        if permanent:
            self.failure_class = FailureClass.PROVIDER_PERMANENT


class NoProcessorFoundError(JobflowError, LookupError):
    """No registered processor accepts the job."""

    retryable = False
    failure_class = FailureClass.NO_PROCESSOR

    def __init__(self, task_type: str) -> None:
        super().__init__(f"No processor registered for task type {task_type!r}")
        self.task_type = task_type


class JobCancelledError(JobflowError):
    """Raised at a processor checkpoint after cancellation was requested."""

    retryable = False
    failure_class = FailureClass.CANCELLED

    def __init__(self, job_id: str, checkpoint: str | None = None) -> None:
        where = f" at {checkpoint}" if checkpoint else ""
        super().__init__(f"Job {job_id} cancelled{where}")
        self.job_id = job_id
        self.checkpoint = checkpoint


class JobNotFoundError(JobflowError, LookupError):
    """Job id does not exist."""

    retryable = False

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class WorkflowNotFoundError(JobflowError, LookupError):
    """Workflow id or definition name does not exist."""

    retryable = False


class InvalidTransitionError(JobflowError, ValueError):
    """Requested status change is not in the transition graph."""

    retryable = False


class StatusConflictError(JobflowError):
    """Row changed concurrently so a required compare-and-set did not apply."""
