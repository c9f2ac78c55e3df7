"""Retry policy: which failures are retried and how long to wait."""

from __future__ import annotations

from dataclasses import dataclass

from jobflow.config import RetrySettings
from jobflow.jobs.failure_classifier import FailureClassification, classify_error
from jobflow.jobs.models import FailureClass, JobStatus, JobView

_NON_RETRYABLE_CLASSES = frozenset(
    {
        FailureClass.VALIDATION,
        FailureClass.CONFIGURATION,
        FailureClass.SERIALIZATION,
        FailureClass.PROVIDER_PERMANENT,
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.MODEL_NOT_AVAILABLE,
        FailureClass.CONTENT_POLICY,
        FailureClass.NO_PROCESSOR,
        FailureClass.CANCELLED,
    },
)


@dataclass(slots=True, frozen=True)
class RetryDecision:
    """Outcome of applying the policy to one failed attempt."""

    retry: bool
    retry_count: int
    delay_seconds: float
    classification: FailureClassification

    @property
    def failure_class(self) -> FailureClass:
        return self.classification.failure_class


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Capped exponential backoff with a deterministic jitter term."""

    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 60.0
    max_retries: int = 3

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            max_retries=settings.max_retries,
        )

    def is_retryable(self, error: BaseException) -> bool:
        return classify_error(error).retryable

    def jitter(self, retry_count: int) -> float:
        return round(retry_count * 0.1)

    def next_delay(self, retry_count: int) -> float:
        """Seconds to wait before attempt ``retry_count + 1``."""

        if retry_count < 0:
            raise ValueError(f"retry_count must be >= 0, got {retry_count}")
        exponent = min(retry_count, 32)
        delay = self.base_delay_seconds * (2**exponent) + self.jitter(retry_count)
        return float(min(delay, self.max_delay_seconds))

    def decide(self, error: BaseException, *, retry_count: int) -> RetryDecision:
        """Retry while the error is retryable and the budget is not used up."""

        classification = classify_error(error)
        if classification.retryable and retry_count < self.max_retries:
            return RetryDecision(
                retry=True,
                retry_count=retry_count + 1,
                delay_seconds=self.next_delay(retry_count),
                classification=classification,
            )
        return RetryDecision(
            retry=False,
            retry_count=retry_count,
            delay_seconds=0.0,
            classification=classification,
        )

    def can_retry_manually(self, job: JobView) -> bool:
        """Failed jobs may be requeued by hand when retryable with budget left."""

        if job.status != JobStatus.FAILED:
            return False
        if job.failure_class is not None and job.failure_class in _NON_RETRYABLE_CLASSES:
            return False
        return job.retry_count < self.max_retries
