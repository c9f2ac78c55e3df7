from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime

import allure
import pytest

from jobflow.config import RetrySettings
from jobflow.errors import ProviderError, ValidationError
from jobflow.jobs.models import FailureClass, JobStatus, JobView
from jobflow.jobs.payloads import RawPayload
from jobflow.jobs.retry import RetryPolicy

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Retry Policy"),
]


def _failed_job(*, retry_count: int, failure_class: FailureClass | None) -> JobView:
    now = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
    return JobView(
        job_id="job-1",
        task_type="custom",
        payload=RawPayload(task_type="custom"),
        status=JobStatus.FAILED,
        priority=100,
        retry_count=retry_count,
        run_after=now,
        created_at=now,
        updated_at=now,
        started_at=now,
        heartbeat_at=now,
        finished_at=now,
        worker_id="w-1",
        session_id=None,
        workflow=None,
        model_settings=None,
        metadata={},
        result=None,
        response_text=None,
        error_message="boom",
        failure_class=failure_class,
        cancel_requested=False,
    )


def test_next_delay_is_capped_exponential_backoff() -> None:
    policy = RetryPolicy(base_delay_seconds=2.0, max_delay_seconds=60.0, max_retries=10)

    delays = [policy.next_delay(count) for count in range(7)]

    assert delays == [2.0, 4.0, 8.0, 16.0, 32.0, 60.0, 60.0]


def test_jitter_is_deterministic() -> None:
    policy = RetryPolicy(base_delay_seconds=1.0, max_delay_seconds=10_000.0)

    assert policy.jitter(0) == 0
    assert policy.jitter(10) == 1
    assert policy.next_delay(10) == policy.next_delay(10) == 1025.0


def test_next_delay_rejects_negative_counts() -> None:
    with pytest.raises(ValueError, match="retry_count"):
        RetryPolicy().next_delay(-1)


def test_retryable_error_is_retried_until_budget_is_spent() -> None:
    policy = RetryPolicy(max_retries=2)
    error = ProviderError("upstream exploded", status_code=503)

    first = policy.decide(error, retry_count=0)
    second = policy.decide(error, retry_count=1)
    last = policy.decide(error, retry_count=2)

    assert (first.retry, first.retry_count, first.delay_seconds) == (True, 1, 2.0)
    assert (second.retry, second.retry_count, second.delay_seconds) == (True, 2, 4.0)
    assert last.retry is False
    assert last.retry_count == 2
    assert last.failure_class == FailureClass.PROVIDER_TRANSIENT


def test_non_retryable_error_fails_immediately() -> None:
    decision = RetryPolicy().decide(ValidationError("bad payload"), retry_count=0)

    assert decision.retry is False
    assert decision.retry_count == 0
    assert decision.failure_class == FailureClass.VALIDATION
    assert RetryPolicy().is_retryable(ValidationError("bad payload")) is False


def test_zero_retry_budget_never_retries() -> None:
    decision = RetryPolicy(max_retries=0).decide(TimeoutError("slow"), retry_count=0)

    assert decision.retry is False
    assert decision.failure_class == FailureClass.TIMEOUT


def test_policy_from_settings() -> None:
    policy = RetryPolicy.from_settings(
        RetrySettings(base_delay_seconds=1.5, max_delay_seconds=9.0, max_retries=5),
    )

    assert policy == RetryPolicy(base_delay_seconds=1.5, max_delay_seconds=9.0, max_retries=5)


def test_manual_retry_requires_retryable_failure_and_budget() -> None:
    policy = RetryPolicy(max_retries=3)

    assert policy.can_retry_manually(_failed_job(retry_count=1, failure_class=FailureClass.TIMEOUT))
    assert policy.can_retry_manually(_failed_job(retry_count=0, failure_class=None))
    assert not policy.can_retry_manually(
        _failed_job(retry_count=3, failure_class=FailureClass.TIMEOUT),
    )
    assert not policy.can_retry_manually(
        _failed_job(retry_count=0, failure_class=FailureClass.VALIDATION),
    )
    running = replace(
        _failed_job(retry_count=0, failure_class=None),
        status=JobStatus.RUNNING,
    )
    assert not policy.can_retry_manually(running)


def test_default_policy_delays() -> None:
    policy = RetryPolicy()

    assert [policy.next_delay(count) for count in range(4)] == [2.0, 4.0, 8.0, 16.0]
    assert policy.next_delay(10) == 60.0
    delays = [policy.next_delay(count) for count in range(50)]
    assert delays == sorted(delays)
    assert max(delays) == 60.0


@pytest.mark.parametrize("retry_count", [0, 1, 2])
def test_validation_error_is_never_requeued(retry_count: int) -> None:
    decision = RetryPolicy().decide(ValidationError("bad payload"), retry_count=retry_count)

    assert decision.retry is False
    assert decision.retry_count == retry_count
    assert decision.failure_class == FailureClass.VALIDATION
