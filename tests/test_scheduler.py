from __future__ import annotations

import threading
from datetime import timedelta
from typing import Any

import allure

from jobflow.errors import ProviderError
from jobflow.jobs.models import FailureClass, JobCreate, JobStatus, JobView
from jobflow.jobs.notifier import JOB_STATUS_TOPIC, InMemoryNotifier
from jobflow.jobs.payloads import (
    ImplementationPlanPayload,
    MalformedPayload,
    RawPayload,
    TextImprovementPayload,
)
from jobflow.jobs.processor import JobProcessor, ProcessorContext, ProcessorResult
from jobflow.jobs.processors import TextImprovementProcessor
from jobflow.jobs.registry import JobRegistry
from jobflow.jobs.repository import JobRepository
from jobflow.jobs.retry import RetryPolicy
from jobflow.jobs.scheduler import JobScheduler
from jobflow.storage.common import utc_now

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Scheduler"),
]


class BlockingProcessor(JobProcessor):
    name = "blocking"
    task_type = "blocking"
    payload_type = RawPayload

    def __init__(self) -> None:
        self.release = threading.Event()

    def process(self, payload: RawPayload, context: ProcessorContext) -> ProcessorResult:
        assert self.release.wait(timeout=10)
        context.checkpoint("after_release")
        return ProcessorResult(output={"echo": payload.data})


class BrokenNotifier:
    def publish(self, topic: str, payload: Any) -> None:
        raise RuntimeError(f"sink down for {topic}")


def _enqueue_text(repository: JobRepository, text: str = "helo wrld") -> str:
    return repository.create_job(
        JobCreate(task_type="text_improvement", payload=TextImprovementPayload(text)),
    ).job_id


def _messages(notifier: InMemoryNotifier, job_id: str) -> list[str | None]:
    return [
        payload["message"]
        for payload in notifier.payloads(JOB_STATUS_TOPIC)
        if payload["job_id"] == job_id
    ]


def test_job_runs_to_completion(repository, scheduler: JobScheduler, chat, notifier) -> None:
    job_id = _enqueue_text(repository)
    chat.replies.append("Hello world")

    assert scheduler.run_until_idle() == 1

    job = repository.require_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result == {"improved_text": "Hello world", "changed": True}
    assert job.metadata["usage"]["total_tokens"] == 15
    assert job.worker_id == "test-worker"
    assert _messages(notifier, job_id) == ["Started", "Completed"]
    assert [event.event_type for event in repository.list_job_events(job_id)] == [
        "enqueued",
        "claimed",
        "completed",
    ]


def test_transient_failure_is_retried(repository, scheduler: JobScheduler, chat, notifier) -> None:
    job_id = _enqueue_text(repository)
    chat.replies.extend([ProviderError("bad gateway", status_code=502), "Hello world"])

    scheduler.run_until_idle()

    job = repository.require_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 1
    history = job.metadata["retry_history"]
    assert len(history) == 1
    assert history[0]["failure_class"] == "provider_transient"
    assert "Retrying 1/2 in 0s: ProviderError: bad gateway" in _messages(notifier, job_id)
    event_types = [event.event_type for event in repository.list_job_events(job_id)]
    assert event_types.count("retry_scheduled") == 1


def test_retry_budget_exhaustion_fails_the_job(repository, scheduler: JobScheduler, chat) -> None:
    job_id = _enqueue_text(repository)
    chat.replies.extend([ProviderError("bad gateway", status_code=502)] * 3)

    scheduler.run_until_idle()

    job = repository.require_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 2
    assert job.failure_class == FailureClass.PROVIDER_TRANSIENT
    assert job.error_message == "Failed after 2 retries: ProviderError: bad gateway"
    assert len(job.metadata["retry_history"]) == 3
    assert chat.replies == []


def test_non_retryable_failure_fails_immediately(repository, scheduler: JobScheduler, chat) -> None:
    job_id = _enqueue_text(repository)
    chat.replies.append(ProviderError("Invalid API key", status_code=401))

    scheduler.run_until_idle()

    job = repository.require_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 0
    assert job.failure_class == FailureClass.ACCESS_OR_AUTH
    assert job.error_message == "ProviderError: Invalid API key"


def test_unknown_task_type_fails_without_retry(repository, scheduler: JobScheduler) -> None:
    job_id = repository.create_job(
        JobCreate(task_type="mystery", payload=RawPayload(task_type="mystery")),
    ).job_id

    scheduler.run_until_idle()

    job = repository.require_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.failure_class == FailureClass.NO_PROCESSOR


def test_malformed_payload_fails_with_validation(repository, scheduler: JobScheduler) -> None:
    job_id = repository.create_job(
        JobCreate(
            task_type="text_improvement",
            payload=MalformedPayload(task_type="text_improvement", raw="{}", reason="missing"),
        ),
    ).job_id

    scheduler.run_until_idle()

    job = repository.require_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.failure_class == FailureClass.VALIDATION


def test_cancel_queued_job(repository, scheduler: JobScheduler, notifier) -> None:
    job_id = _enqueue_text(repository)

    assert scheduler.cancel(job_id) is True
    assert scheduler.cancel(job_id) is False

    job = repository.require_job(job_id)
    assert job.status == JobStatus.CANCELLED
    assert job.failure_class == FailureClass.CANCELLED
    assert _messages(notifier, job_id) == ["Cancelled"]
    assert scheduler.run_until_idle() == 0


def test_cancel_running_job_wins_at_next_checkpoint(
    repository,
    scheduler: JobScheduler,
    chat,
) -> None:
    job_id = _enqueue_text(repository)
    claimed = repository.claim_job(job_id, worker_id="test-worker")
    assert claimed is not None
    chat.replies.append("Hello world")

    assert scheduler.cancel(job_id) is True
    scheduler.execute(claimed)

    job = repository.require_job(job_id)
    assert job.status == JobStatus.CANCELLED
    assert "at start" in (job.error_message or "")
    assert chat.requests == []


def test_concurrency_limit_bounds_claims(repository: JobRepository) -> None:
    processor = BlockingProcessor()
    scheduler = JobScheduler(
        repository=repository,
        registry=JobRegistry([processor]),
        retry_policy=RetryPolicy(),
        worker_id="bounded",
        notifier=InMemoryNotifier(),
        concurrency_limit=2,
    )
    job_ids = [
        repository.create_job(
            JobCreate(task_type="blocking", payload=RawPayload("blocking", {"n": index})),
        ).job_id
        for index in range(3)
    ]
    try:
        first = scheduler.tick()
        assert first.claimed == 2
        assert first.in_flight == 2
        assert scheduler.tick().claimed == 0

        processor.release.set()
        assert scheduler.wait_idle(timeout=10)
        assert scheduler.tick().claimed == 1
        assert scheduler.wait_idle(timeout=10)
    finally:
        processor.release.set()
        scheduler.shutdown()

    results = [repository.require_job(job_id).result for job_id in job_ids]
    assert results == [{"echo": {"n": 0}}, {"echo": {"n": 1}}, {"echo": {"n": 2}}]


def test_terminal_listeners_see_final_state(repository, scheduler: JobScheduler, chat) -> None:
    seen: list[JobView] = []
    scheduler.add_terminal_listener(seen.append)
    job_id = _enqueue_text(repository)
    chat.replies.append("Hello world")

    scheduler.run_until_idle()

    assert [(job.job_id, job.status) for job in seen] == [(job_id, JobStatus.COMPLETED)]


def test_stale_job_from_dead_worker_is_recovered(repository, scheduler: JobScheduler, chat) -> None:
    job_id = _enqueue_text(repository)
    repository.claim_job(job_id, worker_id="dead-worker")
    chat.replies.append("Hello world")

    summary = scheduler.tick(now=utc_now() + timedelta(minutes=20))
    scheduler.wait_idle(timeout=10)

    assert summary.recovered == 1
    job = repository.require_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 1
    assert job.worker_id == "test-worker"


def test_broken_notifier_does_not_affect_execution(repository, chat) -> None:
    scheduler = JobScheduler(
        repository=repository,
        registry=JobRegistry([TextImprovementProcessor()]),
        retry_policy=RetryPolicy(),
        worker_id="quiet",
        notifier=BrokenNotifier(),
        chat=chat,
    )
    job_id = _enqueue_text(repository)
    chat.replies.append("Hello world")
    try:
        scheduler.run_until_idle()
    finally:
        scheduler.shutdown()

    assert repository.require_job(job_id).status == JobStatus.COMPLETED


def test_retried_stream_starts_from_empty_output(
    repository,
    scheduler: JobScheduler,
    chat,
    project_dir,
) -> None:
    job_id = repository.create_job(
        JobCreate(
            task_type="implementation_plan",
            payload=ImplementationPlanPayload(
                task_description="Extend the session lifetime",
                project_directory=str(project_dir),
                relevant_files=("src/app/session.py",),
            ),
        ),
    ).job_id
    chat.stream_scripts = [
        ["Step 1. ", ProviderError("bad gateway", status_code=502)],
        ["Step 1. ", "Step 2."],
    ]

    scheduler.run_until_idle()

    job = repository.require_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.retry_count == 1
    assert job.result == {"plan": "Step 1. Step 2.", "files_used": 1}
    assert job.response_text == "Step 1. Step 2."


def test_default_budget_allows_three_retries(repository, chat, notifier) -> None:
    scheduler = JobScheduler(
        repository=repository,
        registry=JobRegistry([TextImprovementProcessor()]),
        retry_policy=RetryPolicy(),
        worker_id="default-budget",
        notifier=notifier,
        chat=chat,
    )
    job_id = _enqueue_text(repository)
    chat.replies.extend([ProviderError("bad gateway", status_code=502)] * 4)
    try:
        claimed = scheduler.run_until_idle(now=utc_now() + timedelta(minutes=5))
    finally:
        scheduler.shutdown()

    job = repository.require_job(job_id)
    assert claimed == 4
    assert job.status == JobStatus.FAILED
    assert job.retry_count == 3
    assert job.error_message == "Failed after 3 retries: ProviderError: bad gateway"
    assert len(job.metadata["retry_history"]) == 4
    messages = _messages(notifier, job_id)
    assert "Retrying 1/3 in 2s: ProviderError: bad gateway" in messages
    assert "Retrying 2/3 in 4s: ProviderError: bad gateway" in messages
    assert "Retrying 3/3 in 8s: ProviderError: bad gateway" in messages
    assert chat.replies == []
