"""Use-case facade over the job engine and workflow orchestrator."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from jobflow.config import Settings
from jobflow.errors import StatusConflictError, ValidationError
from jobflow.jobs.models import JobCreate, JobEventView, JobStatus, JobView
from jobflow.jobs.notifier import EventNotifier, LoggingNotifier
from jobflow.jobs.payloads import decode_payload
from jobflow.jobs.processors import build_default_registry
from jobflow.jobs.registry import JobRegistry
from jobflow.jobs.repository import JobRepository
from jobflow.jobs.retry import RetryPolicy
from jobflow.jobs.routing import resolve_model_settings
from jobflow.jobs.scheduler import JobScheduler
from jobflow.providers.chat import ChatCompletionProvider
from jobflow.providers.filesystem import FilesystemProvider
from jobflow.storage.common import utc_now
from jobflow.workflows.definitions import load_workflow_definitions
from jobflow.workflows.orchestrator import WorkflowOrchestrator
from jobflow.workflows.state import WorkflowState

logger = logging.getLogger(__name__)


class JobService:
    """Enqueue, inspect, cancel and retry jobs and workflows."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: JobRegistry,
        scheduler: JobScheduler,
        orchestrator: WorkflowOrchestrator,
        retry_policy: RetryPolicy,
        settings: Settings,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.scheduler = scheduler
        self.orchestrator = orchestrator
        self.retry_policy = retry_policy
        self.settings = settings

    def enqueue(  # noqa: PLR0913
        self,
        task_type: str,
        payload: Mapping[str, Any],
        *,
        priority: int = 100,
        metadata: dict[str, Any] | None = None,
        session_id: str | None = None,
        model: str | None = None,
    ) -> str:
        """Validate and persist a standalone job; returns its id."""

        if task_type not in self.registry:
            raise ValidationError(f"No processor registered for task type {task_type!r}")
        job = self.repository.create_job(
            JobCreate(
                task_type=task_type,
                payload=decode_payload(task_type, payload),
                priority=priority,
                session_id=session_id,
                metadata=dict(metadata or {}),
                model_settings=resolve_model_settings(
                    self.settings.models,
                    task_type,
                    model=model,
                ),
            ),
        )
        logger.info("Enqueued job %s (%s)", job.job_id, task_type)
        self.scheduler.wake()
        return job.job_id

    def cancel(self, job_id: str) -> bool:
        return self.scheduler.cancel(job_id)

    def get_status(self, job_id: str) -> JobView:
        return self.repository.require_job(job_id)

    def retry(self, job_id: str) -> JobView:
        """Requeue a failed job by hand.

        Raises ``StatusConflictError`` when the job is not failed, its failure
        is not retryable, or its retry budget is spent.
        """

        job = self.repository.require_job(job_id)
        if not self.retry_policy.can_retry_manually(job):
            raise StatusConflictError(
                f"Job {job_id} cannot be retried (status={job.status.value}, "
                f"failure_class={job.failure_class.value if job.failure_class else None}, "
                f"retry_count={job.retry_count}/{self.retry_policy.max_retries})",
            )
        requeued = self.repository.requeue_failed_job(job_id, retry_count=job.retry_count + 1)
        logger.info("Job %s requeued by hand (retry %d)", job_id, requeued.retry_count)
        self.scheduler.wake()
        return requeued

    def enqueue_workflow(
        self,
        definition_name: str,
        initial_params: Mapping[str, Any],
        *,
        session_id: str | None = None,
        priority: int = 100,
    ) -> str:
        return self.orchestrator.start_workflow(
            definition_name,
            initial_params,
            session_id=session_id,
            priority=priority,
        )

    def get_workflow_status(self, workflow_id: str) -> WorkflowState:
        return self.orchestrator.get_workflow_status(workflow_id)

    def cancel_workflow(self, workflow_id: str) -> list[str]:
        """Cancel every unfinished stage job of a run; returns the affected ids."""

        state = self.orchestrator.get_workflow_status(workflow_id)
        cancelled: list[str] = []
        for stage in state.stage_jobs:
            if stage.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
                continue
            if self.scheduler.cancel(stage.job_id):
                cancelled.append(stage.job_id)
        logger.info("Workflow %s cancel touched %d jobs", workflow_id, len(cancelled))
        return cancelled

    def pause_workflow(self, workflow_id: str) -> WorkflowState:
        return self.orchestrator.pause_workflow(workflow_id)

    def resume_workflow(self, workflow_id: str) -> WorkflowState:
        return self.orchestrator.resume_workflow(workflow_id)

    def list_workflows(self, *, active_only: bool = False) -> list[WorkflowState]:
        return self.orchestrator.list_workflows(active_only=active_only)

    def retry_workflow_stage(self, workflow_id: str, stage_name: str) -> str:
        """Requeue a failed stage whatever its failure class; returns its job id."""

        return self.orchestrator.retry_stage(workflow_id, stage_name)

    def list_job_events(self, job_id: str) -> list[JobEventView]:
        self.repository.require_job(job_id)
        return self.repository.list_job_events(job_id)

    def purge_finished(self) -> int:
        days = self.settings.scheduler.purge_after_days
        return self.repository.purge_finished_jobs(older_than=utc_now() - timedelta(days=days))


@dataclass(slots=True)
class Runtime:
    """Wired collaborators for one process."""

    settings: Settings
    repository: JobRepository
    registry: JobRegistry
    scheduler: JobScheduler
    orchestrator: WorkflowOrchestrator
    service: JobService

    def close(self) -> None:
        self.scheduler.shutdown()
        self.repository.close()


def build_runtime(
    settings: Settings,
    chat_provider: ChatCompletionProvider | None,
    *,
    notifier: EventNotifier | None = None,
    filesystem: FilesystemProvider | None = None,
    registry: JobRegistry | None = None,
) -> Runtime:
    """Migrate the database and wire scheduler, orchestrator and service."""

    settings.validate()
    notifier = notifier or LoggingNotifier()
    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    if registry is None:
        registry = build_default_registry()
    retry_policy = RetryPolicy.from_settings(settings.retry)
    scheduler = JobScheduler(
        repository=repository,
        registry=registry,
        retry_policy=retry_policy,
        worker_id=settings.scheduler.worker_id,
        model_defaults=settings.models,
        notifier=notifier,
        chat=chat_provider,
        filesystem=filesystem,
        concurrency_limit=settings.scheduler.concurrency_limit,
        poll_interval_seconds=settings.scheduler.poll_interval_seconds,
        stale_after_seconds=settings.scheduler.stale_after_seconds,
        sweep_interval_seconds=settings.scheduler.sweep_interval_seconds,
    )
    orchestrator = WorkflowOrchestrator(
        repository=repository,
        definitions=load_workflow_definitions(
            settings.workflows.definitions_dir,
            known_task_types=registry.task_types(),
        ),
        model_defaults=settings.models,
        notifier=notifier,
        on_job_created=scheduler.wake,
    )
    scheduler.add_terminal_listener(orchestrator.handle_job_terminal)
    orchestrator.reconcile()
    service = JobService(
        repository=repository,
        registry=registry,
        scheduler=scheduler,
        orchestrator=orchestrator,
        retry_policy=retry_policy,
        settings=settings,
    )
    return Runtime(
        settings=settings,
        repository=repository,
        registry=registry,
        scheduler=scheduler,
        orchestrator=orchestrator,
        service=service,
    )
