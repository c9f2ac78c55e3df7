"""Workflow orchestration: start runs and advance them stage by stage."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable, Mapping
from typing import Any
from uuid import uuid4

from jobflow.config import ModelDefaults
from jobflow.errors import StatusConflictError, ValidationError, WorkflowNotFoundError
from jobflow.jobs.models import JobCreate, JobStatus, JobView, WorkflowLink
from jobflow.jobs.notifier import (
    WORKFLOW_STAGE_TOPIC,
    WORKFLOW_STATUS_TOPIC,
    EventNotifier,
    LoggingNotifier,
    safe_publish,
)
from jobflow.jobs.payloads import JobPayload, MalformedPayload, decode_payload
from jobflow.jobs.repository import JobRepository
from jobflow.jobs.routing import resolve_model_settings
from jobflow.workflows.definitions import StageDefinition, WorkflowDefinition
from jobflow.workflows.stage_inputs import build_stage_payload
from jobflow.workflows.state import WorkflowState, WorkflowStatus, project_workflow_state

logger = logging.getLogger(__name__)


class WorkflowOrchestrator:
    """Creates stage jobs in definition order as earlier stages complete.

    Stage N+1 is created only once stage N and all of its dependencies are
    completed. A failed or cancelled stage stops the run; the orchestrator
    never retries a stage itself.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        definitions: Mapping[str, WorkflowDefinition],
        model_defaults: ModelDefaults | None = None,
        notifier: EventNotifier | None = None,
        on_job_created: Callable[[], None] | None = None,
    ) -> None:
        self.repository = repository
        self.definitions = dict(definitions)
        self.model_defaults = model_defaults or ModelDefaults()
        self.notifier = notifier or LoggingNotifier()
        self._on_job_created = on_job_created
        self._locks_guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def definition(self, name: str) -> WorkflowDefinition:
        definition = self.definitions.get(name)
        if definition is None:
            raise WorkflowNotFoundError(f"Unknown workflow definition: {name!r}")
        return definition

    def start_workflow(
        self,
        definition_name: str,
        params: Mapping[str, Any],
        *,
        session_id: str | None = None,
        priority: int = 100,
    ) -> str:
        """Create the first stage job of a new run and return the workflow id.

        Raises ``ValidationError`` when ``params`` cannot feed the first stage.
        """

        definition = self.definition(definition_name)
        if not isinstance(params, Mapping):
            raise ValidationError("workflow params must be an object")
        first = definition.first_stage
        payload = decode_payload(first.task_type, build_stage_payload(first, params, []))

        workflow_id = str(uuid4())
        job = self._create_stage_job(
            workflow_id=workflow_id,
            definition=definition,
            stage=first,
            params=dict(params),
            payload=payload,
            session_id=session_id,
            priority=priority,
        )
        logger.info(
            "Workflow %s (%s) started with stage %s as job %s",
            workflow_id,
            definition.name,
            first.stage_name,
            job.job_id,
        )
        self._publish_workflow(self.get_workflow_status(workflow_id))
        return workflow_id

    def handle_job_terminal(self, job: JobView) -> None:
        """React to a stage job reaching a terminal status."""

        if job.workflow is None:
            return
        workflow_id = job.workflow.workflow_id
        safe_publish(
            self.notifier,
            WORKFLOW_STAGE_TOPIC,
            {
                "workflow_id": workflow_id,
                "stage_name": job.workflow.stage_name,
                "job_id": job.job_id,
                "status": job.status.value,
                "error_message": job.error_message,
            },
        )
        if job.status == JobStatus.COMPLETED:
            self.advance(workflow_id)
        state = self.get_workflow_status(workflow_id)
        if state.status == WorkflowStatus.PAUSED:
            logger.info("Workflow %s is paused; next stage held back", workflow_id)
            self._publish_workflow(state)
        elif state.is_finished:
            if state.status == WorkflowStatus.COMPLETED:
                logger.info("Workflow %s completed", workflow_id)
            else:
                logger.warning(
                    "Workflow %s %s at stage %s: %s",
                    workflow_id,
                    state.status.value,
                    state.failed_stage,
                    state.error_message,
                )
            self._publish_workflow(state)
            with self._locks_guard:
                self._locks.pop(workflow_id, None)

    def advance(self, workflow_id: str) -> JobView | None:
        """Create the next stage job if the run is ready for it."""

        with self._workflow_lock(workflow_id):
            jobs = self.repository.list_workflow_jobs(workflow_id)
            if not jobs or jobs[0].workflow is None:
                return None
            definition = self.definitions.get(jobs[0].workflow.definition_name)
            if definition is None:
                logger.error(
                    "Workflow %s references unknown definition %s",
                    workflow_id,
                    jobs[0].workflow.definition_name,
                )
                return None
            state = project_workflow_state(
                workflow_id,
                jobs,
                definition,
                paused=self.repository.is_workflow_paused(workflow_id),
            )
            if state.status != WorkflowStatus.RUNNING:
                return None

            by_stage = {job.workflow.stage_name: job for job in jobs if job.workflow is not None}
            for stage in definition.stages:
                existing = by_stage.get(stage.stage_name)
                if existing is None:
                    return self._create_next_stage(
                        workflow_id=workflow_id,
                        definition=definition,
                        stage=stage,
                        by_stage=by_stage,
                        seed=jobs[0],
                    )
                if existing.status != JobStatus.COMPLETED:
                    return None
            return None

    def get_workflow_status(self, workflow_id: str) -> WorkflowState:
        jobs = self.repository.list_workflow_jobs(workflow_id)
        if not jobs:
            raise WorkflowNotFoundError(f"Workflow not found: {workflow_id}")
        link = jobs[0].workflow
        definition = self.definitions.get(link.definition_name) if link is not None else None
        return project_workflow_state(
            workflow_id,
            jobs,
            definition,
            paused=self.repository.is_workflow_paused(workflow_id),
        )

    def reconcile(self) -> list[str]:
        """Create stage jobs that a crash prevented; returns the new job ids."""

        created: list[str] = []
        for workflow_id in self.repository.list_workflow_ids():
            job = self.advance(workflow_id)
            if job is not None:
                created.append(job.job_id)
        if created:
            logger.info("Reconciled %d workflow stage jobs", len(created))
        return created

    def list_workflows(self, *, active_only: bool = False) -> list[WorkflowState]:
        """Project every known run; ``active_only`` keeps running and paused ones."""

        states: list[WorkflowState] = []
        for workflow_id in self.repository.list_workflow_ids():
            state = self.get_workflow_status(workflow_id)
            if active_only and state.is_finished:
                continue
            states.append(state)
        return states

    def pause_workflow(self, workflow_id: str) -> WorkflowState:
        """Hold back further stages; the stage already in flight keeps running."""

        with self._workflow_lock(workflow_id):
            state = self._require_unfinished(workflow_id, action="pause")
            if not self.repository.set_workflow_paused(workflow_id, paused=True):
                return state
        logger.info("Workflow %s paused", workflow_id)
        state = self.get_workflow_status(workflow_id)
        self._publish_workflow(state)
        return state

    def resume_workflow(self, workflow_id: str) -> WorkflowState:
        """Clear the pause flag and create any stage that was held back."""

        with self._workflow_lock(workflow_id):
            self._require_unfinished(workflow_id, action="resume")
            changed = self.repository.set_workflow_paused(workflow_id, paused=False)
        if changed:
            logger.info("Workflow %s resumed", workflow_id)
            self.advance(workflow_id)
        state = self.get_workflow_status(workflow_id)
        self._publish_workflow(state)
        return state

    def retry_stage(self, workflow_id: str, stage_name: str) -> str:
        """Requeue the failed job of ``stage_name`` with a fresh retry budget.

        Works for any failure class. Later stages are created again by the
        normal advancement once the retried stage completes.
        """

        with self._workflow_lock(workflow_id):
            state = self.get_workflow_status(workflow_id)
            stage_job = next(
                (job for job in state.stage_jobs if job.stage_name == stage_name),
                None,
            )
            if stage_job is None:
                raise ValidationError(
                    f"Workflow {workflow_id} has no job for stage {stage_name!r}",
                )
            if stage_job.status != JobStatus.FAILED:
                raise StatusConflictError(
                    f"Stage {stage_name!r} of workflow {workflow_id} is "
                    f"{stage_job.status.value}, only failed stages can be retried",
                )
            self.repository.requeue_failed_job(
                stage_job.job_id,
                retry_count=0,
                event_type="stage_retry",
            )
        logger.info(
            "Workflow %s stage %s requeued (job %s)",
            workflow_id,
            stage_name,
            stage_job.job_id,
        )
        if self._on_job_created is not None:
            self._on_job_created()
        self._publish_workflow(self.get_workflow_status(workflow_id))
        return stage_job.job_id

    def _create_next_stage(
        self,
        *,
        workflow_id: str,
        definition: WorkflowDefinition,
        stage: StageDefinition,
        by_stage: Mapping[str, JobView],
        seed: JobView,
    ) -> JobView | None:
        for dependency in stage.dependencies:
            dependency_job = by_stage.get(dependency)
            if dependency_job is None or dependency_job.status != JobStatus.COMPLETED:
                return None
        params = seed.workflow.params if seed.workflow is not None else {}
        outputs = [by_stage[dependency].result for dependency in stage.dependencies]
        raw_payload = build_stage_payload(stage, params, outputs)
        payload: JobPayload
        try:
            payload = decode_payload(stage.task_type, raw_payload)
        except ValidationError as error:
            # Stored as-is so the stage job fails visibly through the normal path.
            payload = MalformedPayload(
                task_type=stage.task_type,
                raw=json.dumps(raw_payload, ensure_ascii=False, default=str),
                reason=str(error),
            )
        try:
            job = self._create_stage_job(
                workflow_id=workflow_id,
                definition=definition,
                stage=stage,
                params=params,
                payload=payload,
                session_id=seed.session_id,
                priority=seed.priority,
            )
        except StatusConflictError:
            logger.info(
                "Stage %s of workflow %s was created concurrently",
                stage.stage_name,
                workflow_id,
            )
            return None
        logger.info(
            "Workflow %s advanced to stage %s (job %s)",
            workflow_id,
            stage.stage_name,
            job.job_id,
        )
        return job

    def _create_stage_job(  # noqa: PLR0913
        self,
        *,
        workflow_id: str,
        definition: WorkflowDefinition,
        stage: StageDefinition,
        params: dict[str, Any],
        payload: JobPayload,
        session_id: str | None,
        priority: int,
    ) -> JobView:
        model_settings = resolve_model_settings(
            self.model_defaults,
            stage.task_type,
            model=stage.model,
            temperature=stage.temperature,
            max_tokens=stage.max_tokens,
        )
        job = self.repository.create_job(
            JobCreate(
                task_type=stage.task_type,
                payload=payload,
                priority=priority,
                session_id=session_id,
                model_settings=model_settings,
                metadata={
                    "workflow": {
                        "stage_index": definition.stage_names.index(stage.stage_name),
                        "total_stages": len(definition.stages),
                    },
                },
                workflow=WorkflowLink(
                    workflow_id=workflow_id,
                    definition_name=definition.name,
                    stage_name=stage.stage_name,
                    params=params,
                ),
            ),
        )
        if self._on_job_created is not None:
            self._on_job_created()
        return job

    def _publish_workflow(self, state: WorkflowState) -> None:
        safe_publish(
            self.notifier,
            WORKFLOW_STATUS_TOPIC,
            {
                "workflow_id": state.workflow_id,
                "definition_name": state.definition_name,
                "status": state.status.value,
                "progress": state.progress,
                "completed_stages": state.completed_stages,
                "total_stages": state.total_stages,
                "failed_stage": state.failed_stage,
                "error_message": state.error_message,
            },
        )

    def _require_unfinished(self, workflow_id: str, *, action: str) -> WorkflowState:
        state = self.get_workflow_status(workflow_id)
        if state.is_finished:
            raise StatusConflictError(
                f"Cannot {action} workflow {workflow_id}: it is {state.status.value}",
            )
        return state

    def _workflow_lock(self, workflow_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(workflow_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[workflow_id] = lock
            return lock
