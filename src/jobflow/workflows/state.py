"""Workflow state derived from the stage jobs of one run; never stored."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from jobflow.jobs.models import JobStatus, JobView
from jobflow.workflows.definitions import WorkflowDefinition


class WorkflowStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_WORKFLOW_STATUSES = frozenset(
    {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED},
)


@dataclass(slots=True)
class StageJobView:
    stage_name: str
    task_type: str
    job_id: str
    status: JobStatus
    retry_count: int
    error_message: str | None


@dataclass(slots=True)
class WorkflowState:
    """Point-in-time projection of a workflow run."""

    workflow_id: str
    definition_name: str
    status: WorkflowStatus
    total_stages: int
    completed_stages: int
    stage_jobs: list[StageJobView] = field(default_factory=list)
    failed_stage: str | None = None
    error_message: str | None = None
    final_output: Any = None

    @property
    def progress(self) -> float:
        if self.total_stages <= 0:
            return 0.0
        return self.completed_stages / self.total_stages

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_WORKFLOW_STATUSES

    @property
    def current_stage(self) -> str | None:
        for stage_job in self.stage_jobs:
            if stage_job.status in {JobStatus.QUEUED, JobStatus.RUNNING}:
                return stage_job.stage_name
        return None


def project_workflow_state(
    workflow_id: str,
    jobs: Sequence[JobView],
    definition: WorkflowDefinition | None = None,
    *,
    paused: bool = False,
) -> WorkflowState:
    """Fold stage jobs into a workflow state.

    Failed wins over cancelled, cancelled over running; completed requires a
    completed job for every defined stage. An unfinished run with the pause
    flag set is reported as paused.
    """

    by_stage: dict[str, JobView] = {}
    for job in jobs:
        if job.workflow is not None and job.workflow.workflow_id == workflow_id:
            by_stage[job.workflow.stage_name] = job

    definition_name = definition.name if definition is not None else ""
    if not definition_name:
        for job in by_stage.values():
            definition_name = job.workflow.definition_name if job.workflow is not None else ""
            break

    stage_order = list(definition.stage_names) if definition is not None else []
    stage_order.extend(name for name in by_stage if name not in stage_order)
    stage_jobs = [
        StageJobView(
            stage_name=name,
            task_type=by_stage[name].task_type,
            job_id=by_stage[name].job_id,
            status=by_stage[name].status,
            retry_count=by_stage[name].retry_count,
            error_message=by_stage[name].error_message,
        )
        for name in stage_order
        if name in by_stage
    ]
    total = len(definition.stages) if definition is not None else len(stage_jobs)
    completed = sum(1 for stage_job in stage_jobs if stage_job.status == JobStatus.COMPLETED)

    state = WorkflowState(
        workflow_id=workflow_id,
        definition_name=definition_name,
        status=WorkflowStatus.RUNNING,
        total_stages=total,
        completed_stages=completed,
        stage_jobs=stage_jobs,
    )
    failed = next((job for job in stage_jobs if job.status == JobStatus.FAILED), None)
    cancelled = next((job for job in stage_jobs if job.status == JobStatus.CANCELLED), None)
    if failed is not None:
        state.status = WorkflowStatus.FAILED
        state.failed_stage = failed.stage_name
        state.error_message = failed.error_message
    elif cancelled is not None:
        state.status = WorkflowStatus.CANCELLED
        state.failed_stage = cancelled.stage_name
        state.error_message = cancelled.error_message
    elif stage_jobs and completed == total:
        state.status = WorkflowStatus.COMPLETED
        state.final_output = by_stage[stage_jobs[-1].stage_name].result
    elif paused:
        state.status = WorkflowStatus.PAUSED
    return state
