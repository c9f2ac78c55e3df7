"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, col, select

from jobflow.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    StatusConflictError,
    StorageError,
)
from jobflow.jobs.models import (
    TERMINAL_STATUSES,
    FailureClass,
    JobCreate,
    JobEventView,
    JobStatus,
    JobView,
    ModelSettings,
    WorkflowLink,
    is_transition_allowed,
)
from jobflow.jobs.payloads import encode_payload, load_stored_payload
from jobflow.storage.alembic_runner import upgrade_head
from jobflow.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from jobflow.storage.sqlmodel_models import JobEventRow, JobRow, WorkflowControlRow

logger = logging.getLogger(__name__)

ERROR_MESSAGE_MAX_CHARS = 2_000


class JobRepository:
    """Job persistence facade; every status change is a compare-and-set update."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobCreate) -> JobView:
        """Create a queued job.

        Raises ``StatusConflictError`` when the job id or the workflow stage
        already has a row.
        """

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        workflow = payload.workflow
        row = JobRow(
            job_id=job_id,
            task_type=payload.task_type,
            status=JobStatus.QUEUED.value,
            priority=payload.priority,
            retry_count=0,
            run_after=to_db_datetime(payload.run_after or now),
            payload_json=encode_payload(payload.payload),
            metadata_json=_dump_json(payload.metadata),
            model_settings_json=(
                _dump_json(payload.model_settings.to_dict())
                if payload.model_settings is not None
                else None
            ),
            session_id=payload.session_id,
            workflow_id=workflow.workflow_id if workflow is not None else None,
            workflow_definition=workflow.definition_name if workflow is not None else None,
            workflow_stage=workflow.stage_name if workflow is not None else None,
            workflow_params_json=_dump_json(workflow.params) if workflow is not None else None,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            session.add(row)
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise StatusConflictError(
                    f"Job already exists (job_id={job_id}, "
                    f"workflow={row.workflow_id}, stage={row.workflow_stage})",
                ) from error
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "task_type": payload.task_type,
                    "priority": payload.priority,
                    "workflow_id": row.workflow_id,
                    "workflow_stage": row.workflow_stage,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.get(JobRow, job_id)
            return _to_job_view(row) if row is not None else None

    def require_job(self, job_id: str) -> JobView:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_queued(self, *, limit: int, now: datetime | None = None) -> list[JobView]:
        """Queued jobs whose ``run_after`` has passed, in claim order."""

        cutoff = to_db_datetime(now or utc_now())
        with self._session() as session:
            rows = session.exec(
                select(JobRow)
                .where(
                    JobRow.status == JobStatus.QUEUED.value,
                    JobRow.run_after <= cutoff,
                )
                .order_by(
                    col(JobRow.priority).asc(),
                    col(JobRow.run_after).asc(),
                    col(JobRow.created_at).asc(),
                )
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs(  # noqa: PLR0913
        self,
        *,
        status: JobStatus | None = None,
        task_type: str | None = None,
        session_id: str | None = None,
        workflow_id: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        statement = select(JobRow)
        if status is not None:
            statement = statement.where(JobRow.status == status.value)
        if task_type is not None:
            statement = statement.where(JobRow.task_type == task_type)
        if session_id is not None:
            statement = statement.where(JobRow.session_id == session_id)
        if workflow_id is not None:
            statement = statement.where(JobRow.workflow_id == workflow_id)
        statement = statement.order_by(col(JobRow.created_at).desc()).limit(limit)
        with self._session() as session:
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_workflow_jobs(self, workflow_id: str) -> list[JobView]:
        """All stage jobs of one workflow run, oldest first."""

        with self._session() as session:
            rows = session.exec(
                select(JobRow)
                .where(JobRow.workflow_id == workflow_id)
                .order_by(col(JobRow.created_at).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_workflow_ids(self) -> list[str]:
        with self._session() as session:
            rows = session.exec(
                select(JobRow.workflow_id)
                .where(col(JobRow.workflow_id).is_not(None))
                .distinct(),
            ).all()
        return sorted(str(value) for value in rows if value is not None)

    def compare_and_set_status(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        expected: JobStatus,
        new: JobStatus,
        changes: dict[str, Any] | None = None,
        metadata_patch: dict[str, Any] | None = None,
        event_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move ``job_id`` from ``expected`` to ``new`` in one conditional UPDATE.

        Returns ``False`` when the row is no longer in ``expected`` and when a
        terminal status is re-applied. Raises ``InvalidTransitionError`` for
        edges outside the lifecycle graph and ``JobNotFoundError`` for unknown
        ids.
        """

        if expected == new and new in TERMINAL_STATUSES:
            self.require_job(job_id)
            return False
        if not is_transition_allowed(expected, new):
            raise InvalidTransitionError(
                f"Illegal job transition {expected.value} -> {new.value} (job_id={job_id})",
            )

        now = to_db_datetime(utc_now())
        values: dict[str, Any] = dict(changes or {})
        values["status"] = new.value
        values["updated_at"] = now
        if metadata_patch:
            values["metadata_json"] = func.json_patch(
                col(JobRow.metadata_json),
                _dump_json(metadata_patch),
            )
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == expected.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                if session.get(JobRow, job_id) is None:
                    raise JobNotFoundError(job_id)
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type or new.value,
                status_from=expected,
                status_to=new,
                details=details or {},
            )
            session.commit()
            return True

    def claim_job(self, job_id: str, *, worker_id: str) -> JobView | None:
        """Atomically take a queued job for execution."""

        now = to_db_datetime(utc_now())
        claimed = self.compare_and_set_status(
            job_id,
            expected=JobStatus.QUEUED,
            new=JobStatus.RUNNING,
            changes={
                "started_at": now,
                "heartbeat_at": now,
                "finished_at": None,
                "worker_id": worker_id,
                "cancel_requested_at": None,
                "response_text": None,
            },
            event_type="claimed",
            details={"worker_id": worker_id},
        )
        if not claimed:
            return None
        return self.get_job(job_id)

    def complete_job(
        self,
        job_id: str,
        *,
        result: object,
        metadata_patch: dict[str, Any] | None = None,
    ) -> bool:
        """Mark a running job as completed with its structured output."""

        now = to_db_datetime(utc_now())
        return self.compare_and_set_status(
            job_id,
            expected=JobStatus.RUNNING,
            new=JobStatus.COMPLETED,
            changes={
                "result_json": _dump_json(result),
                "finished_at": now,
                "heartbeat_at": now,
                "error_message": None,
                "failure_class": None,
            },
            metadata_patch=metadata_patch,
            event_type="completed",
        )

    def fail_job(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        failure_class: FailureClass,
        error_message: str,
        expected: JobStatus = JobStatus.RUNNING,
        metadata_patch: dict[str, Any] | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a job as failed for good."""

        now = to_db_datetime(utc_now())
        return self.compare_and_set_status(
            job_id,
            expected=expected,
            new=JobStatus.FAILED,
            changes={
                "failure_class": failure_class.value,
                "error_message": _truncate(error_message),
                "finished_at": now,
                "heartbeat_at": now,
            },
            metadata_patch=metadata_patch,
            event_type="failed",
            details={"failure_class": failure_class.value, **(details or {})},
        )

    def schedule_retry(  # noqa: PLR0913
        self,
        job_id: str,
        *,
        run_after: datetime,
        retry_count: int,
        failure_class: FailureClass,
        error_message: str,
        metadata_patch: dict[str, Any] | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue a running job for a delayed automatic retry."""

        return self.compare_and_set_status(
            job_id,
            expected=JobStatus.RUNNING,
            new=JobStatus.QUEUED,
            changes={
                "retry_count": retry_count,
                "run_after": to_db_datetime(run_after),
                "failure_class": failure_class.value,
                "error_message": _truncate(error_message),
                "started_at": None,
                "heartbeat_at": None,
                "worker_id": None,
            },
            metadata_patch=metadata_patch,
            event_type="retry_scheduled",
            details={
                "retry_count": retry_count,
                "run_after": to_utc_aware_datetime(run_after).isoformat(),
                "failure_class": failure_class.value,
                **(details or {}),
            },
        )

    def cancel_queued_job(self, job_id: str) -> bool:
        now = to_db_datetime(utc_now())
        return self.compare_and_set_status(
            job_id,
            expected=JobStatus.QUEUED,
            new=JobStatus.CANCELLED,
            changes={
                "failure_class": FailureClass.CANCELLED.value,
                "error_message": "Cancelled before start",
                "finished_at": now,
            },
            event_type="cancelled",
        )

    def cancel_running_job(self, job_id: str, *, reason: str) -> bool:
        now = to_db_datetime(utc_now())
        return self.compare_and_set_status(
            job_id,
            expected=JobStatus.RUNNING,
            new=JobStatus.CANCELLED,
            changes={
                "failure_class": FailureClass.CANCELLED.value,
                "error_message": _truncate(reason),
                "finished_at": now,
                "heartbeat_at": now,
            },
            event_type="cancelled",
            details={"reason": reason},
        )

    def request_cancel(self, job_id: str) -> bool:
        """Flag a running job so its processor stops at the next checkpoint."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                    col(JobRow.cancel_requested_at).is_(None),
                )
                .values(cancel_requested_at=now, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="cancel_requested",
                status_from=JobStatus.RUNNING,
                status_to=JobStatus.RUNNING,
                details={},
            )
            session.commit()
            return True

    def is_cancel_requested(self, job_id: str) -> bool:
        with self._session() as session:
            value = session.exec(
                select(JobRow.cancel_requested_at).where(JobRow.job_id == job_id),
            ).one_or_none()
        return value is not None

    def requeue_failed_job(
        self,
        job_id: str,
        *,
        retry_count: int,
        event_type: str = "manual_retry",
    ) -> JobView:
        """Move a failed job back to the queue with the given retry count."""

        now = to_db_datetime(utc_now())
        requeued = self.compare_and_set_status(
            job_id,
            expected=JobStatus.FAILED,
            new=JobStatus.QUEUED,
            changes={
                "retry_count": retry_count,
                "run_after": now,
                "started_at": None,
                "heartbeat_at": None,
                "finished_at": None,
                "worker_id": None,
                "error_message": None,
                "failure_class": None,
                "result_json": None,
                "response_text": None,
            },
            event_type=event_type,
            details={"retry_count": retry_count},
        )
        if not requeued:
            raise StatusConflictError(
                f"Job state changed concurrently while retrying (job_id={job_id})",
            )
        return self.require_job(job_id)

    def patch_metadata(self, job_id: str, patch: dict[str, Any]) -> bool:
        """Merge ``patch`` into job metadata in one UPDATE and bump the heartbeat.

        Follows JSON merge-patch semantics: nested objects merge, ``None``
        removes a key. Terminal jobs are left untouched.
        """

        if not patch:
            return False
        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status).in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
                )
                .values(
                    metadata_json=func.json_patch(col(JobRow.metadata_json), _dump_json(patch)),
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def touch_jobs(self, job_ids: Sequence[str]) -> int:
        """Update heartbeat (and ``updated_at``) for running jobs."""

        if not job_ids:
            return 0
        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id).in_(list(job_ids)),
                    col(JobRow.status) == JobStatus.RUNNING.value,
                )
                .values(heartbeat_at=now, updated_at=now),
            )
            session.commit()
            return result.rowcount

    def append_result(self, job_id: str, chunk: str) -> bool:
        """Append a streamed chunk to ``response_text`` of a running job."""

        if not chunk:
            return False
        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                )
                .values(
                    response_text=func.coalesce(col(JobRow.response_text), "").concat(chunk),
                    heartbeat_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def recover_stale_running_jobs(
        self,
        *,
        stale_after: timedelta,
        max_retries: int,
        exclude_ids: Sequence[str] = (),
        now: datetime | None = None,
    ) -> list[JobView]:
        """Requeue or fail running jobs whose heartbeat is older than ``stale_after``."""

        current = now or utc_now()
        cutoff = to_db_datetime(current - stale_after)
        statement = select(JobRow).where(
            JobRow.status == JobStatus.RUNNING.value,
            or_(
                col(JobRow.heartbeat_at) < cutoff,
                and_(col(JobRow.heartbeat_at).is_(None), col(JobRow.started_at) < cutoff),
            ),
        )
        if exclude_ids:
            statement = statement.where(col(JobRow.job_id).not_in(list(exclude_ids)))
        with self._session() as session:
            stale_rows = session.exec(statement).all()

        recovered: list[JobView] = []
        for row in stale_rows:
            message = (
                f"Worker {row.worker_id or 'unknown'} stopped reporting progress "
                f"for more than {int(stale_after.total_seconds())}s"
            )
            if row.cancel_requested_at is not None:
                changed = self.cancel_running_job(row.job_id, reason=message)
            elif row.retry_count < max_retries:
                changed = self.schedule_retry(
                    row.job_id,
                    run_after=current,
                    retry_count=row.retry_count + 1,
                    failure_class=FailureClass.STALE,
                    error_message=message,
                    details={"recovered_by": "stale_sweep"},
                )
            else:
                changed = self.fail_job(
                    row.job_id,
                    failure_class=FailureClass.STALE,
                    error_message=message,
                    details={"recovered_by": "stale_sweep"},
                )
            if changed:
                logger.warning("Recovered stale job %s: %s", row.job_id, message)
                recovered.append(self.require_job(row.job_id))
        return recovered

    def purge_finished_jobs(self, *, older_than: datetime) -> int:
        """Delete terminal jobs finished before ``older_than`` with their events."""

        cutoff = to_db_datetime(older_than)
        terminal = [status.value for status in TERMINAL_STATUSES]
        with self._session() as session:
            job_ids = list(
                session.exec(
                    select(JobRow.job_id).where(
                        col(JobRow.status).in_(terminal),
                        col(JobRow.finished_at) < cutoff,
                    ),
                ).all(),
            )
            if not job_ids:
                return 0
            session.exec(sa_delete(JobEventRow).where(col(JobEventRow.job_id).in_(job_ids)))
            session.exec(sa_delete(JobRow).where(col(JobRow.job_id).in_(job_ids)))
            remaining_workflows = select(JobRow.workflow_id).where(
                col(JobRow.workflow_id).is_not(None),
            )
            session.exec(
                sa_delete(WorkflowControlRow).where(
                    col(WorkflowControlRow.workflow_id).not_in(remaining_workflows),
                ),
            )
            session.commit()
        logger.info("Purged %d finished jobs older than %s", len(job_ids), cutoff)
        return len(job_ids)

    def set_workflow_paused(self, workflow_id: str, *, paused: bool) -> bool:
        """Set or clear the pause flag of a workflow run.

        Returns ``False`` when the flag already had the requested value.
        """

        now = utc_now()
        with self._session() as session:
            row = session.get(WorkflowControlRow, workflow_id)
            if row is None:
                if not paused:
                    return False
                row = WorkflowControlRow(workflow_id=workflow_id, updated_at=now)
            elif (row.paused_at is not None) == paused:
                return False
            row.paused_at = now if paused else None
            row.updated_at = now
            session.add(row)
            session.commit()
            return True

    def is_workflow_paused(self, workflow_id: str) -> bool:
        with self._session() as session:
            row = session.get(WorkflowControlRow, workflow_id)
            return row is not None and row.paused_at is not None

    def list_job_events(self, job_id: str) -> list[JobEventView]:
        with self._session() as session:
            rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for row in rows:
            details = _load_json_dict(row.details_json)
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=JobStatus(row.status_from) if row.status_from else None,
                    status_to=JobStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return events

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise StorageError(f"Job store operation failed: {error}") from error

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEventRow(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_json(details) if details else None,
                created_at=utc_now(),
            ),
        )


def _dump_json(value: object) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _load_json_dict(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _truncate(message: str) -> str:
    if len(message) <= ERROR_MESSAGE_MAX_CHARS:
        return message
    return message[: ERROR_MESSAGE_MAX_CHARS - 3] + "..."


def _optional_datetime(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: JobRow) -> JobView:
    workflow = None
    if row.workflow_id is not None:
        workflow = WorkflowLink(
            workflow_id=row.workflow_id,
            definition_name=row.workflow_definition or "",
            stage_name=row.workflow_stage or "",
            params=_load_json_dict(row.workflow_params_json),
        )
    model_settings = None
    if row.model_settings_json:
        model_settings = ModelSettings.from_dict(_load_json_dict(row.model_settings_json))
    return JobView(
        job_id=row.job_id,
        task_type=row.task_type,
        payload=load_stored_payload(row.task_type, row.payload_json),
        status=JobStatus(row.status),
        priority=row.priority,
        retry_count=row.retry_count,
        run_after=to_utc_aware_datetime(row.run_after),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=_optional_datetime(row.started_at),
        heartbeat_at=_optional_datetime(row.heartbeat_at),
        finished_at=_optional_datetime(row.finished_at),
        worker_id=row.worker_id,
        session_id=row.session_id,
        workflow=workflow,
        model_settings=model_settings,
        metadata=_load_json_dict(row.metadata_json),
        result=json.loads(row.result_json) if row.result_json is not None else None,
        response_text=row.response_text,
        error_message=row.error_message,
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        cancel_requested=row.cancel_requested_at is not None,
    )
