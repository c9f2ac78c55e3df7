"""Polling scheduler that claims queued jobs and runs them on a bounded pool."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial

from jobflow.config import ModelDefaults
from jobflow.errors import JobCancelledError
from jobflow.jobs.models import JobStatus, JobView
from jobflow.jobs.notifier import (
    JOB_STATUS_TOPIC,
    EventNotifier,
    LoggingNotifier,
    job_status_event,
    safe_publish,
)
from jobflow.jobs.processor import CancellationToken, ProcessorContext, ProcessorResult
from jobflow.jobs.registry import JobRegistry
from jobflow.jobs.repository import JobRepository
from jobflow.jobs.retry import RetryDecision, RetryPolicy
from jobflow.jobs.routing import resolve_model_settings
from jobflow.providers.chat import ChatCompletionProvider
from jobflow.providers.filesystem import FilesystemProvider, LocalFilesystem
from jobflow.storage.common import utc_now

logger = logging.getLogger(__name__)

RETRY_HISTORY_LIMIT = 10

TerminalListener = Callable[[JobView], None]


@dataclass(slots=True)
class SchedulerTickSummary:
    """Counters for one scheduling pass."""

    claimed: int = 0
    recovered: int = 0
    in_flight: int = 0


@dataclass(slots=True)
class _InFlight:
    job_id: str
    future: Future[None]
    token: CancellationToken


class JobScheduler:
    """Claims queued jobs by compare-and-set and executes them concurrently."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: JobRegistry,
        retry_policy: RetryPolicy,
        worker_id: str,
        model_defaults: ModelDefaults | None = None,
        notifier: EventNotifier | None = None,
        chat: ChatCompletionProvider | None = None,
        filesystem: FilesystemProvider | None = None,
        concurrency_limit: int = 4,
        poll_interval_seconds: float = 0.5,
        stale_after_seconds: int = 600,
        sweep_interval_seconds: int = 60,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.retry_policy = retry_policy
        self.worker_id = worker_id
        self.model_defaults = model_defaults or ModelDefaults()
        self.notifier = notifier or LoggingNotifier()
        self.chat = chat
        self.filesystem = filesystem or LocalFilesystem()
        self.concurrency_limit = concurrency_limit
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=concurrency_limit,
            thread_name_prefix="jobflow-worker",
        )
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._in_flight: dict[str, _InFlight] = {}
        self._listeners: list[TerminalListener] = []
        self._stop = threading.Event()
        self._wakeup = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_sweep_at: datetime | None = None
        self._last_heartbeat_at: datetime | None = None

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Call ``listener`` after every terminal write this scheduler makes."""

        self._listeners.append(listener)

    @property
    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def tick(self, now: datetime | None = None) -> SchedulerTickSummary:
        """One scheduling pass: sweep stale jobs, then fill free worker slots."""

        now = now or utc_now()
        summary = SchedulerTickSummary()
        summary.recovered = self._sweep_stale(now)
        self._heartbeat_in_flight(now)

        free_slots = self.concurrency_limit - self.in_flight_count
        if free_slots > 0:
            for job in self.repository.list_queued(limit=free_slots, now=now):
                claimed = self.repository.claim_job(job.job_id, worker_id=self.worker_id)
                if claimed is None:
                    continue
                self._publish(claimed, message="Started")
                self._submit(claimed)
                summary.claimed += 1
        summary.in_flight = self.in_flight_count
        return summary

    def run_until_idle(self, *, now: datetime | None = None, max_rounds: int = 100) -> int:
        """Tick and wait until nothing is runnable or running; returns jobs claimed."""

        claimed_total = 0
        for _ in range(max_rounds):
            summary = self.tick(now=now)
            claimed_total += summary.claimed
            self.wait_idle()
            if summary.claimed == 0 and summary.in_flight == 0:
                break
        return claimed_total

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout=timeout)

    def wake(self) -> None:
        """Cut the current poll wait short, e.g. after an enqueue."""

        self._wakeup.set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="jobflow-scheduler")
        self._thread.start()
        logger.info("Scheduler %s started", self.worker_id)

    def stop(self, *, wait: bool = True, timeout: float = 15.0) -> None:
        self._stop.set()
        self._wakeup.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        if wait:
            self.wait_idle(timeout=timeout)
        logger.info("Scheduler %s stopped", self.worker_id)

    def shutdown(self) -> None:
        """Stop polling, cancel in-flight jobs cooperatively and free the pool."""

        self.stop(wait=False)
        with self._lock:
            tokens = [entry.token for entry in self._in_flight.values()]
        for token in tokens:
            token.cancel()
        self._executor.shutdown(wait=True)

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued job now, or ask a running job to stop.

        Returns ``False`` when the job is already terminal.
        """

        job = self.repository.require_job(job_id)
        if job.status == JobStatus.QUEUED:
            if self.repository.cancel_queued_job(job_id):
                self._after_terminal(job_id, message="Cancelled")
                return True
            job = self.repository.require_job(job_id)

        if job.status == JobStatus.RUNNING:
            requested = self.repository.request_cancel(job_id)
            with self._lock:
                entry = self._in_flight.get(job_id)
            if entry is not None:
                entry.token.cancel()
            if requested:
                self._publish(
                    self.repository.require_job(job_id),
                    message="Cancellation requested",
                )
            return True
        return False

    def execute(self, job: JobView, token: CancellationToken | None = None) -> None:
        """Run one claimed job to a terminal or re-queued state."""

        token = token or self._new_token(job.job_id)
        try:
            processor = self.registry.resolve(job)
            payload = processor.validate_payload(job)
            context = ProcessorContext(
                job=job,
                repository=self.repository,
                filesystem=self.filesystem,
                model_settings=job.model_settings
                or resolve_model_settings(self.model_defaults, job.task_type),
                token=token,
                chat=self.chat,
            )
            context.checkpoint("start")
            logger.info("Job %s (%s) running with %s", job.job_id, job.task_type, processor.name)
            result = processor.process(payload, context)
            context.checkpoint("finalize")
        except JobCancelledError as error:
            self._finalize_cancelled(job, reason=str(error))
        except Exception as error:  # noqa: BLE001
            if token.cancelled:
                self._finalize_cancelled(job, reason=f"Cancelled after error: {error}")
            else:
                self._handle_failure(job, error)
        else:
            self._finalize_completed(job, result)

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                summary = self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
                self._stop.wait(timeout=5)
                continue
            if summary.claimed == 0:
                self._wakeup.wait(timeout=self.poll_interval_seconds)
                self._wakeup.clear()

    def _new_token(self, job_id: str) -> CancellationToken:
        return CancellationToken(
            job_id,
            poll=partial(self.repository.is_cancel_requested, job_id),
        )

    def _submit(self, job: JobView) -> None:
        token = self._new_token(job.job_id)
        with self._lock:
            future = self._executor.submit(self.execute, job, token)
            self._in_flight[job.job_id] = _InFlight(job_id=job.job_id, future=future, token=token)
        future.add_done_callback(partial(self._on_done, job.job_id))

    def _on_done(self, job_id: str, future: Future[None]) -> None:
        error = future.exception()
        if error is not None:
            logger.error("Job %s worker crashed", job_id, exc_info=error)
        with self._idle:
            self._in_flight.pop(job_id, None)
            self._idle.notify_all()

    def _sweep_stale(self, now: datetime) -> int:
        if self.stale_after_seconds <= 0:
            return 0
        if (
            self._last_sweep_at is not None
            and abs((now - self._last_sweep_at).total_seconds()) < self.sweep_interval_seconds
        ):
            return 0
        self._last_sweep_at = now
        with self._lock:
            exclude = list(self._in_flight)
        recovered = self.repository.recover_stale_running_jobs(
            stale_after=timedelta(seconds=self.stale_after_seconds),
            max_retries=self.retry_policy.max_retries,
            exclude_ids=exclude,
            now=now,
        )
        for job in recovered:
            self._publish(job, message=job.error_message)
            if job.is_terminal:
                self._notify_listeners(job)
        return len(recovered)

    def _heartbeat_in_flight(self, now: datetime) -> None:
        interval = max(1.0, self.stale_after_seconds / 4)
        if (
            self._last_heartbeat_at is not None
            and abs((now - self._last_heartbeat_at).total_seconds()) < interval
        ):
            return
        self._last_heartbeat_at = now
        with self._lock:
            job_ids = list(self._in_flight)
        self.repository.touch_jobs(job_ids)

    def _finalize_completed(self, job: JobView, result: ProcessorResult) -> None:
        metadata_patch = dict(result.metadata_patch)
        if result.usage is not None:
            metadata_patch["usage"] = result.usage.to_metadata()
        changed = self.repository.complete_job(
            job.job_id,
            result=result.output,
            metadata_patch=metadata_patch or None,
        )
        if not changed:
            logger.warning("Job %s left running state before completion was recorded", job.job_id)
            return
        logger.info("Job %s completed", job.job_id)
        self._after_terminal(job.job_id, message="Completed")

    def _finalize_cancelled(self, job: JobView, *, reason: str) -> None:
        if self.repository.cancel_running_job(job.job_id, reason=reason):
            logger.info("Job %s cancelled: %s", job.job_id, reason)
            self._after_terminal(job.job_id, message="Cancelled")

    def _handle_failure(self, job: JobView, error: Exception) -> None:
        decision = self.retry_policy.decide(error, retry_count=job.retry_count)
        message = _error_message(error)
        now = utc_now()
        history = _retry_history(job, decision=decision, message=message, at=now)
        details = decision.classification.to_event_details()

        if decision.retry:
            run_after = now + timedelta(seconds=decision.delay_seconds)
            changed = self.repository.schedule_retry(
                job.job_id,
                run_after=run_after,
                retry_count=decision.retry_count,
                failure_class=decision.failure_class,
                error_message=message,
                metadata_patch={
                    "retry_history": history,
                    "next_retry_at": run_after.isoformat(),
                },
                details=details,
            )
            if changed:
                status_message = (
                    f"Retrying {decision.retry_count}/{self.retry_policy.max_retries} "
                    f"in {decision.delay_seconds:g}s: {message}"
                )
                logger.warning("Job %s failed, %s", job.job_id, status_message)
                self._publish(self.repository.require_job(job.job_id), message=status_message)
            return

        final_message = message
        if decision.classification.retryable:
            final_message = f"Failed after {decision.retry_count} retries: {message}"
        changed = self.repository.fail_job(
            job.job_id,
            failure_class=decision.failure_class,
            error_message=final_message,
            metadata_patch={"retry_history": history, "next_retry_at": None},
            details=details,
        )
        if changed:
            logger.error("Job %s failed: %s", job.job_id, final_message)
            self._after_terminal(job.job_id, message=final_message)

    def _after_terminal(self, job_id: str, *, message: str) -> None:
        final = self.repository.require_job(job_id)
        self._publish(final, message=message)
        self._notify_listeners(final)

    def _notify_listeners(self, job: JobView) -> None:
        for listener in self._listeners:
            try:
                listener(job)
            except Exception:
                logger.exception("Terminal listener failed for job %s", job.job_id)

    def _publish(self, job: JobView, *, message: str | None) -> None:
        safe_publish(self.notifier, JOB_STATUS_TOPIC, job_status_event(job, message=message))


def _error_message(error: BaseException) -> str:
    text = str(error).strip()
    return f"{type(error).__name__}: {text}" if text else type(error).__name__


def _retry_history(
    job: JobView,
    *,
    decision: RetryDecision,
    message: str,
    at: datetime,
) -> list[dict[str, object]]:
    previous = job.metadata.get("retry_history")
    history = list(previous) if isinstance(previous, list) else []
    history.append(
        {
            "attempt": job.retry_count + 1,
            "at": at.isoformat(),
            "failure_class": decision.failure_class.value,
            "reason_code": decision.classification.reason_code,
            "retryable": decision.classification.retryable,
            "message": message,
        },
    )
    return history[-RETRY_HISTORY_LIMIT:]
