"""Processor contract and the per-job execution context."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from jobflow.errors import ConfigurationError, JobCancelledError, ValidationError
from jobflow.jobs.models import JobView, ModelSettings
from jobflow.jobs.payloads import JobPayload, MalformedPayload
from jobflow.providers.chat import ChatCompletionProvider, ChatMessage, ChatRequest, ChatUsage
from jobflow.providers.filesystem import FilesystemProvider

if TYPE_CHECKING:
    from jobflow.jobs.repository import JobRepository


class CancellationToken:
    """Cooperative cancellation flag checked by processors at checkpoints."""

    def __init__(self, job_id: str, *, poll: Callable[[], bool] | None = None) -> None:
        self.job_id = job_id
        self._event = threading.Event()
        self._poll = poll

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._poll is not None and self._poll():
            self._event.set()
            return True
        return False

    def raise_if_cancelled(self, checkpoint: str | None = None) -> None:
        if self.cancelled:
            raise JobCancelledError(self.job_id, checkpoint)


@dataclass(slots=True)
class ProcessorResult:
    """What a processor hands back to the scheduler."""

    output: Any
    metadata_patch: dict[str, Any] = field(default_factory=dict)
    usage: ChatUsage | None = None


@dataclass(slots=True)
class ProcessorContext:
    """Collaborators and progress hooks available while a job runs."""

    job: JobView
    repository: JobRepository
    filesystem: FilesystemProvider
    model_settings: ModelSettings
    token: CancellationToken
    chat: ChatCompletionProvider | None = None

    def checkpoint(self, name: str) -> None:
        self.token.raise_if_cancelled(name)

    def require_chat(self) -> ChatCompletionProvider:
        if self.chat is None:
            raise ConfigurationError(
                f"Task type {self.job.task_type!r} needs a chat provider but none is configured",
            )
        return self.chat

    def chat_request(self, messages: list[ChatMessage]) -> ChatRequest:
        return ChatRequest(
            messages=messages,
            model=self.model_settings.model,
            temperature=self.model_settings.temperature,
            max_tokens=self.model_settings.max_tokens,
            cancelled=lambda: self.token.cancelled,
        )

    def report_progress(
        self,
        message: str,
        *,
        current: int | None = None,
        total: int | None = None,
    ) -> None:
        """Publish a progress hint into job metadata for UI polling."""

        self.repository.patch_metadata(
            self.job.job_id,
            {"progress": {"message": message, "current": current, "total": total}},
        )

    def append_stream_chunk(self, chunk: str) -> None:
        self.repository.append_result(self.job.job_id, chunk)


class JobProcessor(ABC):
    """Executes jobs of one task type.

    The scheduler's claim moves the job to running before ``process`` is
    called; processors only raise classified errors and never write status.
    """

    name: ClassVar[str]
    task_type: ClassVar[str]
    payload_type: ClassVar[type]

    def can_handle(self, job: JobView) -> bool:
        return job.task_type == self.task_type

    def validate_payload(self, job: JobView) -> JobPayload:
        """Return the typed payload or raise ``ValidationError``."""

        payload = job.payload
        if isinstance(payload, MalformedPayload):
            raise ValidationError(f"Malformed {payload.task_type} payload: {payload.reason}")
        if not isinstance(payload, self.payload_type):
            raise ValidationError(
                f"{self.name} expects {self.payload_type.__name__}, "
                f"got {type(payload).__name__}",
            )
        return payload

    @abstractmethod
    def process(self, payload: Any, context: ProcessorContext) -> ProcessorResult:
        """Run the job and return its structured output."""
