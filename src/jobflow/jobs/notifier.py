"""Best-effort event publication for UI consumers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from jobflow.jobs.models import JobView

logger = logging.getLogger(__name__)

JOB_STATUS_TOPIC = "job.status"
WORKFLOW_STAGE_TOPIC = "workflow.stage"
WORKFLOW_STATUS_TOPIC = "workflow.status"


class EventNotifier(Protocol):
    """Sink for job and workflow events."""

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        """Deliver one event; must not block for long."""


class LoggingNotifier:
    """Writes every event to the module logger."""

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        logger.info("%s %s", topic, dict(payload))


@dataclass(slots=True, frozen=True)
class PublishedEvent:
    topic: str
    payload: dict[str, Any]


class InMemoryNotifier:
    """Keeps events in memory; handy for embedding and tests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[PublishedEvent] = []

    def publish(self, topic: str, payload: Mapping[str, Any]) -> None:
        with self._lock:
            self._events.append(PublishedEvent(topic=topic, payload=dict(payload)))

    @property
    def events(self) -> list[PublishedEvent]:
        with self._lock:
            return list(self._events)

    def payloads(self, topic: str) -> list[dict[str, Any]]:
        return [event.payload for event in self.events if event.topic == topic]


def job_status_event(job: JobView, *, message: str | None = None) -> dict[str, Any]:
    """Event body for a job status change."""

    return {
        "job_id": job.job_id,
        "task_type": job.task_type,
        "status": job.status.value,
        "retry_count": job.retry_count,
        "workflow_id": job.workflow.workflow_id if job.workflow is not None else None,
        "stage_name": job.workflow.stage_name if job.workflow is not None else None,
        "session_id": job.session_id,
        "message": message,
        "error_message": job.error_message,
    }


def safe_publish(notifier: EventNotifier, topic: str, payload: Mapping[str, Any]) -> None:
    """Publish without letting a broken sink affect job execution."""

    try:
        notifier.publish(topic, payload)
    except Exception:
        logger.exception("Event notifier failed for topic %s", topic)
