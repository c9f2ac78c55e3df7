"""Processor lookup by task type."""

from __future__ import annotations

import logging

from jobflow.errors import ConfigurationError, NoProcessorFoundError
from jobflow.jobs.models import JobView
from jobflow.jobs.processor import JobProcessor

logger = logging.getLogger(__name__)


class JobRegistry:
    """Ordered processor set; at most one processor per task type."""

    def __init__(self, processors: list[JobProcessor] | None = None) -> None:
        self._processors: list[JobProcessor] = []
        for processor in processors or []:
            self.register(processor)

    def register(self, processor: JobProcessor) -> None:
        for existing in self._processors:
            if existing.task_type == processor.task_type:
                raise ConfigurationError(
                    f"Task type {processor.task_type!r} is already handled by {existing.name}; "
                    f"refusing to register {processor.name}",
                )
        self._processors.append(processor)
        logger.debug("Registered processor %s for %s", processor.name, processor.task_type)

    def resolve(self, job: JobView) -> JobProcessor:
        """First registered processor whose ``can_handle`` accepts the job."""

        for processor in self._processors:
            if processor.can_handle(job):
                return processor
        raise NoProcessorFoundError(job.task_type)

    def task_types(self) -> frozenset[str]:
        return frozenset(processor.task_type for processor in self._processors)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self.task_types()

    def __len__(self) -> int:
        return len(self._processors)
