from __future__ import annotations

import allure
import pytest

from jobflow.errors import ConfigurationError, NoProcessorFoundError
from jobflow.jobs.models import JobCreate
from jobflow.jobs.payloads import RawPayload, TaskType, TextImprovementPayload
from jobflow.jobs.processors import TextImprovementProcessor, build_default_registry
from jobflow.jobs.registry import JobRegistry

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Processor Registry"),
]


def test_default_registry_covers_every_builtin_task_type() -> None:
    registry = build_default_registry()

    assert registry.task_types() == frozenset(task_type.value for task_type in TaskType)
    assert len(registry) == len(TaskType)
    assert "text_improvement" in registry
    assert "mystery" not in registry


def test_duplicate_task_type_is_rejected() -> None:
    registry = JobRegistry([TextImprovementProcessor()])

    with pytest.raises(ConfigurationError, match="already handled"):
        registry.register(TextImprovementProcessor())


def test_resolve_by_task_type(repository) -> None:
    registry = build_default_registry()
    known = repository.create_job(
        JobCreate(task_type="text_improvement", payload=TextImprovementPayload("helo")),
    )
    unknown = repository.create_job(
        JobCreate(task_type="mystery", payload=RawPayload(task_type="mystery")),
    )

    assert isinstance(registry.resolve(known), TextImprovementProcessor)
    with pytest.raises(NoProcessorFoundError, match="mystery"):
        registry.resolve(unknown)
