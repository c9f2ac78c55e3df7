"""Workflow definitions: ordered stages with dependencies, loaded and validated once."""

from __future__ import annotations

import json
import logging
from collections.abc import Collection, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from jobflow.errors import WorkflowDefinitionError
from jobflow.workflows.builtin import EMBEDDED_WORKFLOWS

logger = logging.getLogger(__name__)

MAX_TEMPERATURE = 2.0


@dataclass(slots=True, frozen=True)
class StageDefinition:
    """One stage: the task type it runs, what it waits for, and model hints."""

    stage_name: str
    task_type: str
    dependencies: tuple[str, ...] = ()
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(slots=True, frozen=True)
class WorkflowDefinition:
    name: str
    stages: tuple[StageDefinition, ...]
    description: str = ""

    @property
    def stage_names(self) -> tuple[str, ...]:
        return tuple(stage.stage_name for stage in self.stages)

    @property
    def first_stage(self) -> StageDefinition:
        return self.stages[0]

    def stage(self, stage_name: str) -> StageDefinition:
        for stage in self.stages:
            if stage.stage_name == stage_name:
                return stage
        raise WorkflowDefinitionError(f"Workflow {self.name!r} has no stage {stage_name!r}")


def parse_workflow_definition(raw: Any, *, source: str = "<memory>") -> WorkflowDefinition:
    """Build a definition from its JSON object form."""

    if not isinstance(raw, Mapping):
        raise WorkflowDefinitionError(f"{source}: workflow definition must be an object")
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise WorkflowDefinitionError(f"{source}: workflow name must be a non-empty string")
    description = raw.get("description", "")
    if not isinstance(description, str):
        raise WorkflowDefinitionError(f"{source}: description must be a string")
    stages_raw = raw.get("stages")
    if not isinstance(stages_raw, list):
        raise WorkflowDefinitionError(f"{source}: workflow {name!r} stages must be a list")
    stages = tuple(
        _parse_stage(item, source=f"{source}: workflow {name!r} stage #{index + 1}")
        for index, item in enumerate(stages_raw)
    )
    return WorkflowDefinition(name=name.strip(), stages=stages, description=description)


def validate_workflow_definition(
    definition: WorkflowDefinition,
    *,
    known_task_types: Collection[str] | None = None,
) -> None:
    """Reject empty, duplicate, unknown or forward-referencing stages.

    Dependencies may only name earlier stages, which also rules out cycles.
    """

    if not definition.stages:
        raise WorkflowDefinitionError(f"Workflow {definition.name!r} has no stages")
    seen: set[str] = set()
    for stage in definition.stages:
        if stage.stage_name in seen:
            raise WorkflowDefinitionError(
                f"Workflow {definition.name!r} has duplicate stage name {stage.stage_name!r}",
            )
        if known_task_types is not None and stage.task_type not in known_task_types:
            raise WorkflowDefinitionError(
                f"Workflow {definition.name!r} stage {stage.stage_name!r} uses unknown "
                f"task type {stage.task_type!r}",
            )
        for dependency in stage.dependencies:
            if dependency == stage.stage_name:
                raise WorkflowDefinitionError(
                    f"Workflow {definition.name!r} stage {stage.stage_name!r} depends on itself",
                )
            if dependency not in seen:
                raise WorkflowDefinitionError(
                    f"Workflow {definition.name!r} stage {stage.stage_name!r} depends on "
                    f"{dependency!r}, which is not an earlier stage",
                )
        if stage.temperature is not None and not 0.0 <= stage.temperature <= MAX_TEMPERATURE:
            raise WorkflowDefinitionError(
                f"Workflow {definition.name!r} stage {stage.stage_name!r} temperature "
                f"must be within [0, {MAX_TEMPERATURE:g}]",
            )
        if stage.max_tokens is not None and stage.max_tokens <= 0:
            raise WorkflowDefinitionError(
                f"Workflow {definition.name!r} stage {stage.stage_name!r} max_tokens must be > 0",
            )
        seen.add(stage.stage_name)


def load_workflow_definitions(
    directory: Path | None,
    *,
    known_task_types: Collection[str] | None = None,
) -> dict[str, WorkflowDefinition]:
    """Load ``*.json`` definitions from ``directory``, else the embedded set."""

    definitions: dict[str, WorkflowDefinition] = {}
    files = sorted(directory.glob("*.json")) if directory is not None and directory.is_dir() else []
    if files:
        for path in files:
            try:
                raw = json.loads(path.read_text("utf-8"))
            except json.JSONDecodeError as error:
                raise WorkflowDefinitionError(f"{path}: invalid JSON: {error}") from error
            definition = parse_workflow_definition(raw, source=str(path))
            _add_definition(definitions, definition, known_task_types=known_task_types)
        logger.info("Loaded %d workflow definitions from %s", len(definitions), directory)
        return definitions

    for raw in EMBEDDED_WORKFLOWS:
        definition = parse_workflow_definition(raw, source="embedded")
        _add_definition(definitions, definition, known_task_types=known_task_types)
    logger.debug("Using %d embedded workflow definitions", len(definitions))
    return definitions


def _add_definition(
    definitions: dict[str, WorkflowDefinition],
    definition: WorkflowDefinition,
    *,
    known_task_types: Collection[str] | None,
) -> None:
    validate_workflow_definition(definition, known_task_types=known_task_types)
    if definition.name in definitions:
        raise WorkflowDefinitionError(f"Duplicate workflow definition name {definition.name!r}")
    definitions[definition.name] = definition


def _parse_stage(raw: Any, *, source: str) -> StageDefinition:
    if not isinstance(raw, Mapping):
        raise WorkflowDefinitionError(f"{source}: stage must be an object")
    stage_name = raw.get("stage_name")
    task_type = raw.get("task_type")
    if not isinstance(stage_name, str) or not stage_name.strip():
        raise WorkflowDefinitionError(f"{source}: stage_name must be a non-empty string")
    if not isinstance(task_type, str) or not task_type.strip():
        raise WorkflowDefinitionError(f"{source}: task_type must be a non-empty string")
    dependencies = raw.get("dependencies", [])
    if not isinstance(dependencies, list) or not all(
        isinstance(item, str) for item in dependencies
    ):
        raise WorkflowDefinitionError(f"{source}: dependencies must be a list of stage names")
    model = raw.get("model")
    if model is not None and (not isinstance(model, str) or not model.strip()):
        raise WorkflowDefinitionError(f"{source}: model must be a non-empty string")
    temperature = raw.get("temperature")
    if temperature is not None and (
        isinstance(temperature, bool) or not isinstance(temperature, int | float)
    ):
        raise WorkflowDefinitionError(f"{source}: temperature must be a number")
    max_tokens = raw.get("max_tokens")
    if max_tokens is not None and (isinstance(max_tokens, bool) or not isinstance(max_tokens, int)):
        raise WorkflowDefinitionError(f"{source}: max_tokens must be an integer")
    return StageDefinition(
        stage_name=stage_name.strip(),
        task_type=task_type.strip(),
        dependencies=tuple(dependencies),
        model=model,
        temperature=float(temperature) if temperature is not None else None,
        max_tokens=max_tokens,
    )
