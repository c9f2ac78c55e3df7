"""Typed job payloads, one variant per task type.

Payloads are decoded once at the storage boundary. Stored rows whose payload
no longer decodes surface as ``MalformedPayload`` so the job fails fast
instead of crashing the worker.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, ClassVar

from jobflow.errors import ValidationError


class TaskType(str, Enum):
    """Task types with a built-in payload schema."""

    REGEX_GENERATION = "regex_generation"
    REGEX_FILE_FILTER = "regex_file_filter"
    EXTENDED_PATH_FINDER = "extended_path_finder"
    FILE_RELEVANCE_ASSESSMENT = "file_relevance_assessment"
    IMPLEMENTATION_PLAN = "implementation_plan"
    TEXT_IMPROVEMENT = "text_improvement"


@dataclass(slots=True, frozen=True)
class PatternGroup:
    """One titled group of path/content regexes proposed for a task."""

    title: str
    path_pattern: str | None = None
    content_pattern: str | None = None
    negative_path_pattern: str | None = None

    @classmethod
    def from_dict(cls, raw: Any) -> PatternGroup:
        if not isinstance(raw, Mapping):
            raise ValidationError("pattern group must be an object")
        group = cls(
            title=_optional_str(raw, "title") or "Untitled",
            path_pattern=_optional_str(raw, "path_pattern"),
            content_pattern=_optional_str(raw, "content_pattern"),
            negative_path_pattern=_optional_str(raw, "negative_path_pattern"),
        )
        if group.path_pattern is None and group.content_pattern is None:
            raise ValidationError(
                f"pattern group {group.title!r} needs a path_pattern or content_pattern",
            )
        return group


@dataclass(slots=True, frozen=True)
class RegexGenerationPayload:
    task_type: ClassVar[str] = TaskType.REGEX_GENERATION.value

    task_description: str
    project_directory: str
    directory_tree: str | None = None
    excluded_paths: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> RegexGenerationPayload:
        return cls(
            task_description=_required_str(raw, "task_description"),
            project_directory=_required_str(raw, "project_directory"),
            directory_tree=_optional_str(raw, "directory_tree"),
            excluded_paths=_str_tuple(raw, "excluded_paths"),
        )


@dataclass(slots=True, frozen=True)
class RegexFileFilterPayload:
    task_type: ClassVar[str] = TaskType.REGEX_FILE_FILTER.value

    task_description: str
    project_directory: str
    pattern_groups: tuple[PatternGroup, ...]
    excluded_paths: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> RegexFileFilterPayload:
        groups_raw = raw.get("pattern_groups")
        if not isinstance(groups_raw, list | tuple) or not groups_raw:
            raise ValidationError("pattern_groups must be a non-empty list")
        return cls(
            task_description=_required_str(raw, "task_description"),
            project_directory=_required_str(raw, "project_directory"),
            pattern_groups=tuple(PatternGroup.from_dict(item) for item in groups_raw),
            excluded_paths=_str_tuple(raw, "excluded_paths"),
        )


@dataclass(slots=True, frozen=True)
class ExtendedPathFinderPayload:
    task_type: ClassVar[str] = TaskType.EXTENDED_PATH_FINDER.value

    task_description: str
    project_directory: str
    initial_paths: tuple[str, ...] = ()
    excluded_paths: tuple[str, ...] = ()
    max_files_with_content: int = 20

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ExtendedPathFinderPayload:
        return cls(
            task_description=_required_str(raw, "task_description"),
            project_directory=_required_str(raw, "project_directory"),
            initial_paths=_str_tuple(raw, "initial_paths"),
            excluded_paths=_str_tuple(raw, "excluded_paths"),
            max_files_with_content=_positive_int(raw, "max_files_with_content", default=20),
        )


@dataclass(slots=True, frozen=True)
class FileRelevanceAssessmentPayload:
    task_type: ClassVar[str] = TaskType.FILE_RELEVANCE_ASSESSMENT.value

    task_description: str
    project_directory: str
    candidate_files: tuple[str, ...] = ()
    chunk_token_limit: int = 60_000

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> FileRelevanceAssessmentPayload:
        return cls(
            task_description=_required_str(raw, "task_description"),
            project_directory=_required_str(raw, "project_directory"),
            candidate_files=_str_tuple(raw, "candidate_files"),
            chunk_token_limit=_positive_int(raw, "chunk_token_limit", default=60_000),
        )


@dataclass(slots=True, frozen=True)
class ImplementationPlanPayload:
    task_type: ClassVar[str] = TaskType.IMPLEMENTATION_PLAN.value

    task_description: str
    project_directory: str
    relevant_files: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> ImplementationPlanPayload:
        return cls(
            task_description=_required_str(raw, "task_description"),
            project_directory=_required_str(raw, "project_directory"),
            relevant_files=_str_tuple(raw, "relevant_files"),
        )


@dataclass(slots=True, frozen=True)
class TextImprovementPayload:
    task_type: ClassVar[str] = TaskType.TEXT_IMPROVEMENT.value

    text_to_improve: str
    language: str | None = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> TextImprovementPayload:
        return cls(
            text_to_improve=_required_str(raw, "text_to_improve"),
            language=_optional_str(raw, "language"),
        )


@dataclass(slots=True, frozen=True)
class RawPayload:
    """Opaque payload for task types without a built-in schema."""

    task_type: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class MalformedPayload:
    """Stored payload that failed to decode."""

    task_type: str
    raw: str
    reason: str


JobPayload = (
    RegexGenerationPayload
    | RegexFileFilterPayload
    | ExtendedPathFinderPayload
    | FileRelevanceAssessmentPayload
    | ImplementationPlanPayload
    | TextImprovementPayload
    | RawPayload
    | MalformedPayload
)

PAYLOAD_TYPES: dict[str, Any] = {
    payload_type.task_type: payload_type
    for payload_type in (
        RegexGenerationPayload,
        RegexFileFilterPayload,
        ExtendedPathFinderPayload,
        FileRelevanceAssessmentPayload,
        ImplementationPlanPayload,
        TextImprovementPayload,
    )
}


def decode_payload(task_type: str, raw: Mapping[str, Any]) -> JobPayload:
    """Build the typed payload for ``task_type`` or raise ``ValidationError``."""

    if not isinstance(raw, Mapping):
        raise ValidationError(f"payload for {task_type!r} must be an object")
    payload_type = PAYLOAD_TYPES.get(task_type)
    if payload_type is None:
        return RawPayload(task_type=task_type, data=dict(raw))
    return payload_type.from_dict(raw)


def encode_payload(payload: JobPayload) -> str:
    """Serialize a payload for storage."""

    if isinstance(payload, MalformedPayload):
        return payload.raw
    if isinstance(payload, RawPayload):
        body: dict[str, Any] = payload.data
    else:
        body = asdict(payload)
    return json.dumps(body, ensure_ascii=False, sort_keys=True)


def load_stored_payload(task_type: str, payload_json: str) -> JobPayload:
    """Decode a stored payload, degrading to ``MalformedPayload`` on error."""

    try:
        raw = json.loads(payload_json)
        return decode_payload(task_type, raw)
    except (json.JSONDecodeError, ValidationError) as error:
        return MalformedPayload(task_type=task_type, raw=payload_json, reason=str(error))


def _required_str(raw: Mapping[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} must be a non-empty string")
    return value


def _optional_str(raw: Mapping[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string")
    return value if value.strip() else None


def _str_tuple(raw: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = raw.get(key)
    if value is None:
        return ()
    if not isinstance(value, list | tuple):
        raise ValidationError(f"{key} must be a list of strings")
    items: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(f"{key} must contain only strings")
        if item.strip():
            items.append(item)
    return tuple(items)


def _positive_int(raw: Mapping[str, Any], key: str, *, default: int) -> int:
    value = raw.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationError(f"{key} must be a positive integer")
    return value
