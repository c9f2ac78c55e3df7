"""Build a stage's payload from workflow params and its dependencies' outputs."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from jobflow.jobs.payloads import TaskType
from jobflow.workflows.definitions import StageDefinition

# Output keys that carry file lists, most refined first.
_PATH_OUTPUT_KEYS: tuple[str, ...] = (
    "relevant_files",
    "all_paths",
    "matched_files",
    "initial_paths",
)
_COMMON_PARAM_KEYS: tuple[str, ...] = ("task_description", "project_directory", "excluded_paths")


def build_stage_payload(
    stage: StageDefinition,
    params: Mapping[str, Any],
    dependency_outputs: Sequence[Any],
) -> dict[str, Any]:
    """Raw payload for ``stage``; decoding validates it."""

    payload: dict[str, Any] = {key: params[key] for key in _COMMON_PARAM_KEYS if key in params}
    task_type = stage.task_type

    if task_type == TaskType.REGEX_GENERATION.value:
        if "directory_tree" in params:
            payload["directory_tree"] = params["directory_tree"]
    elif task_type == TaskType.REGEX_FILE_FILTER.value:
        payload["pattern_groups"] = _pattern_groups(dependency_outputs) or params.get(
            "pattern_groups",
            [],
        )
    elif task_type == TaskType.EXTENDED_PATH_FINDER.value:
        payload["initial_paths"] = _paths(dependency_outputs) or list(
            params.get("initial_paths", []),
        )
        if "max_files_with_content" in params:
            payload["max_files_with_content"] = params["max_files_with_content"]
    elif task_type == TaskType.FILE_RELEVANCE_ASSESSMENT.value:
        payload["candidate_files"] = _paths(dependency_outputs) or list(
            params.get("candidate_files", []),
        )
        if "chunk_token_limit" in params:
            payload["chunk_token_limit"] = params["chunk_token_limit"]
    elif task_type == TaskType.IMPLEMENTATION_PLAN.value:
        payload["relevant_files"] = _paths(dependency_outputs) or list(
            params.get("relevant_files", []),
        )
    elif task_type == TaskType.TEXT_IMPROVEMENT.value:
        payload = {key: params[key] for key in ("text_to_improve", "language") if key in params}
        improved = _last_text(dependency_outputs)
        if improved is not None:
            payload["text_to_improve"] = improved
    else:
        payload = dict(params)
        payload["dependency_outputs"] = list(dependency_outputs)
    return payload


def _pattern_groups(outputs: Sequence[Any]) -> list[Any]:
    for output in reversed(outputs):
        if isinstance(output, Mapping) and isinstance(output.get("pattern_groups"), list):
            return list(output["pattern_groups"])
    return []


def _paths(outputs: Sequence[Any]) -> list[str]:
    collected: list[str] = []
    seen: set[str] = set()
    for output in outputs:
        if not isinstance(output, Mapping):
            continue
        for key in _PATH_OUTPUT_KEYS:
            values = output.get(key)
            if not isinstance(values, list):
                continue
            for value in values:
                if isinstance(value, str) and value not in seen:
                    seen.add(value)
                    collected.append(value)
            break
    return collected


def _last_text(outputs: Sequence[Any]) -> str | None:
    for output in reversed(outputs):
        if isinstance(output, Mapping) and isinstance(output.get("improved_text"), str):
            return output["improved_text"]
    return None
