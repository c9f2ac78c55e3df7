"""Widen an initial file set with model suggestions verified on disk."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from jobflow.jobs.payloads import ExtendedPathFinderPayload, TaskType
from jobflow.jobs.processor import JobProcessor, ProcessorContext, ProcessorResult
from jobflow.jobs.processors._common import (
    MAX_FILE_CONTENT_CHARS,
    ask,
    normalize_relative_path,
    parse_json_response,
    string_list,
)
from jobflow.providers.filesystem import directory_tree

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You extend a list of files relevant to a development task.
Given the project structure and some already-selected files, list other
project files that must be read or changed to complete the task, such as
callers, tests, configuration and type definitions.
Return JSON only: {"paths": ["relative/path", ...]}."""


class ExtendedPathFinderProcessor(JobProcessor):
    name = "extended-path-finder"
    task_type = TaskType.EXTENDED_PATH_FINDER.value
    payload_type = ExtendedPathFinderPayload

    def process(
        self,
        payload: ExtendedPathFinderPayload,
        context: ProcessorContext,
    ) -> ProcessorResult:
        root = Path(payload.project_directory)
        filesystem = context.filesystem
        files = filesystem.list_files(root, excluded=payload.excluded_paths)
        initial = [
            normalize_relative_path(path, payload.project_directory)
            for path in payload.initial_paths
        ]
        initial = [path for path in dict.fromkeys(initial) if filesystem.exists(root, path)]
        context.report_progress("Looking for related files", current=0, total=1)

        sections: list[str] = []
        for path in initial[: payload.max_files_with_content]:
            if filesystem.is_binary(root, path):
                continue
            content = filesystem.read_text(root, path)[:MAX_FILE_CONTENT_CHARS]
            sections.append(f"--- {path} ---\n{content}")
        listed_only = initial[payload.max_files_with_content :]

        user_prompt = "\n\n".join(
            part
            for part in (
                f"Task:\n{payload.task_description}",
                f"Project structure:\n{directory_tree(files)}",
                "Selected files:\n" + "\n\n".join(sections) if sections else "",
                "Also selected (content omitted):\n" + "\n".join(listed_only)
                if listed_only
                else "",
            )
            if part
        )
        text, usage = ask(context, system_prompt=SYSTEM_PROMPT, user_prompt=user_prompt)
        suggested = [
            normalize_relative_path(path, payload.project_directory)
            for path in _suggested_paths(parse_json_response(text))
        ]

        verified: list[str] = []
        unverified: list[str] = []
        for path in dict.fromkeys(suggested):
            if not path or path in initial:
                continue
            if filesystem.exists(root, path):
                verified.append(path)
            else:
                unverified.append(path)
        if unverified:
            logger.info("Discarded %d suggested paths that do not exist", len(unverified))
        return ProcessorResult(
            output={
                "initial_paths": initial,
                "verified_paths": verified,
                "unverified_paths": unverified,
                "all_paths": [*initial, *verified],
            },
            usage=usage,
        )


def _suggested_paths(parsed: Any) -> list[str]:
    if isinstance(parsed, list):
        return string_list(parsed)
    if isinstance(parsed, Mapping):
        for key in ("paths", "additional_paths", "files"):
            if key in parsed:
                return string_list(parsed[key])
    return []
