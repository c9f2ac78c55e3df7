"""Ask the model for path/content regex groups that locate files for a task."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict
from pathlib import Path
from typing import Any

from jobflow.errors import SerializationError
from jobflow.jobs.payloads import PatternGroup, RegexGenerationPayload, TaskType
from jobflow.jobs.processor import JobProcessor, ProcessorContext, ProcessorResult
from jobflow.jobs.processors._common import ask, parse_json_response, sanitize_regex
from jobflow.providers.filesystem import directory_tree

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You help locate source files relevant to a development task.
Return JSON only: {"pattern_groups": [{"title": str, "path_pattern": str | null,
"content_pattern": str | null, "negative_path_pattern": str | null}]}.
Patterns are Python regular expressions. path_pattern is matched against
project-relative POSIX paths, content_pattern against file contents.
Every group needs a path_pattern or a content_pattern."""


class RegexGenerationProcessor(JobProcessor):
    name = "regex-generation"
    task_type = TaskType.REGEX_GENERATION.value
    payload_type = RegexGenerationPayload

    def process(
        self,
        payload: RegexGenerationPayload,
        context: ProcessorContext,
    ) -> ProcessorResult:
        tree = payload.directory_tree
        if tree is None:
            files = context.filesystem.list_files(
                Path(payload.project_directory),
                excluded=payload.excluded_paths,
            )
            tree = directory_tree(files)
        context.report_progress("Generating search patterns")

        text, usage = ask(
            context,
            system_prompt=SYSTEM_PROMPT,
            user_prompt=f"Task:\n{payload.task_description}\n\nProject structure:\n{tree}",
        )
        groups, dropped = _parse_groups(parse_json_response(text))
        if not groups:
            raise SerializationError("Model returned no usable pattern groups")
        if dropped:
            logger.info("Dropped %d unusable pattern groups", dropped)
        return ProcessorResult(
            output={
                "pattern_groups": [asdict(group) for group in groups],
                "dropped_groups": dropped,
            },
            usage=usage,
        )


def _parse_groups(parsed: Any) -> tuple[list[PatternGroup], int]:
    raw_groups = parsed
    if isinstance(parsed, Mapping):
        raw_groups = parsed.get("pattern_groups", parsed.get("patternGroups"))
    if not isinstance(raw_groups, list):
        raise SerializationError("Model response has no pattern_groups list")

    groups: list[PatternGroup] = []
    dropped = 0
    for index, item in enumerate(raw_groups):
        if not isinstance(item, Mapping):
            dropped += 1
            continue
        path_pattern = sanitize_regex(_text(item, "path_pattern", "pathPattern"))
        content_pattern = sanitize_regex(_text(item, "content_pattern", "contentPattern"))
        if path_pattern is None and content_pattern is None:
            dropped += 1
            continue
        groups.append(
            PatternGroup(
                title=_text(item, "title") or f"Group {index + 1}",
                path_pattern=path_pattern,
                content_pattern=content_pattern,
                negative_path_pattern=sanitize_regex(
                    _text(item, "negative_path_pattern", "negativePathPattern"),
                ),
            ),
        )
    return groups, dropped


def _text(item: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return None
