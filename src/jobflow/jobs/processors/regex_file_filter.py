"""Apply pattern groups to the project tree locally, without model calls."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from jobflow.errors import ValidationError
from jobflow.jobs.payloads import PatternGroup, RegexFileFilterPayload, TaskType
from jobflow.jobs.processor import JobProcessor, ProcessorContext, ProcessorResult

logger = logging.getLogger(__name__)

MAX_CONTENT_SCAN_BYTES = 50 * 1024 * 1024
PROGRESS_EVERY_FILES = 200


class RegexFileFilterProcessor(JobProcessor):
    name = "regex-file-filter"
    task_type = TaskType.REGEX_FILE_FILTER.value
    payload_type = RegexFileFilterPayload

    def process(
        self,
        payload: RegexFileFilterPayload,
        context: ProcessorContext,
    ) -> ProcessorResult:
        root = Path(payload.project_directory)
        files = context.filesystem.list_files(root, excluded=payload.excluded_paths)
        compiled = [_compile_group(group) for group in payload.pattern_groups]
        contents: dict[str, str | None] = {}
        skipped: set[str] = set()
        matched: list[str] = []
        groups_output: list[dict[str, object]] = []

        for group_index, (group, path_re, content_re, negative_re) in enumerate(compiled):
            context.checkpoint(f"group_{group_index}")
            context.report_progress(
                f"Filtering files for {group.title!r}",
                current=group_index,
                total=len(compiled),
            )
            group_files: list[str] = []
            for file_index, relative in enumerate(files):
                if file_index and file_index % PROGRESS_EVERY_FILES == 0:
                    context.checkpoint(f"group_{group_index}_file_{file_index}")
                if path_re is not None and path_re.search(relative) is None:
                    continue
                if negative_re is not None and negative_re.search(relative) is not None:
                    continue
                if content_re is not None:
                    text = _read_scannable(context, root, relative, contents, skipped)
                    if text is None or content_re.search(text) is None:
                        continue
                group_files.append(relative)
            groups_output.append({"title": group.title, "files": group_files})
            matched.extend(path for path in group_files if path not in matched)

        logger.info(
            "Regex filter matched %d of %d files (%d skipped)",
            len(matched),
            len(files),
            len(skipped),
        )
        return ProcessorResult(
            output={
                "matched_files": matched,
                "groups": groups_output,
                "scanned_files": len(files),
                "skipped_files": sorted(skipped),
            },
            metadata_patch={
                "progress": {"message": "Filtering finished", "current": len(compiled)},
            },
        )


def _compile_group(
    group: PatternGroup,
) -> tuple[PatternGroup, re.Pattern[str] | None, re.Pattern[str] | None, re.Pattern[str] | None]:
    try:
        path_re = re.compile(group.path_pattern, re.IGNORECASE) if group.path_pattern else None
        content_re = (
            re.compile(group.content_pattern, re.MULTILINE) if group.content_pattern else None
        )
        negative_re = (
            re.compile(group.negative_path_pattern, re.IGNORECASE)
            if group.negative_path_pattern
            else None
        )
    except re.error as error:
        raise ValidationError(f"Invalid regex in pattern group {group.title!r}: {error}") from error
    return group, path_re, content_re, negative_re


def _read_scannable(
    context: ProcessorContext,
    root: Path,
    relative: str,
    cache: dict[str, str | None],
    skipped: set[str],
) -> str | None:
    if relative in cache:
        return cache[relative]
    text: str | None = None
    filesystem = context.filesystem
    try:
        if filesystem.file_size(root, relative) > MAX_CONTENT_SCAN_BYTES:
            skipped.add(relative)
        elif filesystem.is_binary(root, relative):
            skipped.add(relative)
        else:
            text = filesystem.read_text(root, relative)
    except OSError as error:
        logger.debug("Cannot read %s: %s", relative, error)
        skipped.add(relative)
    cache[relative] = text
    return text
