"""Let the model keep only the candidate files that matter, chunk by chunk."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from jobflow.jobs.payloads import FileRelevanceAssessmentPayload, TaskType
from jobflow.jobs.processor import JobProcessor, ProcessorContext, ProcessorResult
from jobflow.jobs.processors._common import (
    CHARS_PER_TOKEN,
    ask,
    chunk_by_budget,
    estimate_tokens,
    merge_usage,
    normalize_relative_path,
    parse_json_response,
    string_list,
)
from jobflow.providers.chat import ChatUsage

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You judge which files are relevant to a development task.
Only answer with paths from the provided files.
Return JSON only: {"relevant_files": ["relative/path", ...]}."""

PROMPT_OVERHEAD_TOKENS = 32


class FileRelevanceAssessmentProcessor(JobProcessor):
    name = "file-relevance-assessment"
    task_type = TaskType.FILE_RELEVANCE_ASSESSMENT.value
    payload_type = FileRelevanceAssessmentPayload

    def process(
        self,
        payload: FileRelevanceAssessmentPayload,
        context: ProcessorContext,
    ) -> ProcessorResult:
        root = Path(payload.project_directory)
        filesystem = context.filesystem
        max_chars = payload.chunk_token_limit * CHARS_PER_TOKEN

        documents: list[tuple[str, str]] = []
        for candidate in dict.fromkeys(payload.candidate_files):
            path = normalize_relative_path(candidate, payload.project_directory)
            if not filesystem.exists(root, path) or filesystem.is_binary(root, path):
                continue
            documents.append((path, filesystem.read_text(root, path)[:max_chars]))
        if not documents:
            return ProcessorResult(output={"relevant_files": [], "chunks": 0, "assessed_files": 0})

        chunks = chunk_by_budget(
            documents,
            lambda document: estimate_tokens(document[1]) + PROMPT_OVERHEAD_TOKENS,
            payload.chunk_token_limit,
        )
        relevant: set[str] = set()
        usage: ChatUsage | None = None
        for index, chunk in enumerate(chunks):
            context.checkpoint(f"chunk_{index}")
            context.report_progress(
                f"Assessing files {index + 1}/{len(chunks)}",
                current=index,
                total=len(chunks),
            )
            allowed = {path for path, _ in chunk}
            files_text = "\n\n".join(f"--- {path} ---\n{content}" for path, content in chunk)
            text, chunk_usage = ask(
                context,
                system_prompt=SYSTEM_PROMPT,
                user_prompt=f"Task:\n{payload.task_description}\n\nFiles:\n{files_text}",
            )
            usage = merge_usage(usage, chunk_usage)
            answered = {
                normalize_relative_path(path, payload.project_directory)
                for path in _answered_paths(parse_json_response(text))
            }
            ignored = answered - allowed
            if ignored:
                logger.debug("Ignoring %d paths outside chunk %d", len(ignored), index)
            relevant.update(answered & allowed)

        ordered = [path for path, _ in documents if path in relevant]
        return ProcessorResult(
            output={
                "relevant_files": ordered,
                "chunks": len(chunks),
                "assessed_files": len(documents),
            },
            usage=usage,
        )


def _answered_paths(parsed: Any) -> list[str]:
    if isinstance(parsed, list):
        return string_list(parsed)
    if isinstance(parsed, Mapping):
        return string_list(parsed.get("relevant_files", parsed.get("files")))
    return []
