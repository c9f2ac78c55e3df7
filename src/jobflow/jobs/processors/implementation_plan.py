"""Stream an implementation plan for a task from its relevant files."""

from __future__ import annotations

from pathlib import Path

from jobflow.errors import SerializationError
from jobflow.jobs.payloads import ImplementationPlanPayload, TaskType
from jobflow.jobs.processor import JobProcessor, ProcessorContext, ProcessorResult
from jobflow.jobs.processors._common import MAX_FILE_CONTENT_CHARS, normalize_relative_path
from jobflow.providers.chat import build_messages

SYSTEM_PROMPT = """You are a senior engineer. Write a step-by-step implementation
plan for the task using the provided files. Name the files to change and
describe each change precisely."""


class ImplementationPlanProcessor(JobProcessor):
    name = "implementation-plan"
    task_type = TaskType.IMPLEMENTATION_PLAN.value
    payload_type = ImplementationPlanPayload

    def process(
        self,
        payload: ImplementationPlanPayload,
        context: ProcessorContext,
    ) -> ProcessorResult:
        root = Path(payload.project_directory)
        filesystem = context.filesystem
        sections: list[str] = []
        for candidate in payload.relevant_files:
            path = normalize_relative_path(candidate, payload.project_directory)
            if not filesystem.exists(root, path) or filesystem.is_binary(root, path):
                continue
            content = filesystem.read_text(root, path)[:MAX_FILE_CONTENT_CHARS]
            sections.append(f"--- {path} ---\n{content}")

        chat = context.require_chat()
        request = context.chat_request(
            build_messages(
                SYSTEM_PROMPT,
                f"Task:\n{payload.task_description}\n\nFiles:\n" + "\n\n".join(sections),
            ),
        )
        context.checkpoint("before_llm_call")
        context.report_progress("Writing implementation plan")
        parts: list[str] = []
        for chunk in chat.stream(request):
            if not chunk:
                continue
            parts.append(chunk)
            context.append_stream_chunk(chunk)
            context.checkpoint("stream_chunk")

        plan = "".join(parts).strip()
        if not plan:
            raise SerializationError("Model returned an empty implementation plan")
        return ProcessorResult(output={"plan": plan, "files_used": len(sections)})
