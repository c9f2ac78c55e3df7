"""Correct grammar and clarity of a text while keeping its meaning."""

from __future__ import annotations

from jobflow.errors import SerializationError
from jobflow.jobs.payloads import TaskType, TextImprovementPayload
from jobflow.jobs.processor import JobProcessor, ProcessorContext, ProcessorResult
from jobflow.jobs.processors._common import ask, strip_code_fence

SYSTEM_PROMPT = """Improve the user's text: fix grammar, spelling and clarity.
Keep the meaning, tone and formatting. Reply with the improved text only."""


class TextImprovementProcessor(JobProcessor):
    name = "text-improvement"
    task_type = TaskType.TEXT_IMPROVEMENT.value
    payload_type = TextImprovementPayload

    def process(
        self,
        payload: TextImprovementPayload,
        context: ProcessorContext,
    ) -> ProcessorResult:
        system_prompt = SYSTEM_PROMPT
        if payload.language:
            system_prompt = f"{SYSTEM_PROMPT}\nThe text is written in {payload.language}."
        text, usage = ask(context, system_prompt=system_prompt, user_prompt=payload.text_to_improve)
        improved = strip_code_fence(text)
        if not improved:
            raise SerializationError("Model returned an empty text")
        return ProcessorResult(
            output={"improved_text": improved, "changed": improved != payload.text_to_improve},
            usage=usage,
        )
