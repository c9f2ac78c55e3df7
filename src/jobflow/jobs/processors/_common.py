"""Helpers shared by the built-in processors."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from jobflow.errors import SerializationError
from jobflow.jobs.processor import ProcessorContext
from jobflow.providers.chat import ChatUsage, build_messages

logger = logging.getLogger(__name__)

T = TypeVar("T")

CHARS_PER_TOKEN = 4
MAX_FILE_CONTENT_CHARS = 16_000

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)
_FENCED_TEXT = re.compile(r"^```[a-zA-Z]*\s*\n(.*?)\n?```$", re.DOTALL)


def ask(
    context: ProcessorContext,
    *,
    system_prompt: str,
    user_prompt: str,
) -> tuple[str, ChatUsage | None]:
    """One non-streaming completion with cancellation checkpoints around it."""

    chat = context.require_chat()
    context.checkpoint("before_llm_call")
    completion = chat.complete(context.chat_request(build_messages(system_prompt, user_prompt)))
    context.checkpoint("after_llm_call")
    return completion.text, completion.usage


def parse_json_response(text: str) -> Any:
    """Extract a JSON object or array from model output."""

    stripped = text.strip()
    if not stripped:
        raise SerializationError("Model returned an empty response")

    direct = _try_load(stripped)
    if direct is not None:
        return direct

    fenced = _FENCED_BLOCK.search(stripped)
    if fenced is not None:
        payload = _try_load(fenced.group(1))
        if payload is not None:
            return payload

    for opener, closer in (("{", "}"), ("[", "]")):
        start = stripped.find(opener)
        end = stripped.rfind(closer)
        if start != -1 and end > start:
            payload = _try_load(stripped[start : end + 1])
            if payload is not None:
                return payload
    raise SerializationError(f"Model response is not valid JSON: {stripped[:200]!r}")


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    match = _FENCED_TEXT.match(stripped)
    return match.group(1).strip() if match is not None else stripped


def string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def normalize_relative_path(path: str, project_directory: str) -> str:
    """Turn model-suggested paths into project-relative POSIX paths."""

    normalized = path.strip().strip("`'\"").replace("\\", "/")
    root = project_directory.rstrip("/").replace("\\", "/")
    if root and normalized.startswith(f"{root}/"):
        normalized = normalized[len(root) + 1 :]
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized.lstrip("/")


def sanitize_regex(pattern: str | None) -> str | None:
    """Clean up a model-proposed regex; ``None`` when it does not compile."""

    if pattern is None:
        return None
    cleaned = pattern.strip()
    if len(cleaned) >= 2 and cleaned.startswith("/") and cleaned.endswith("/"):  # noqa: PLR2004
        cleaned = cleaned[1:-1]
    if not cleaned:
        return None
    try:
        re.compile(cleaned)
    except re.error as error:
        logger.warning("Dropping invalid regex %r: %s", pattern, error)
        return None
    return cleaned


def estimate_tokens(text: str) -> int:
    return max(1, len(text) // CHARS_PER_TOKEN)


def chunk_by_budget(items: Sequence[T], cost: Callable[[T], int], budget: int) -> list[list[T]]:
    """Greedy in-order chunking; an item over budget gets a chunk of its own."""

    chunks: list[list[T]] = []
    current: list[T] = []
    used = 0
    for item in items:
        item_cost = cost(item)
        if current and used + item_cost > budget:
            chunks.append(current)
            current = []
            used = 0
        current.append(item)
        used += item_cost
    if current:
        chunks.append(current)
    return chunks


def merge_usage(total: ChatUsage | None, extra: ChatUsage | None) -> ChatUsage | None:
    if extra is None:
        return total
    if total is None:
        return ChatUsage(
            prompt_tokens=extra.prompt_tokens,
            completion_tokens=extra.completion_tokens,
            total_tokens=extra.total_tokens,
            cost=extra.cost,
        )
    return ChatUsage(
        prompt_tokens=_add(total.prompt_tokens, extra.prompt_tokens),
        completion_tokens=_add(total.completion_tokens, extra.completion_tokens),
        total_tokens=_add(total.total_tokens, extra.total_tokens),
        cost=_add(total.cost, extra.cost),
    )


def _add(left: Any, right: Any) -> Any:
    if left is None:
        return right
    if right is None:
        return left
    return left + right


def _try_load(raw: str) -> Any:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict | list):
        return None
    return parsed
