"""Chat-completion interface used by LLM-backed processors."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass(slots=True)
class ChatRequest:
    """Inputs for one completion call."""

    messages: list[ChatMessage]
    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    cancelled: Callable[[], bool] | None = None


@dataclass(slots=True)
class ChatUsage:
    """Token usage reported by the provider; recorded as-is."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost: float | None = None

    def to_metadata(self) -> dict[str, object]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "cost": self.cost,
        }


@dataclass(slots=True)
class ChatCompletion:
    text: str
    model: str | None = None
    usage: ChatUsage | None = None
    extra: dict[str, object] = field(default_factory=dict)


class ChatCompletionProvider(Protocol):
    """Protocol implemented by chat model clients.

    Implementations raise ``ProviderError`` with the HTTP status when the
    remote call fails so the retry policy can classify it.
    """

    def complete(self, request: ChatRequest) -> ChatCompletion:
        """Return the full completion for ``request``."""

    def stream(self, request: ChatRequest) -> Iterator[str]:
        """Yield completion text chunks as they arrive."""


def build_messages(system_prompt: str, user_prompt: str) -> list[ChatMessage]:
    return [
        ChatMessage(role="system", content=system_prompt),
        ChatMessage(role="user", content=user_prompt),
    ]
