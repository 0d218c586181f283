"""Host-facing chat request and streaming event types.

These types are decoupled from:
- HTTP transport (FastAPI / SSE)
- OpenAI request/response JSON envelopes
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Union

from .types import Message

FinishReason = Literal["stop", "length", "fallback", "cancelled", "error"]


@dataclass(frozen=True)
class ChatRequest:
    """Normalized chat request.

    `messages` is the conversation history. A leading system message overrides
    the engine's default system prompt.
    """

    messages: list[Message]
    deterministic: bool = False
    no_think: bool | None = None  # None: use the engine default
    retry: bool = True  # Run the empty-reply retry cascade
    max_prompt_chars: int | None = None


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Timing:
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass(frozen=True)
class DeltaEvent:
    """Streamed text delta."""

    text: str


@dataclass(frozen=True)
class RetryEvent:
    """The previous attempt was empty; a fallback tier is starting."""

    tier: str
    notice: str = ""


@dataclass(frozen=True)
class FinalEvent:
    """Terminal event for a generation."""

    finish_reason: FinishReason
    usage: Usage
    timing: Timing
    attempts: int = 1
    tier: str | None = None


@dataclass(frozen=True)
class ErrorEvent:
    """Non-terminal or terminal error event."""

    message: str
    retryable: bool = False


StreamEvent = Union[DeltaEvent, RetryEvent, FinalEvent, ErrorEvent]


@dataclass
class ChatResult:
    """Aggregated outcome of a non-streaming chat call."""

    content: str
    finish_reason: FinishReason
    usage: Usage
    timing: Timing
    attempts: int = 1
    tier: str | None = None
    retries: list[str] = field(default_factory=list)
