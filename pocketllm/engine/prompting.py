"""Prompt composition and the empty-reply retry cascade.

The session only guarantees that `completion_init` / `completion_loop` can be
called again on the same instance. Deciding *what* to retry with lives here:
an ordered list of tiers, each a pure function from the latest user text to a
new `CompletionRequest`, tried until one produces visible text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterable, Sequence

from .errors import EmptyGenerationExhausted
from .types import CompletionRequest, Message, StopReason

if TYPE_CHECKING:
    from .session import Session

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful, concise assistant running fully on-device. "
    "Maintain continuity across turns."
)
MINIMAL_SYSTEM_PROMPT = (
    "You are a helpful on-device assistant.\n"
    "Always output a direct answer in plain text.\n"
    "Do not output only control tags or hidden thinking blocks."
)
COMPLETE_SENTENCE_SUFFIX = "\n\nRespond with at least one complete sentence."
FALLBACK_REPLY = "I couldn't generate a reply on this turn. Send the message again to retry."

DEFAULT_MAX_PROMPT_CHARS = 4000
MESSAGE_OVERHEAD_CHARS = 32

NO_THINK = "/no_think"
THINK = "/think"


def with_no_think(content: str) -> str:
    """Prefix a user turn with `/no_think` unless it already carries a think directive."""
    if content.startswith(THINK) or content.startswith(NO_THINK):
        return content
    return f"{NO_THINK}\n{content}"


def compose_prompt_messages(
    history: Iterable[Any],
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    *,
    max_prompt_chars: int = DEFAULT_MAX_PROMPT_CHARS,
    no_think: bool = False,
) -> list[Message]:
    """System prompt plus the most recent turns that fit `max_prompt_chars`.

    Empty assistant turns are dropped. Each turn costs its UTF-8 length plus a
    fixed overhead; the latest turn is always kept.
    """
    eligible = [
        m
        for m in (Message.coerce(h) for h in history)
        if not (m.role == "assistant" and not m.content.strip())
    ]

    selected: list[Message] = []
    budget = 0
    for message in reversed(eligible):
        cost = len(message.content.encode("utf-8")) + MESSAGE_OVERHEAD_CHARS
        if budget + cost > max_prompt_chars and selected:
            break
        budget += cost
        selected.append(message)
    selected.reverse()

    result = [Message("system", system_prompt)]
    for message in selected:
        content = message.content
        if no_think and message.role == "user":
            content = with_no_think(content)
        result.append(Message(message.role, content))
    return result


# =============================================================================
# Retry tiers
# =============================================================================


@dataclass(frozen=True)
class RetryTier:
    """One fallback strategy: `build(latest_user_text, system_prompt, no_think)`."""

    name: str
    build: Callable[[str, str, bool], CompletionRequest]
    notice: str = ""


def compact_context(latest_user_text: str, system_prompt: str, no_think: bool = False) -> CompletionRequest:
    content = with_no_think(latest_user_text) if no_think else latest_user_text
    return CompletionRequest.of([("system", system_prompt), ("user", content)])


def minimal_instruction(latest_user_text: str, system_prompt: str, no_think: bool = False) -> CompletionRequest:
    return CompletionRequest.of([("system", MINIMAL_SYSTEM_PROMPT), ("user", latest_user_text)])


def deterministic_minimal_instruction(
    latest_user_text: str, system_prompt: str, no_think: bool = False
) -> CompletionRequest:
    return CompletionRequest.of(
        [("system", MINIMAL_SYSTEM_PROMPT), ("user", latest_user_text + COMPLETE_SENTENCE_SUFFIX)],
        deterministic=True,
    )


DEFAULT_RETRY_TIERS: tuple[RetryTier, ...] = (
    RetryTier(
        "compact_context",
        compact_context,
        "First pass returned empty output. Retrying with compact context...",
    ),
    RetryTier(
        "minimal_instruction",
        minimal_instruction,
        "Second pass empty. Retrying with minimal instruction...",
    ),
    RetryTier(
        "deterministic_minimal_instruction",
        deterministic_minimal_instruction,
        "Minimal pass empty. Retrying with deterministic sampler...",
    ),
)


# =============================================================================
# Cascade driver
# =============================================================================


@dataclass(frozen=True)
class CascadeResult:
    text: str
    generated_tokens: int
    attempts: int
    tier: str | None  # None: the initial request succeeded
    stop_reason: StopReason | None
    cancelled: bool = False
    prompt_tokens: int = 0


def run_completion(
    session: Session,
    request: CompletionRequest,
    *,
    on_delta: Callable[[str], None] | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> tuple[str, int, StopReason | None, bool, int]:
    """Drive one init/loop cycle, then clear the session.

    Returns `(text, generated_tokens, stop_reason, cancelled, prompt_tokens)`.
    """
    session.completion_init(request)
    prompt_tokens = session.prompt_tokens
    parts: list[str] = []
    cancelled = False
    while not session.is_done:
        if should_stop is not None and should_stop():
            cancelled = True
            break
        delta = session.completion_loop()
        if delta:
            parts.append(delta)
            if on_delta is not None:
                on_delta(delta)

    generated = session.get_n_decode()
    stop_reason = session.stop_reason
    session.clear()
    return "".join(parts), generated, stop_reason, cancelled, prompt_tokens


def run_retry_cascade(
    session: Session,
    request: CompletionRequest,
    latest_user_text: str,
    *,
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    no_think: bool = False,
    tiers: Sequence[RetryTier] = DEFAULT_RETRY_TIERS,
    on_delta: Callable[[str], None] | None = None,
    on_retry: Callable[[RetryTier], None] | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> CascadeResult:
    """Run `request`, then each tier in order while the reply is still blank.

    Raises:
        EmptyGenerationExhausted: Every attempt produced whitespace-only text.
    """
    text, generated, stop_reason, cancelled, prompt_tokens = run_completion(
        session, request, on_delta=on_delta, should_stop=should_stop
    )
    attempts = 1
    tier_name: str | None = None

    for tier in tiers:
        if cancelled or text.strip():
            break
        logger.info(tier.notice or f"Empty reply; retrying with {tier.name}")
        if on_retry is not None:
            on_retry(tier)
        retry_request = tier.build(latest_user_text, system_prompt, no_think)
        delta_text, n, stop_reason, cancelled, prompt_tokens = run_completion(
            session, retry_request, on_delta=on_delta, should_stop=should_stop
        )
        text += delta_text
        generated += n
        attempts += 1
        tier_name = tier.name

    if not text.strip() and not cancelled:
        raise EmptyGenerationExhausted(attempts, generated)

    return CascadeResult(
        text=text,
        generated_tokens=generated,
        attempts=attempts,
        tier=tier_name,
        stop_reason=stop_reason,
        cancelled=cancelled,
        prompt_tokens=prompt_tokens,
    )
