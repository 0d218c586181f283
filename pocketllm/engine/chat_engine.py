"""Async chat engine over a single Session (single-flight).

This module provides the host-facing engine:
- history -> bounded prompt messages
- serialized session execution
- token-level async streaming
- empty-reply retry cascade with a placeholder fallback

It deliberately contains no HTTP/FastAPI code.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Sequence

from .chat_types import (
    ChatRequest,
    ChatResult,
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    FinishReason,
    RetryEvent,
    StreamEvent,
    Timing,
    Usage,
)
from .errors import EmptyGenerationExhausted
from .prompting import (
    DEFAULT_MAX_PROMPT_CHARS,
    DEFAULT_RETRY_TIERS,
    DEFAULT_SYSTEM_PROMPT,
    FALLBACK_REPLY,
    RetryTier,
    compose_prompt_messages,
    run_retry_cascade,
)
from .session import Session
from .types import BenchResult, CompletionRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults."""

    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    max_prompt_chars: int = DEFAULT_MAX_PROMPT_CHARS
    no_think: bool = False
    retry_tiers: tuple[RetryTier, ...] = DEFAULT_RETRY_TIERS
    fallback_reply: str = FALLBACK_REPLY


class ChatEngine:
    """Core chat engine.

    Thread-safety:
        The session is single-writer. This engine serializes every operation
        (chat, bench, clear, shutdown) with one lock (single-flight).
    """

    def __init__(self, session: Session, *, config: EngineConfig | None = None) -> None:
        self._session = session
        self._config = config or EngineConfig()
        self._lock = threading.Lock()

    @property
    def session(self) -> Session:
        return self._session

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def model_info(self) -> str:
        with self._lock:
            return self._session.model_info()

    def shutdown(self) -> None:
        with self._lock:
            if not self._session.closed:
                if not self._session.is_done:
                    self._session.clear()
                self._session.close()

    # -------------------------------------------------------------------------
    # Request preparation
    # -------------------------------------------------------------------------

    def _prepare(self, request: ChatRequest) -> tuple[CompletionRequest, str, str, bool]:
        """Return `(completion_request, latest_user_text, system_prompt, no_think)`."""
        history = list(request.messages)
        system_prompt = self._config.system_prompt
        if history and history[0].role == "system":
            system_prompt = history[0].content
            history = history[1:]

        no_think = self._config.no_think if request.no_think is None else bool(request.no_think)
        max_chars = request.max_prompt_chars or self._config.max_prompt_chars

        messages = compose_prompt_messages(
            history,
            system_prompt,
            max_prompt_chars=max_chars,
            no_think=no_think,
        )
        latest_user_text = next((m.content for m in reversed(history) if m.role == "user"), "")
        completion = CompletionRequest(messages=tuple(messages), deterministic=request.deterministic)
        return completion, latest_user_text, system_prompt, no_think

    # -------------------------------------------------------------------------
    # Synchronous core
    # -------------------------------------------------------------------------

    def complete(
        self,
        request: ChatRequest,
        *,
        emit: Callable[[StreamEvent], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> ChatResult:
        """Run one chat turn on the calling thread, emitting events as they happen."""
        completion, latest_user_text, system_prompt, no_think = self._prepare(request)
        tiers: Sequence[RetryTier] = self._config.retry_tiers if (request.retry and latest_user_text) else ()

        parts: list[str] = []
        retries: list[str] = []

        def _emit(event: StreamEvent) -> None:
            if isinstance(event, DeltaEvent):
                parts.append(event.text)
            elif isinstance(event, RetryEvent):
                retries.append(event.tier)
            if emit is not None:
                emit(event)

        started = time.monotonic()
        finish_reason: FinishReason = "stop"
        prompt_tokens = 0
        completion_tokens = 0
        attempts = 1
        tier: str | None = None

        try:
            with self._lock:
                result = run_retry_cascade(
                    self._session,
                    completion,
                    latest_user_text,
                    system_prompt=system_prompt,
                    no_think=no_think,
                    tiers=tiers,
                    on_delta=lambda text: _emit(DeltaEvent(text)),
                    on_retry=lambda t: _emit(RetryEvent(t.name, t.notice)),
                    should_stop=should_stop,
                )
            prompt_tokens = result.prompt_tokens
            completion_tokens = result.generated_tokens
            attempts = result.attempts
            tier = result.tier
            if result.cancelled:
                finish_reason = "cancelled"
            elif result.stop_reason == "length":
                finish_reason = "length"
            elif result.stop_reason == "error":
                finish_reason = "error"
        except EmptyGenerationExhausted as exc:
            logger.warning("%s Substituting placeholder reply.", exc)
            completion_tokens = exc.generated_tokens
            attempts = exc.attempts
            tier = tiers[-1].name if tiers else None
            finish_reason = "fallback"
            # The placeholder replaces any whitespace already streamed.
            parts.clear()
            _emit(DeltaEvent(self._config.fallback_reply))

        total_s = max(time.monotonic() - started, 0.0)
        tok_per_s = completion_tokens / total_s if total_s > 0 and completion_tokens > 0 else None
        logger.info(
            "Reply done: %d tokens in %.2fs (%.2f t/s), attempts=%d, finish=%s",
            completion_tokens,
            total_s,
            tok_per_s or 0.0,
            attempts,
            finish_reason,
        )

        usage = Usage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        timing = Timing(total_s=total_s, tok_per_s=tok_per_s)
        if emit is not None:
            emit(FinalEvent(finish_reason=finish_reason, usage=usage, timing=timing, attempts=attempts, tier=tier))

        return ChatResult(
            content="".join(parts),
            finish_reason=finish_reason,
            usage=usage,
            timing=timing,
            attempts=attempts,
            tier=tier,
            retries=retries,
        )

    # -------------------------------------------------------------------------
    # Async API
    # -------------------------------------------------------------------------

    async def astream_chat(self, request: ChatRequest) -> AsyncIterator[StreamEvent]:
        """Async iterator streaming engine events; ends with a FinalEvent."""
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StreamEvent | None] = asyncio.Queue()
        cancel = threading.Event()

        def _emit_event(event: StreamEvent) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, event)

        def worker() -> None:
            try:
                self.complete(request, emit=_emit_event, should_stop=cancel.is_set)
            except Exception as exc:
                logger.exception("Generation failed")
                _emit_event(ErrorEvent(f"Generation failed: {exc}"))
                _emit_event(
                    FinalEvent(
                        finish_reason="error",
                        usage=Usage(prompt_tokens=0, completion_tokens=0),
                        timing=Timing(),
                    )
                )
            finally:
                loop.call_soon_threadsafe(queue.put_nowait, None)

        thread = threading.Thread(target=worker, name=f"pocketllm-gen-{uuid.uuid4().hex}", daemon=True)
        thread.start()

        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
        except asyncio.CancelledError:
            cancel.set()
            raise
        finally:
            # If the consumer stops early (disconnect / generator close), stop between tokens.
            cancel.set()

    async def generate_chat(self, request: ChatRequest) -> dict[str, Any]:
        """Non-streaming chat completion.

        Returns:
            Dict containing:
              - content: str
              - finish_reason: str
              - usage: Usage
              - timing: Timing
              - attempts: int
              - tier: str | None
        """
        content_parts: list[str] = []
        usage: Usage | None = None
        timing: Timing | None = None
        finish_reason: str = "stop"
        attempts = 1
        tier: str | None = None

        async for event in self.astream_chat(request):
            if isinstance(event, DeltaEvent):
                content_parts.append(event.text)
            elif isinstance(event, FinalEvent):
                usage = event.usage
                timing = event.timing
                finish_reason = event.finish_reason
                attempts = event.attempts
                tier = event.tier
            elif isinstance(event, ErrorEvent):
                raise RuntimeError(event.message)

        return {
            "content": "".join(content_parts),
            "finish_reason": finish_reason,
            "usage": usage,
            "timing": timing,
            "attempts": attempts,
            "tier": tier,
        }

    def bench(self, pp: int, tg: int, pl: int, nr: int = 1) -> BenchResult:
        with self._lock:
            return self._session.bench_result(pp, tg, pl, nr)

    def clear(self) -> None:
        with self._lock:
            self._session.clear()

    async def abench(self, pp: int, tg: int, pl: int, nr: int = 1) -> BenchResult:
        return await asyncio.to_thread(self.bench, pp, tg, pl, nr)

    async def aclear(self) -> None:
        await asyncio.to_thread(self.clear)
