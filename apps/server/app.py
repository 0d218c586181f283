"""OpenAI-style HTTP front end for a ChatEngine.

Routes:
  GET  /health, /v1/models, /v1/model_info
  POST /v1/chat/completions  (JSON, or SSE with `"stream": true`)
  POST /v1/bench, /v1/clear

Model execution stays in `pocketllm.engine`; this module only translates
between HTTP payloads and engine requests/events.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, HTTPException, Request
from starlette.responses import JSONResponse, StreamingResponse

from pocketllm._version import __version__
from pocketllm.engine.chat_engine import ChatEngine
from pocketllm.engine.chat_types import (
    ChatRequest,
    DeltaEvent,
    ErrorEvent,
    FinalEvent,
    RetryEvent,
    Timing,
    Usage,
)
from pocketllm.engine.errors import SessionClosedError
from pocketllm.engine.types import Message

_ROLES = {"system", "user", "assistant"}
_DISCONNECT_POLL_S = 0.1


class _ConcurrencyLimiter:
    """Non-blocking admission: a request either gets a slot now or a 429."""

    def __init__(self, limit: int | None) -> None:
        if limit is None:
            self._semaphore = None
            return
        try:
            limit = int(limit)
        except (TypeError, ValueError) as exc:
            raise ValueError("http_max_concurrency must be an integer") from exc
        if limit < 0:
            raise ValueError("http_max_concurrency must be >= 0")
        self._semaphore = asyncio.Semaphore(limit) if limit > 0 else None

    async def acquire(self) -> None:
        if self._semaphore is None:
            return
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=0.001)
        except asyncio.TimeoutError as exc:
            raise HTTPException(status_code=429, detail="Server is busy") from exc

    def release(self) -> None:
        if self._semaphore is not None:
            self._semaphore.release()


async def _poll_disconnect(request: Request, stop: asyncio.Event) -> bool:
    while not stop.is_set():
        if await request.is_disconnected():
            return True
        await asyncio.sleep(_DISCONNECT_POLL_S)
    return False


async def _unless_disconnected(request: Request, work: Awaitable[Any]) -> Any:
    """Await `work`; cancel it and answer 499 if the client goes away first."""
    stop = asyncio.Event()
    work_task = asyncio.ensure_future(work)
    watcher = asyncio.create_task(_poll_disconnect(request, stop))
    # Let both tasks start; `work` may finish without ever suspending.
    await asyncio.sleep(0)
    try:
        await asyncio.wait({work_task, watcher}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # is_disconnected() can absorb a cancel, so the loop also checks `stop`.
        stop.set()
        watcher.cancel()

    if not work_task.done():
        work_task.cancel()
        await asyncio.gather(work_task, return_exceptions=True)
        raise HTTPException(status_code=499, detail="Client disconnected")
    await asyncio.gather(watcher, return_exceptions=True)
    return work_task.result()


async def _json_object(request: Request, *, required: bool) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        if not required:
            return {}
        raise HTTPException(status_code=400, detail="Request body must be valid JSON.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    return payload


def create_app(
    *,
    engine: ChatEngine,
    model_id: str,
    http_max_concurrency: int | None = None,
) -> FastAPI:
    app = FastAPI(title="PocketLLM Inference Server", version=__version__)
    limiter = _ConcurrencyLimiter(http_max_concurrency)

    async def _admitted(call: Callable[[], Awaitable[Any]]) -> Any:
        await limiter.acquire()
        try:
            return await call()
        finally:
            limiter.release()

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/models")
    async def list_models() -> dict[str, Any]:
        card = {"id": model_id, "object": "model", "created": int(time.time()), "owned_by": "pocketllm"}
        return {"object": "list", "data": [card]}

    @app.get("/v1/model_info")
    async def model_info() -> Any:
        try:
            description = await asyncio.to_thread(engine.model_info)
        except SessionClosedError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"id": model_id, "description": description}

    @app.post("/v1/bench")
    async def bench(request: Request) -> Any:
        payload = await _json_object(request, required=False)
        try:
            pp, tg, pl, nr = (int(payload.get(k, d)) for k, d in (("pp", 512), ("tg", 128), ("pl", 1), ("nr", 1)))
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="'pp', 'tg', 'pl' and 'nr' must be integers.") from exc

        try:
            result = await _admitted(lambda: engine.abench(pp, tg, pl, nr))
        except HTTPException:
            raise
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except SessionClosedError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        return JSONResponse({**result.to_dict(), "markdown": result.to_markdown()})

    @app.post("/v1/clear")
    async def clear() -> Any:
        try:
            await _admitted(engine.aclear)
        except SessionClosedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {"status": "cleared"}

    @app.post("/v1/chat/completions")
    async def chat_completions(request: Request) -> Any:
        payload = await _json_object(request, required=True)

        requested = payload.get("model")
        if requested is not None and requested != model_id:
            raise HTTPException(status_code=404, detail=f"Unknown model: {requested}")

        chat_req = _parse_chat_request(payload)
        chunks = _ChunkBuilder(model_id)

        if payload.get("stream", False):
            await limiter.acquire()
            events = _sse_events(engine, chat_req, chunks, request, on_close=limiter.release)
            return StreamingResponse(events, media_type="text/event-stream")

        try:
            result = await _admitted(lambda: _unless_disconnected(request, engine.generate_chat(chat_req)))
        except HTTPException:
            raise
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

        return JSONResponse(chunks.completion(result))

    return app


# -----------------------------------------------------------------------------
# Response bodies
# -----------------------------------------------------------------------------


def _usage_dict(usage: Usage) -> dict[str, int]:
    return {
        "prompt_tokens": usage.prompt_tokens,
        "completion_tokens": usage.completion_tokens,
        "total_tokens": usage.total_tokens,
    }


def _timing_dict(timing: Timing) -> dict[str, float | None]:
    return {"total_s": timing.total_s, "tok_per_s": timing.tok_per_s}


def _error_body(message: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": "server_error", "param": None, "code": None}}


def _sse(obj: Any) -> str:
    data = obj if isinstance(obj, str) else json.dumps(obj, ensure_ascii=False)
    return f"data: {data}\n\n"


@dataclass
class _ChunkBuilder:
    """Ids and timestamps shared by every body of one completion."""

    model_id: str
    chatcmpl_id: str = field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex}")
    created: int = field(default_factory=lambda: int(time.time()))

    def _envelope(self, kind: str) -> dict[str, Any]:
        return {"id": self.chatcmpl_id, "object": kind, "created": self.created, "model": self.model_id}

    def chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> dict[str, Any]:
        body = self._envelope("chat.completion.chunk")
        body["choices"] = [{"index": 0, "delta": delta, "finish_reason": finish_reason}]
        return body

    def completion(self, result: dict[str, Any]) -> dict[str, Any]:
        body = self._envelope("chat.completion")
        body["choices"] = [
            {
                "index": 0,
                "message": {"role": "assistant", "content": result.get("content") or ""},
                "finish_reason": result.get("finish_reason") or "stop",
            }
        ]
        body["x_pocketllm_attempts"] = result.get("attempts", 1)
        usage = result.get("usage")
        if isinstance(usage, Usage):
            body["usage"] = _usage_dict(usage)
        timing = result.get("timing")
        if isinstance(timing, Timing):
            body["x_pocketllm_timing"] = _timing_dict(timing)
        return body


async def _sse_events(
    engine: ChatEngine,
    chat_request: ChatRequest,
    chunks: _ChunkBuilder,
    request: Request,
    *,
    on_close: Callable[[], None],
) -> AsyncIterator[str]:
    yield _sse(chunks.chunk({"role": "assistant"}))

    final: FinalEvent | None = None
    finish_reason: str | None = None
    disconnected = False

    try:
        async for event in engine.astream_chat(chat_request):
            # Leaving the loop closes the engine stream, which stops generation.
            if await request.is_disconnected():
                disconnected = True
                break

            if isinstance(event, DeltaEvent):
                if event.text:
                    yield _sse(chunks.chunk({"content": event.text}))
            elif isinstance(event, RetryEvent):
                body = chunks.chunk({})
                body["x_pocketllm_retry"] = {"tier": event.tier, "notice": event.notice}
                yield _sse(body)
            elif isinstance(event, FinalEvent):
                final = event
                finish_reason = event.finish_reason
            elif isinstance(event, ErrorEvent):
                yield _sse(_error_body(event.message))
                finish_reason = "error"
                break
    except (asyncio.CancelledError, GeneratorExit):
        disconnected = True
        raise
    except Exception as exc:
        yield _sse(_error_body(str(exc)))
        finish_reason = "error"
    finally:
        on_close()
        if not disconnected:
            terminal = chunks.chunk({}, finish_reason or "stop")
            if final is not None:
                terminal["usage"] = _usage_dict(final.usage)
                terminal["x_pocketllm_timing"] = _timing_dict(final.timing)
            yield _sse(terminal)
            yield _sse("[DONE]")


# -----------------------------------------------------------------------------
# Request parsing
# -----------------------------------------------------------------------------


def _parse_chat_request(payload: dict[str, Any]) -> ChatRequest:
    raw_messages = payload.get("messages")
    if not isinstance(raw_messages, list) or not raw_messages:
        raise HTTPException(status_code=400, detail="'messages' must be a non-empty list.")

    messages: list[Message] = []
    for msg in raw_messages:
        if not isinstance(msg, dict):
            raise HTTPException(status_code=400, detail="Each message must be an object.")

        role = msg.get("role")
        if role not in _ROLES:
            raise HTTPException(status_code=400, detail=f"Invalid message role: {role!r}.")

        messages.append(Message(role=role, content=_coerce_content(msg.get("content"))))

    deterministic = payload.get("deterministic", False)
    if not isinstance(deterministic, bool):
        raise HTTPException(status_code=400, detail="'deterministic' must be a boolean.")

    temperature = payload.get("temperature")
    if temperature is not None:
        try:
            temperature = float(temperature)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail="'temperature' must be a number.") from exc
        if temperature < 0:
            raise HTTPException(status_code=400, detail="'temperature' must be >= 0.")
        # temperature 0 selects greedy decoding.
        if temperature == 0:
            deterministic = True

    no_think = payload.get("no_think")
    if no_think is not None and not isinstance(no_think, bool):
        raise HTTPException(status_code=400, detail="'no_think' must be a boolean.")

    retry = payload.get("retry", True)
    if not isinstance(retry, bool):
        raise HTTPException(status_code=400, detail="'retry' must be a boolean.")

    return ChatRequest(
        messages=messages,
        deterministic=deterministic,
        no_think=no_think,
        retry=retry,
    )


def _coerce_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    # Minimal support for OpenAI "content parts" format (text-only).
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") != "text":
                continue
            text = part.get("text")
            if isinstance(text, str):
                parts.append(text)
        return "".join(parts)

    raise HTTPException(status_code=400, detail="Unsupported message content type.")
