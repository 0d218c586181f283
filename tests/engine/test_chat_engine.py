import asyncio

import pytest


pytest.importorskip("torch", reason="torch not installed")


from pocketllm.engine.chat_engine import ChatEngine, EngineConfig
from pocketllm.engine.chat_types import ChatRequest, DeltaEvent, FinalEvent, RetryEvent
from pocketllm.engine.prompting import FALLBACK_REPLY
from pocketllm.engine.session import Session
from pocketllm.engine.types import Message


def _engine(backend, **config):
    return ChatEngine(Session(backend), config=EngineConfig(**config))


def _prompt_text(backend, call: int = 0) -> str:
    tokens = [r.token for r in backend.decode_calls[call]]
    return bytes(t - backend.BYTE_BASE for t in tokens[1:]).decode("utf-8")


def _req(*pairs, **kwargs):
    return ChatRequest(messages=[Message(r, c) for r, c in pairs], **kwargs)


def test_complete_returns_reply_and_usage(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("Hi there"))
    engine = _engine(backend, system_prompt="sys")

    result = engine.complete(_req(("user", "hello")))
    assert result.content == "Hi there"
    assert result.finish_reason == "stop"
    assert result.attempts == 1
    assert result.tier is None
    assert result.usage.completion_tokens == 8
    assert result.usage.prompt_tokens > 0
    assert _prompt_text(backend) == "<|system|>sys\n<|user|>hello\n<|assistant|>"


def test_leading_system_message_overrides_default(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("ok"))
    engine = _engine(backend, system_prompt="default")

    engine.complete(_req(("system", "custom"), ("user", "q")))
    assert _prompt_text(backend).startswith("<|system|>custom\n<|user|>q")


def test_no_think_applies_to_user_turns(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("ok"))
    engine = _engine(backend, system_prompt="s", no_think=True)

    engine.complete(_req(("user", "q")))
    assert "<|user|>/no_think\nq" in _prompt_text(backend)


def test_retry_after_empty_first_attempt(make_backend):
    eos = make_backend.EOS
    backend = make_backend(next_tokens=[eos] + make_backend.text_tokens("OK"))
    engine = _engine(backend, system_prompt="s")

    events = []
    result = engine.complete(_req(("user", "q")), emit=events.append)

    assert result.content == "OK"
    assert result.attempts == 2
    assert result.tier == "compact_context"
    assert result.retries == ["compact_context"]
    assert isinstance(events[0], RetryEvent)
    assert isinstance(events[-1], FinalEvent)
    assert events[-1].attempts == 2


def test_placeholder_after_every_tier_is_empty(make_backend):
    backend = make_backend(next_tokens=[])
    engine = _engine(backend)

    result = engine.complete(_req(("user", "q")))
    assert result.content == FALLBACK_REPLY
    assert result.finish_reason == "fallback"
    assert result.attempts == 4
    assert result.tier == "deterministic_minimal_instruction"
    assert len(result.retries) == 3
    assert engine.session.is_done


def test_placeholder_replaces_whitespace_reply(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("\n\n"))
    engine = _engine(backend, fallback_reply="nothing")

    events = []
    result = engine.complete(_req(("user", "q"), retry=False), emit=events.append)
    assert result.content == "nothing"
    assert result.finish_reason == "fallback"
    deltas = [e.text for e in events if isinstance(e, DeltaEvent)]
    assert deltas[-1] == "nothing"


def test_repl_reports_bench_failure(make_backend, monkeypatch, capsys):
    from apps.cli.chat_repl import chat_repl

    monkeypatch.setattr("apps.cli.chat_repl._setup_readline_history", lambda: None)
    monkeypatch.setattr("apps.cli.chat_repl._setup_completer", lambda: None)
    lines = iter(["/bench 4 2 1 1", "/exit"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))

    engine = _engine(make_backend(fail_decode_on=[0]))
    assert chat_repl(engine=engine) == 0
    assert "error: scripted failure on decode call 0" in capsys.readouterr().err


def test_retry_disabled_goes_straight_to_placeholder(make_backend):
    backend = make_backend(next_tokens=[])
    engine = _engine(backend, fallback_reply="nothing")

    result = engine.complete(_req(("user", "q"), retry=False))
    assert result.content == "nothing"
    assert result.attempts == 1
    assert result.retries == []


def test_length_finish_reason(make_backend):
    from pocketllm.engine.session import SessionConfig

    backend = make_backend(next_tokens=make_backend.text_tokens("abcdef"))
    engine = ChatEngine(Session(backend, SessionConfig(max_new_tokens=2)))
    result = engine.complete(_req(("user", "q")))
    assert result.content == "ab"
    assert result.finish_reason == "length"


def test_astream_chat_yields_deltas_then_final(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("yo"))
    engine = _engine(backend)

    async def collect():
        return [e async for e in engine.astream_chat(_req(("user", "q"), deterministic=True))]

    events = asyncio.run(collect())
    assert [e.text for e in events if isinstance(e, DeltaEvent)] == ["y", "o"]
    assert isinstance(events[-1], FinalEvent)
    assert events[-1].finish_reason == "stop"
    assert not engine.busy


def test_generate_chat_aggregates(make_backend):
    backend = make_backend(next_tokens=make_backend.text_tokens("fine"))
    engine = _engine(backend)

    result = asyncio.run(engine.generate_chat(_req(("user", "how are you?"))))
    assert result["content"] == "fine"
    assert result["finish_reason"] == "stop"
    assert result["usage"].completion_tokens == 4
    assert result["attempts"] == 1


def test_bench_clear_and_info(make_backend):
    backend = make_backend()
    engine = _engine(backend)

    result = asyncio.run(engine.abench(4, 2, 1, 1))
    assert result.prompt_len == 4
    asyncio.run(engine.aclear())
    assert engine.session.stop_reason == "cleared"
    assert engine.model_info().startswith("fake 0.5B F32")


def test_shutdown_closes_backend(make_backend):
    backend = make_backend()
    engine = _engine(backend)
    engine.shutdown()
    assert backend.closed
    # Second shutdown is a no-op.
    engine.shutdown()
