import io

import pytest

pytest.importorskip("torch", reason="torch not installed")

from apps.cli.chat_repl import TurnStats, _format_metrics, _parse_bench_args, chat_repl, run_chat_turn
from apps.cli.main import build_parser, main
from apps.server.main import MODEL_ENV_VAR, dtype_from_string, engine_config_from_args
from pocketllm.engine.chat_types import ChatResult, DeltaEvent, FinalEvent, RetryEvent, Timing, Usage
from pocketllm.engine.types import BenchResult


class FakeEngine:
    def __init__(self, replies=("hi there",)):
        self.replies = list(replies)
        self.requests = []
        self.cleared = 0
        self.bench_args = None

    def model_info(self):
        return "fake model"

    def complete(self, request, *, emit=None, should_stop=None):
        self.requests.append(request)
        text = self.replies.pop(0) if self.replies else ""
        usage = Usage(prompt_tokens=5, completion_tokens=len(text))
        timing = Timing(total_s=0.25, tok_per_s=8.0)
        if emit is not None:
            emit(RetryEvent("compact_context", "Retrying with compact context..."))
            emit(DeltaEvent(text))
            emit(FinalEvent("stop", usage, timing, attempts=2, tier="compact_context"))
        return ChatResult(content=text, finish_reason="stop", usage=usage, timing=timing, attempts=2)

    def clear(self):
        self.cleared += 1

    def bench(self, pp, tg, pl, nr=1):
        self.bench_args = (pp, tg, pl, nr)
        return BenchResult("fake", 1024**3, 10**9, "cpu", pp, tg, pl, nr, pp_avg=1.0, tg_avg=2.0)


def test_parser_subcommands_and_defaults(monkeypatch):
    monkeypatch.delenv(MODEL_ENV_VAR, raising=False)
    parser = build_parser()

    args = parser.parse_args(["bench", "--model", "m.gguf"])
    assert (args.pp, args.tg, args.pl, args.nr) == (512, 128, 1, 3)
    assert args.warmup is True
    assert args.n_ctx == 2048

    args = parser.parse_args(["bench", "--model", "m", "--no-warmup", "--json", "--pp", "64"])
    assert args.warmup is False
    assert args.json is True
    assert args.pp == 64

    args = parser.parse_args(["serve", "--model", "m", "--no-warmup", "--port", "9000"])
    assert args.warmup is False
    assert args.port == 9000
    assert args.http_max_concurrency == 1

    args = parser.parse_args(["chat", "--model", "m", "--deterministic", "--no-think", "--seed", "7"])
    assert args.deterministic is True
    assert args.no_think is True
    assert args.seed == 7


def test_model_defaults_to_environment(monkeypatch):
    monkeypatch.setenv(MODEL_ENV_VAR, "/models/tiny.gguf")
    args = build_parser().parse_args(["info"])
    assert args.model == "/models/tiny.gguf"


def test_missing_command_prints_help(capsys):
    assert main([]) == 2
    assert "usage" in capsys.readouterr().out


def test_missing_model_exits(monkeypatch):
    monkeypatch.delenv(MODEL_ENV_VAR, raising=False)
    with pytest.raises(SystemExit):
        main(["info"])


def test_engine_config_from_args(monkeypatch):
    monkeypatch.delenv(MODEL_ENV_VAR, raising=False)
    args = build_parser().parse_args(["chat", "--system-prompt", "hey", "--max-prompt-chars", "100", "--no-think"])
    config = engine_config_from_args(args)
    assert config.system_prompt == "hey"
    assert config.max_prompt_chars == 100
    assert config.no_think is True


def test_dtype_from_string():
    import torch

    assert dtype_from_string(None) is None
    assert dtype_from_string("bf16") is torch.bfloat16
    assert dtype_from_string("FP32") is torch.float32
    with pytest.raises(ValueError):
        dtype_from_string("int3")


def test_parse_bench_args():
    assert _parse_bench_args([]) == (512, 128, 1, 1)
    assert _parse_bench_args(["64", "16"]) == (64, 16, 1, 1)
    assert _parse_bench_args(["1", "2", "3", "4", "5"]) == (1, 2, 3, 4)
    with pytest.raises(ValueError):
        _parse_bench_args(["x"])


def test_format_metrics():
    stats = TurnStats("stop", 10, 20, 1.5, 13.333, attempts=1)
    assert _format_metrics(stats) == "tok/s=13.33 tokens=10+20 finish=stop wall=1.500s"
    stats = TurnStats("fallback", 10, 0, None, None, attempts=4)
    assert _format_metrics(stats) == "tokens=10+0 finish=fallback attempts=4"


def test_run_chat_turn_streams_to_output():
    from pocketllm.engine.types import Message

    engine = FakeEngine(["hello"])
    out = io.StringIO()
    result = run_chat_turn(engine, [Message("user", "hi")], deterministic=True, out=out)

    assert result.content == "hello"
    assert out.getvalue() == "\n[Retrying with compact context...]\nhello\n"
    assert engine.requests[0].deterministic is True


def test_chat_repl_commands(monkeypatch, capsys):
    monkeypatch.setattr("apps.cli.chat_repl._setup_readline_history", lambda: None)
    monkeypatch.setattr("apps.cli.chat_repl._setup_completer", lambda: None)

    lines = iter(["", "hello", "/stats", "/history", "/bench 8 4", "/nope", "/clear", "/history", "/exit"])
    monkeypatch.setattr("builtins.input", lambda prompt="": next(lines))

    engine = FakeEngine(["hi there"])
    assert chat_repl(engine=engine) == 0

    captured = capsys.readouterr()
    assert "model=fake model" in captured.out
    assert "user: hello\nassistant: hi there" in captured.out
    assert "attempts=2" in captured.out
    assert "| pp 8 |" in captured.out
    assert "(cleared)" in captured.out
    assert "unknown command: /nope" in captured.err
    assert engine.bench_args == (8, 4, 1, 1)
    assert engine.cleared == 1
    assert [m.content for m in engine.requests[0].messages] == ["hello"]


def test_chat_repl_exits_on_eof(monkeypatch):
    monkeypatch.setattr("apps.cli.chat_repl._setup_readline_history", lambda: None)
    monkeypatch.setattr("apps.cli.chat_repl._setup_completer", lambda: None)

    def _eof(prompt=""):
        raise EOFError

    monkeypatch.setattr("builtins.input", _eof)
    assert chat_repl(engine=FakeEngine()) == 0
