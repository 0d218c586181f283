from __future__ import annotations

import atexit
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

# Enable readline for arrow keys, history navigation, and line editing.
try:
    import readline
except ImportError:
    readline = None  # type: ignore[assignment]  # Windows fallback

from pocketllm.engine.chat_engine import ChatEngine
from pocketllm.engine.chat_types import ChatRequest, ChatResult, DeltaEvent, RetryEvent, StreamEvent
from pocketllm.engine.errors import PocketLLMError
from pocketllm.engine.types import Message


def _chat_history_file_path() -> Path:
    return Path.home() / ".config" / "pocketllm" / "chat_history"


def _setup_readline_history() -> None:
    """Set up persistent command history for the REPL."""
    if readline is None:
        return
    history_file = _chat_history_file_path()
    history_file.parent.mkdir(parents=True, exist_ok=True)
    try:
        readline.read_history_file(history_file)
    except FileNotFoundError:
        pass
    readline.set_history_length(1000)
    atexit.register(readline.write_history_file, history_file)


# Commands for tab completion
_CHAT_COMMANDS = ["/help", "/exit", "/clear", "/bench", "/info", "/stats", "/history"]


def _setup_completer() -> None:
    """Set up tab completion for REPL commands."""
    if readline is None:
        return

    def completer(text: str, state: int) -> str | None:
        if text.startswith("/"):
            matches = [cmd for cmd in _CHAT_COMMANDS if cmd.startswith(text)]
        else:
            matches = []
        return matches[state] if state < len(matches) else None

    readline.set_completer(completer)
    readline.set_completer_delims(" \t\n")
    readline.parse_and_bind("tab: complete")


@dataclass
class TurnStats:
    finish_reason: str
    prompt_tokens: int
    completion_tokens: int
    total_s: float | None
    tok_per_s: float | None
    attempts: int


def _stats_from_result(result: ChatResult) -> TurnStats:
    return TurnStats(
        finish_reason=result.finish_reason,
        prompt_tokens=result.usage.prompt_tokens,
        completion_tokens=result.usage.completion_tokens,
        total_s=result.timing.total_s,
        tok_per_s=result.timing.tok_per_s,
        attempts=result.attempts,
    )


def _format_metrics(stats: TurnStats) -> str:
    parts: list[str] = []
    if stats.tok_per_s is not None:
        parts.append(f"tok/s={stats.tok_per_s:.2f}")
    parts.append(f"tokens={stats.prompt_tokens}+{stats.completion_tokens}")
    parts.append(f"finish={stats.finish_reason}")
    if stats.attempts > 1:
        parts.append(f"attempts={stats.attempts}")
    if stats.total_s is not None:
        parts.append(f"wall={stats.total_s:.3f}s")
    return " ".join(parts)


def _cmd_help() -> None:
    print(
        "\n".join(
            [
                "commands:",
                "  /help",
                "  /exit           exit",
                "  /clear          forget the conversation and reset the session",
                "  /bench [pp tg pl nr]  run a throughput benchmark (default: 512 128 1 1)",
                "  /info           show model info",
                "  /stats          show last turn metrics",
                "  /history        show the conversation so far",
            ]
        )
    )


def _parse_bench_args(parts: list[str]) -> tuple[int, int, int, int]:
    defaults = [512, 128, 1, 1]
    values = [int(p) for p in parts[:4]]
    values += defaults[len(values) :]
    return values[0], values[1], values[2], values[3]


def run_chat_turn(
    engine: ChatEngine,
    history: list[Message],
    *,
    deterministic: bool = False,
    out=None,
) -> ChatResult:
    """Generate one reply on a worker thread; Ctrl+C stops between tokens."""
    out = out or sys.stdout
    cancel = threading.Event()
    box: dict[str, object] = {}

    def emit(event: StreamEvent) -> None:
        if isinstance(event, DeltaEvent):
            out.write(event.text)
            out.flush()
        elif isinstance(event, RetryEvent):
            out.write(f"\n[{event.notice or event.tier}]\n")
            out.flush()

    def worker() -> None:
        try:
            box["result"] = engine.complete(
                ChatRequest(messages=list(history), deterministic=deterministic),
                emit=emit,
                should_stop=cancel.is_set,
            )
        except Exception as exc:
            box["error"] = exc

    thread = threading.Thread(target=worker, name="pocketllm-chat", daemon=True)
    thread.start()
    try:
        while thread.is_alive():
            thread.join(timeout=0.1)
    except KeyboardInterrupt:
        cancel.set()
        thread.join()
        out.write("\n(cancelled)")

    out.write("\n")
    out.flush()
    if "error" in box:
        raise box["error"]  # type: ignore[misc]
    return box["result"]  # type: ignore[return-value]


def chat_repl(*, engine: ChatEngine, deterministic: bool = False) -> int:
    _setup_readline_history()
    _setup_completer()

    print(f"model={engine.model_info()}")
    print("type /help for commands")

    history: list[Message] = []
    last_stats: TurnStats | None = None

    while True:
        try:
            raw = input("pocketllm> ")
        except EOFError:
            print()
            return 0
        except KeyboardInterrupt:
            print("^C")
            continue

        line = raw.strip()
        if not line:
            continue

        if line.startswith("/"):
            parts = line[1:].split()
            cmd = parts[0].lower() if parts else ""
            args = parts[1:]

            if cmd in {"exit", "quit"}:
                return 0
            if cmd == "help":
                _cmd_help()
                continue
            if cmd == "clear":
                history.clear()
                engine.clear()
                print("(cleared)")
                continue
            if cmd == "info":
                print(engine.model_info())
                continue
            if cmd == "stats":
                print(_format_metrics(last_stats) if last_stats else "(no turns yet)")
                continue
            if cmd == "history":
                for m in history:
                    print(f"{m.role}: {m.content}")
                continue
            if cmd == "bench":
                try:
                    pp, tg, pl, nr = _parse_bench_args(args)
                    print(engine.bench(pp, tg, pl, nr).to_markdown())
                except (ValueError, PocketLLMError) as exc:
                    print(f"error: {exc}", file=sys.stderr)
                continue
            print(f"unknown command: /{cmd} (try /help)", file=sys.stderr)
            continue

        history.append(Message("user", line))
        result = run_chat_turn(engine, history, deterministic=deterministic)
        history.append(Message("assistant", result.content))
        last_stats = _stats_from_result(result)
        print(_format_metrics(last_stats))
