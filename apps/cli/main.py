"""`pocketllm`: on-device chat CLI.

This is the CLI entrypoint. Run from source with:
  `python -m apps.cli.main --help`
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Sequence

from apps.cli.chat_repl import chat_repl
from apps.server.main import add_model_arguments, configure_logging, engine_config_from_args, load_session
from pocketllm.engine.chat_engine import ChatEngine
from pocketllm.engine.errors import ContextInitError, ModelLoadError


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pocketllm", description="On-device chat completion engine")
    sub = p.add_subparsers(dest="command")

    chat = sub.add_parser("chat", help="Interactive chat REPL")
    add_model_arguments(chat)
    chat.add_argument(
        "--deterministic",
        action="store_true",
        help="Use greedy decoding for every turn",
    )

    bench = sub.add_parser("bench", help="Measure prompt and generation throughput")
    add_model_arguments(bench)
    bench.add_argument("--pp", type=int, default=512, help="Prompt tokens (default: 512)")
    bench.add_argument("--tg", type=int, default=128, help="Generated tokens (default: 128)")
    bench.add_argument("--pl", type=int, default=1, help="Parallel sequences (default: 1)")
    bench.add_argument("--nr", type=int, default=3, help="Repeats (default: 3)")
    bench.add_argument("--no-warmup", dest="warmup", action="store_false", help="Skip the pp=8 tg=4 warmup run")
    bench.add_argument("--json", action="store_true", help="Machine-readable JSON output")

    info = sub.add_parser("info", help="Load a model and print its description")
    add_model_arguments(info)

    serve = sub.add_parser("serve", help="Run the OpenAI-style HTTP server")
    add_model_arguments(serve)
    serve.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    serve.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")
    serve.add_argument(
        "--http-max-concurrency",
        type=int,
        default=1,
        help="Max in-flight requests (0 = unlimited; default: 1)",
    )
    warmup_group = serve.add_mutually_exclusive_group()
    warmup_group.add_argument("--warmup", dest="warmup", action="store_true", help="Warm up after load (default)")
    warmup_group.add_argument("--no-warmup", dest="warmup", action="store_false", help="Disable startup warmup")
    serve.set_defaults(warmup=True)

    return p


def _run_bench(args: argparse.Namespace) -> int:
    with load_session(args) as session:
        if args.warmup:
            session.bench_result(8, 4, 1, 1)
        result = session.bench_result(args.pp, args.tg, args.pl, args.nr)
    if args.json:
        print(json.dumps(result.to_dict(), ensure_ascii=False, indent=2, sort_keys=True))
    else:
        print(result.to_markdown())
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(sys.argv[1:]) if argv is None else list(argv))

    if not args.command:
        parser.print_help()
        return 2

    if args.command == "serve":
        from apps.server.main import serve

        serve(args)
        return 0

    configure_logging(args.log_level)

    try:
        if args.command == "chat":
            engine = ChatEngine(load_session(args), config=engine_config_from_args(args))
            try:
                return chat_repl(engine=engine, deterministic=bool(args.deterministic))
            finally:
                engine.shutdown()
        if args.command == "bench":
            return _run_bench(args)
        if args.command == "info":
            with load_session(args) as session:
                print(session.model_info())
            return 0
    except (ModelLoadError, ContextInitError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2

    parser.error(f"Unknown command: {args.command!r}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
