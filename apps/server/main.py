"""PocketLLM inference server entrypoint (FastAPI + OpenAI-style Chat Completions).

Example:
    python -m apps.server.main --model Qwen/Qwen2.5-0.5B-Instruct --host 127.0.0.1 --port 8787
"""

from __future__ import annotations

import argparse
import logging
import os
import time
from typing import Any

from pocketllm.engine.chat_engine import ChatEngine, EngineConfig
from pocketllm.engine.prompting import DEFAULT_MAX_PROMPT_CHARS, DEFAULT_SYSTEM_PROMPT
from pocketllm.engine.registry import list_backends
from pocketllm.engine.sampling import StochasticParams
from pocketllm.engine.session import Session, SessionConfig

MODEL_ENV_VAR = "POCKETLLM_MODEL"


def add_model_arguments(p: argparse.ArgumentParser) -> None:
    """Flags shared by every entry point that loads a model."""
    p.add_argument(
        "--model",
        default=os.environ.get(MODEL_ENV_VAR),
        help=f"Model path, GGUF file or HF repo id (default: ${MODEL_ENV_VAR})",
    )
    p.add_argument("--backend", default="transformers", choices=list_backends(), help="Inference backend")
    p.add_argument("--n-ctx", type=int, default=2048, help="Context size in tokens (default: 2048)")
    p.add_argument("--threads", type=int, default=None, help="CPU threads (default: max(1, min(8, cpu_count - 2)))")
    p.add_argument("--device", default=None, help="Torch device (default: cuda, then mps, then cpu)")
    p.add_argument("--dtype", default=None, help="Torch dtype: float16|bfloat16|float32")
    p.add_argument("--max-new-tokens", type=int, default=512, help="Generation cap per reply (default: 512)")
    p.add_argument(
        "--min-generation-reserve",
        type=int,
        default=128,
        help="Tokens kept free for generation when truncating prompts (default: 128)",
    )
    p.add_argument("--seed", type=int, default=None, help="Pin the chat sampler seed")
    p.add_argument("--system-prompt", default=DEFAULT_SYSTEM_PROMPT, help="Default system prompt")
    p.add_argument(
        "--max-prompt-chars",
        type=int,
        default=DEFAULT_MAX_PROMPT_CHARS,
        help=f"History budget in bytes (default: {DEFAULT_MAX_PROMPT_CHARS})",
    )
    p.add_argument("--no-think", action="store_true", help="Prefix user turns with /no_think")
    p.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def dtype_from_string(dtype: str | None) -> Any:
    if dtype is None:
        return None

    import torch

    dt = dtype.strip().lower()
    if dt in {"fp16", "float16", "half"}:
        return torch.float16
    if dt in {"bf16", "bfloat16"}:
        return torch.bfloat16
    if dt in {"fp32", "float32"}:
        return torch.float32
    raise ValueError(f"Unknown dtype: {dtype!r}")


def load_session(args: argparse.Namespace) -> Session:
    """Create a Session from parsed model flags (errors propagate)."""
    if not args.model:
        raise SystemExit(f"No model given. Pass --model or set {MODEL_ENV_VAR}.")

    config = SessionConfig(
        max_new_tokens=int(args.max_new_tokens),
        min_generation_reserve=int(args.min_generation_reserve),
        stochastic=StochasticParams(seed=args.seed),
    )
    return Session.create(
        args.model,
        backend=args.backend,
        config=config,
        n_ctx=int(args.n_ctx),
        n_threads=args.threads,
        device=args.device,
        dtype=dtype_from_string(args.dtype),
    )


def engine_config_from_args(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig(
        system_prompt=args.system_prompt,
        max_prompt_chars=int(args.max_prompt_chars),
        no_think=bool(args.no_think),
    )


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="PocketLLM inference server")
    add_model_arguments(p)
    p.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    p.add_argument("--port", type=int, default=8787, help="Bind port (default: 8787)")
    p.add_argument(
        "--http-max-concurrency",
        type=int,
        default=1,
        help="Max in-flight requests (0 = unlimited; default: 1)",
    )

    warmup_group = p.add_mutually_exclusive_group()
    warmup_group.add_argument(
        "--warmup",
        dest="warmup",
        action="store_true",
        help="Run a short blocking decode warmup after model load (default: on)",
    )
    warmup_group.add_argument(
        "--no-warmup",
        dest="warmup",
        action="store_false",
        help="Disable startup warmup",
    )
    p.set_defaults(warmup=True)
    return p.parse_args(argv)


def _run_blocking_warmup(session: Session) -> None:
    t0 = time.time()
    print("[warmup] starting: pp=8 tg=4 pl=1", flush=True)
    session.bench_result(8, 4, 1, 1)
    print(f"[warmup] done in {time.time() - t0:.2f}s", flush=True)


def serve(args: argparse.Namespace) -> None:
    configure_logging(args.log_level)

    print(
        "[server] loading model... "
        f"model={args.model!r} backend={args.backend!r} n_ctx={int(args.n_ctx)} "
        f"device={args.device!r} dtype={args.dtype!r}",
        flush=True,
    )
    session = load_session(args)
    print(f"[server] model loaded: {session.model_info()}", flush=True)

    if bool(args.warmup):
        _run_blocking_warmup(session)
    else:
        print("[server] warmup disabled", flush=True)

    engine = ChatEngine(session, config=engine_config_from_args(args))

    from apps.server.app import create_app

    model_id = os.path.basename(str(args.model).rstrip("/")) or "pocketllm"
    app = create_app(
        engine=engine,
        model_id=model_id,
        http_max_concurrency=None if args.http_max_concurrency <= 0 else int(args.http_max_concurrency),
    )

    import uvicorn

    try:
        uvicorn.run(app, host=args.host, port=args.port, log_level=str(args.log_level).lower())
    finally:
        engine.shutdown()
        print("[server] stopped", flush=True)


def main(argv: list[str] | None = None) -> None:
    serve(_parse_args(argv))


if __name__ == "__main__":
    main()
