"""
pocketllm - On-device chat completion engine over a local language-model backend.

This package drives a local inference backend step by step: it renders a
multi-turn conversation into a prompt, fits it into the context window,
decodes it, samples tokens and streams well-formed text back to the caller.

Quick Start:
    from pocketllm import Session

    with Session.create("Qwen/Qwen2.5-0.5B-Instruct") as session:
        session.completion_init([("user", "Hello!")])
        while not session.is_done:
            print(session.completion_loop(), end="", flush=True)
        session.clear()

Submodules:
    - pocketllm.engine.session: Completion orchestrator (one per loaded model)
    - pocketllm.engine.chat_engine: Serialized async streaming with retry fallback
    - pocketllm.engine.backends: Inference backend interface and implementations
    - pocketllm.engine.prompting: Prompt composition and retry tiers
"""

from pocketllm._version import __version__

from pocketllm.engine.chat_engine import ChatEngine, EngineConfig
from pocketllm.engine.errors import (
    ContextInitError,
    ContextOverflow,
    DecodeFailure,
    EmptyGenerationExhausted,
    ModelLoadError,
    PocketLLMError,
    SessionBusyError,
    SessionClosedError,
    TokenizationFailure,
)
from pocketllm.engine.sampling import Deterministic, Stochastic, StochasticParams
from pocketllm.engine.session import Session, SessionConfig
from pocketllm.engine.types import CompletionRequest, Message

from pocketllm.runtime import (
    default_thread_count,
    is_cuda_available,
    is_mps_available,
)

__all__ = [
    # Version
    "__version__",
    # Engine
    "Session",
    "SessionConfig",
    "ChatEngine",
    "EngineConfig",
    # Requests
    "CompletionRequest",
    "Message",
    # Sampling
    "Stochastic",
    "Deterministic",
    "StochasticParams",
    # Errors
    "PocketLLMError",
    "ModelLoadError",
    "ContextInitError",
    "TokenizationFailure",
    "ContextOverflow",
    "DecodeFailure",
    "EmptyGenerationExhausted",
    "SessionBusyError",
    "SessionClosedError",
    # Runtime
    "default_thread_count",
    "is_cuda_available",
    "is_mps_available",
]
