"""Completion orchestrator: one Session per loaded model.

A Session drives its backend through `completion_init` (render, tokenize,
plan the window, decode the prompt) and then one `completion_loop` call per
generated token until `is_done` turns true.

Thread Safety:
    Every public operation takes the session lock, so operations are mutually
    exclusive. Decode calls are compute-bound; call them off latency-sensitive
    threads.
"""

from __future__ import annotations

import logging
import statistics
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from .backends.base import InferenceBackend
from .batch import Batch
from .context_window import plan_context, reset_cache
from .detokenizer import DEFAULT_FLUSH_THRESHOLD, StreamingDetokenizer
from .errors import (
    ContextOverflow,
    DecodeFailure,
    SessionBusyError,
    SessionClosedError,
    TokenizationFailure,
)
from .sampling import Sampler, StochasticParams, make_sampler, strategy_for
from .tokenizer import TokenizerAdapter
from .types import BenchResult, CompletionRequest, GenerationState, StopReason

logger = logging.getLogger(__name__)

_SEQ = (0,)


@dataclass(frozen=True)
class SessionConfig:
    """Per-session generation limits and sampler defaults."""

    max_new_tokens: int = 512
    min_generation_reserve: int = 128
    first_token_max_resamples: int = 24
    pending_flush_bytes: int = DEFAULT_FLUSH_THRESHOLD
    min_batch_capacity: int = 512
    stochastic: StochasticParams = field(default_factory=StochasticParams)

    def validate(self) -> None:
        if self.max_new_tokens <= 0:
            raise ValueError("'max_new_tokens' must be > 0.")
        if self.min_generation_reserve < 0:
            raise ValueError("'min_generation_reserve' must be >= 0.")
        if self.first_token_max_resamples < 0:
            raise ValueError("'first_token_max_resamples' must be >= 0.")
        if self.pending_flush_bytes <= 0:
            raise ValueError("'pending_flush_bytes' must be > 0.")
        if self.min_batch_capacity <= 0:
            raise ValueError("'min_batch_capacity' must be > 0.")
        self.stochastic.validate()


class Session:
    """
    Exclusive owner of a loaded backend, its decode batch and the active sampler.

    Example:
        >>> with Session.create("Qwen/Qwen2.5-0.5B-Instruct") as session:
        ...     session.completion_init([("user", "Hi")])
        ...     text = ""
        ...     while not session.is_done:
        ...         text += session.completion_loop()
    """

    def __init__(self, backend: InferenceBackend, config: SessionConfig | None = None) -> None:
        self.config = config or SessionConfig()
        self.config.validate()

        self._backend = backend
        self._tokenizer = TokenizerAdapter(backend)
        self._batch = Batch(max(self.config.min_batch_capacity, backend.context_size))
        self._sampler: Sampler | None = make_sampler(strategy_for(False, self.config.stochastic))
        self._detokenizer = StreamingDetokenizer(flush_threshold=self.config.pending_flush_bytes)
        self._state = GenerationState()
        self._prompt_tokens = 0
        self._lock = threading.RLock()
        self._closed = False

    @classmethod
    def create(
        cls,
        model_path: str,
        *,
        backend: str = "transformers",
        config: SessionConfig | None = None,
        **kwargs: Any,
    ) -> "Session":
        """Load `model_path` with the named backend and wrap it in a Session.

        Raises:
            ModelLoadError: The model could not be loaded.
            ContextInitError: The inference context could not be created.
        """
        from .registry import create_backend

        return cls(create_backend(backend, model_path, **kwargs), config)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def backend(self) -> InferenceBackend:
        return self._backend

    @property
    def tokenizer(self) -> TokenizerAdapter:
        return self._tokenizer

    @property
    def sampler(self) -> Sampler | None:
        return self._sampler

    @property
    def is_done(self) -> bool:
        return self._state.is_done

    @property
    def stop_reason(self) -> StopReason | None:
        return self._state.stop_reason

    @property
    def n_cur(self) -> int:
        return self._state.n_cur

    @property
    def generation_end_position(self) -> int:
        return self._state.generation_end_position

    @property
    def prompt_tokens(self) -> int:
        """Prompt tokens kept in the window by the last `completion_init`."""
        return self._prompt_tokens

    @property
    def batch_capacity(self) -> int:
        return self._batch.capacity

    @property
    def closed(self) -> bool:
        return self._closed

    def get_n_decode(self) -> int:
        """Tokens emitted since the last `completion_init`."""
        return self._state.n_decode

    def get_n_tokens(self) -> int:
        """Records in the current batch."""
        return self._batch.n_tokens

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def completion_init(
        self,
        messages: CompletionRequest | Iterable[Any],
        deterministic: bool = False,
    ) -> None:
        """Prepare a completion and decode its prompt.

        Failures (empty prompt, tokenization, window overflow, decode) are
        logged and leave the session done; they are never raised.
        """
        if isinstance(messages, CompletionRequest):
            request = messages
        else:
            request = CompletionRequest.of(messages, deterministic=deterministic)

        with self._lock:
            self._check_open()
            self._state.reset()
            self._state.is_done = False
            self._detokenizer.reset()
            self._batch.clear()
            self._prompt_tokens = 0
            reset_cache(self._backend)
            self._select_sampler(request.deterministic)

            try:
                self._decode_prompt(request)
            except (TokenizationFailure, ContextOverflow, DecodeFailure) as exc:
                logger.warning("Completion aborted during init: %s", exc)
                self._finish("error")

    def _select_sampler(self, deterministic: bool) -> None:
        strategy = strategy_for(deterministic, self.config.stochastic)
        if self._sampler is not None and self._sampler.strategy == strategy:
            self._sampler.reset()
        else:
            self._sampler = make_sampler(strategy)

    def _decode_prompt(self, request: CompletionRequest) -> None:
        prompt = self._tokenizer.render(request.messages)
        if not prompt:
            raise TokenizationFailure("Rendered prompt is empty.")

        tokens = self._tokenizer.tokenize(prompt, add_leading_marker=True)
        if not tokens:
            raise TokenizationFailure(f"Could not tokenize prompt ({len(prompt)} chars).")

        plan = plan_context(
            tokens,
            context_size=self._backend.context_size,
            min_generation_reserve=self.config.min_generation_reserve,
            max_new_tokens=self.config.max_new_tokens,
        )
        if plan.truncated:
            logger.info("Prompt truncated: dropped %d earliest tokens", plan.truncated)

        kept = plan.kept_tokens
        self._state.generation_end_position = plan.generation_end_position
        self._batch.ensure_capacity(len(kept))
        self._batch.clear()
        for pos, token in enumerate(kept):
            self._batch.add(token, pos, _SEQ, False)
        self._batch.set_logits(self._batch.last_index, True)

        self._backend.decode(self._batch)
        self._state.n_cur = self._batch.n_tokens
        self._prompt_tokens = len(kept)
        logger.debug(
            "Prompt decoded: %d tokens, budget=%d, end=%d",
            len(kept),
            plan.generation_budget,
            plan.generation_end_position,
        )

    def completion_loop(self) -> str:
        """Generate one token and return the text it completed (may be "")."""
        with self._lock:
            self._check_open()
            state = self._state
            if state.is_done:
                return ""

            try:
                token, piece = self._sample_next()
            except DecodeFailure as exc:
                logger.error("Sampling failed: %s", exc)
                return self._finish("error")

            if self._backend.is_eog(token):
                return self._finish("eog")
            if state.n_cur >= state.generation_end_position:
                return self._finish("length")

            text = self._detokenizer.push(piece)

            self._batch.clear()
            self._batch.add(token, state.n_cur, _SEQ, True)
            try:
                self._backend.decode(self._batch)
            except DecodeFailure as exc:
                logger.error("Decode failed at position %d: %s", state.n_cur, exc)
                return text + self._finish("error")
            state.n_decode += 1
            state.n_cur += 1
            return text

    def _sample_next(self) -> tuple[int, bytes]:
        logits = self._backend.get_logits(self._batch.last_index)
        token = self._sampler.sample(logits)
        piece = self._tokenizer.detokenize_piece(token)
        if self._state.n_decode > 0:
            return token, piece

        # First token: never stop before anything was produced.
        attempts = 0
        while attempts < self.config.first_token_max_resamples and (
            self._backend.is_eog(token) or not piece
        ):
            attempts += 1
            token = self._sampler.sample(logits)
            piece = self._tokenizer.detokenize_piece(token)
        if attempts:
            logger.debug("First token resampled %d times (token=%d)", attempts, token)
        return token, piece

    def _finish(self, reason: StopReason) -> str:
        self._state.is_done = True
        self._state.stop_reason = reason
        return self._detokenizer.flush()

    # -------------------------------------------------------------------------
    # Reset / info
    # -------------------------------------------------------------------------

    def clear(self) -> None:
        """Abandon the current completion and reset all per-completion state."""
        with self._lock:
            self._check_open()
            self._state.reset()
            self._state.is_done = True
            self._state.stop_reason = "cleared"
            self._prompt_tokens = 0
            self._batch.clear()
            self._detokenizer.reset()
            if self._sampler is not None:
                self._sampler.reset()
            reset_cache(self._backend)

    def model_info(self) -> str:
        """One-line description of the loaded model."""
        with self._lock:
            self._check_open()
            b = self._backend
            size_gib = b.size_bytes / 1024.0 / 1024.0 / 1024.0
            return (
                f"{b.description} | {size_gib:.2f} GiB | {b.n_params / 1e9:.2f} B params "
                f"| {b.device_name} | n_ctx={b.context_size}"
            )

    # -------------------------------------------------------------------------
    # Benchmark
    # -------------------------------------------------------------------------

    def bench_result(self, pp: int, tg: int, pl: int, nr: int = 1) -> BenchResult:
        """Measure prompt-processing and generation throughput with placeholder tokens.

        Args:
            pp: Prompt tokens decoded in one batch.
            tg: Generation steps, each decoding one token per sequence.
            pl: Parallel sequences during generation.
            nr: Repeats.

        Raises:
            ValueError: Non-positive counts or counts that exceed the context.
            DecodeFailure: The backend rejected a bench batch.
        """
        if min(pp, tg, pl, nr) <= 0:
            raise ValueError(f"bench arguments must be positive (pp={pp}, tg={tg}, pl={pl}, nr={nr}).")

        with self._lock:
            self._check_open()
            n_ctx = self._backend.context_size
            if pp > n_ctx or tg > n_ctx:
                raise ValueError(f"bench pp={pp}/tg={tg} exceed n_ctx={n_ctx}.")

            self.clear()
            self._batch.ensure_capacity(max(pp, pl))
            pp_samples: list[float] = []
            tg_samples: list[float] = []

            try:
                for rep in range(nr):
                    self._batch.clear()
                    for i in range(pp):
                        self._batch.add(0, i, _SEQ, False)
                    self._batch.set_logits(self._batch.last_index, True)

                    reset_cache(self._backend)
                    t_pp_start = time.perf_counter()
                    self._backend.decode(self._batch)
                    self._backend.synchronize()
                    t_pp = time.perf_counter() - t_pp_start

                    reset_cache(self._backend)
                    t_tg_start = time.perf_counter()
                    for i in range(tg):
                        self._batch.clear()
                        for j in range(pl):
                            self._batch.add(0, i, (j,), True)
                        self._backend.decode(self._batch)
                        self._backend.synchronize()
                    t_tg = time.perf_counter() - t_tg_start

                    reset_cache(self._backend)

                    speed_pp = pp / max(t_pp, 1e-9)
                    speed_tg = (pl * tg) / max(t_tg, 1e-9)
                    pp_samples.append(speed_pp)
                    tg_samples.append(speed_tg)
                    logger.info(
                        "bench rep %d/%d: pp %.2f t/s, tg %.2f t/s", rep + 1, nr, speed_pp, speed_tg
                    )
            finally:
                self.clear()

            b = self._backend
            return BenchResult(
                model_desc=b.description,
                model_size_bytes=b.size_bytes,
                model_n_params=b.n_params,
                backend=b.device_name,
                prompt_len=pp,
                gen_len=tg,
                parallel_sequences=pl,
                repeats=nr,
                pp_samples=tuple(pp_samples),
                tg_samples=tuple(tg_samples),
                pp_avg=statistics.mean(pp_samples),
                pp_std=statistics.stdev(pp_samples) if nr > 1 else 0.0,
                tg_avg=statistics.mean(tg_samples),
                tg_std=statistics.stdev(tg_samples) if nr > 1 else 0.0,
            )

    def bench(self, pp: int, tg: int, pl: int, nr: int = 1) -> str:
        """Markdown throughput report; "" if the backend failed mid-benchmark."""
        try:
            return self.bench_result(pp, tg, pl, nr).to_markdown()
        except DecodeFailure as exc:
            logger.error("Benchmark aborted: %s", exc)
            return ""

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release sampler, batch, then backend. Refused mid-generation."""
        with self._lock:
            if self._closed:
                return
            if not self._state.is_done:
                raise SessionBusyError("Cannot close session while a completion is in progress; call clear() first.")
            self._sampler = None
            self._batch.release()
            self._backend.close()
            self._closed = True
            logger.info("Session closed")

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError("Session is closed.")

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        with self._lock:
            if not self._closed and not self._state.is_done:
                self.clear()
        self.close()
