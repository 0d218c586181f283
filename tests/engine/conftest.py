from __future__ import annotations

from typing import Callable, Sequence

import pytest

from pocketllm.engine.backends.base import InferenceBackend
from pocketllm.engine.errors import DecodeFailure


class FakeBackend(InferenceBackend):
    """In-memory backend: one token per UTF-8 byte, scripted next-token logits.

    Token ids:
      - BOS / EOS are control tokens (empty pieces); EOS ends generation.
      - BYTE_BASE + b renders as the single byte b.
      - anything listed in `pieces` renders as the given bytes.
    """

    BOS = 1
    EOS = 2
    BYTE_BASE = 10
    N_VOCAB = 320

    def __init__(
        self,
        *,
        n_ctx: int = 256,
        chat_template: str | None = "fake",
        next_tokens: Sequence[int] = (),
        logits_fn: Callable[[int], object] | None = None,
        pieces: dict[int, bytes] | None = None,
        fail_decode_on: Sequence[int] = (),
        template_result: tuple[int, bytes] | None = None,
    ) -> None:
        self.n_ctx = n_ctx
        self._template = chat_template
        self.next_tokens = list(next_tokens)
        self.logits_fn = logits_fn
        self.pieces = dict(pieces or {})
        self.fail_decode_on = set(fail_decode_on)
        self.template_result = template_result

        self.decode_calls: list[list] = []
        self.tokenize_calls: list[int] = []
        self.template_lengths: list[int] = []
        self.piece_calls = 0
        self.memory_clears = 0
        self.sync_calls = 0
        self.closed = False

        self._n_past: dict[int, int] = {}
        self._logits: dict[int, object] = {}
        self._logit_step = 0

    # Helpers for tests -------------------------------------------------------

    @classmethod
    def text_tokens(cls, text: str) -> list[int]:
        return [cls.BYTE_BASE + b for b in text.encode("utf-8")]

    @classmethod
    def one_hot(cls, token: int, *, high: float = 10.0, low: float = -10.0):
        import torch

        logits = torch.full((cls.N_VOCAB,), low)
        logits[token] = high
        return logits

    # InferenceBackend --------------------------------------------------------

    def load(self, model_path: str, **kwargs) -> None:
        pass

    def close(self) -> None:
        self.closed = True

    @property
    def context_size(self) -> int:
        return self.n_ctx

    @property
    def n_vocab(self) -> int:
        return self.N_VOCAB

    @property
    def chat_template(self) -> str | None:
        return self._template

    @property
    def description(self) -> str:
        return "fake 0.5B F32"

    @property
    def size_bytes(self) -> int:
        return 1024 * 1024 * 1024

    @property
    def n_params(self) -> int:
        return 500_000_000

    def tokenize(self, text, n_tokens_max, *, add_special, parse_special=True):
        self.tokenize_calls.append(n_tokens_max)
        ids = ([self.BOS] if add_special else []) + self.text_tokens(text)
        if len(ids) > n_tokens_max:
            return -len(ids), []
        return len(ids), ids

    def token_to_piece(self, token, length, *, special=False):
        self.piece_calls += 1
        if token in (self.BOS, self.EOS) and not special:
            piece = b""
        elif token in self.pieces:
            piece = self.pieces[token]
        elif self.BYTE_BASE <= token < self.BYTE_BASE + 256:
            piece = bytes([token - self.BYTE_BASE])
        else:
            piece = b""
        if len(piece) > length:
            return -len(piece), b""
        return len(piece), piece

    def is_eog(self, token):
        return token == self.EOS

    def apply_chat_template(self, template, messages, *, add_assistant, length):
        self.template_lengths.append(length)
        if self.template_result is not None:
            n, data = self.template_result
            return n, data[:length]
        text = "".join(f"<|{m.role}|>{m.content}\n" for m in messages)
        if add_assistant:
            text += "<|assistant|>"
        data = text.encode("utf-8")
        return len(data), data[:length]

    def decode(self, batch) -> None:
        call = len(self.decode_calls)
        records = list(batch)
        self.decode_calls.append(records)
        if call in self.fail_decode_on:
            raise DecodeFailure(f"scripted failure on decode call {call}")

        for r in records:
            seq = r.seq_ids[0]
            expected = self._n_past.get(seq, 0)
            if r.position != expected:
                raise DecodeFailure(f"seq {seq}: position {r.position} != {expected}")
            if r.position >= self.n_ctx:
                raise DecodeFailure(f"seq {seq}: position {r.position} >= n_ctx {self.n_ctx}")
            self._n_past[seq] = expected + 1

        self._logits = {}
        for i, r in enumerate(records):
            if r.emit_logits:
                self._logits[i] = self._next_logits()

    def _next_logits(self):
        step = self._logit_step
        self._logit_step += 1
        if self.logits_fn is not None:
            return self.logits_fn(step)
        token = self.next_tokens[step] if step < len(self.next_tokens) else self.EOS
        return self.one_hot(token)

    def get_logits(self, index):
        if index not in self._logits:
            raise DecodeFailure(f"no logits for index {index}")
        return self._logits[index]

    def memory_clear(self) -> None:
        self.memory_clears += 1
        self._n_past.clear()
        self._logits = {}

    def synchronize(self) -> None:
        self.sync_calls += 1


@pytest.fixture
def make_backend() -> Callable[..., FakeBackend]:
    return FakeBackend
