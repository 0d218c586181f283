"""Engine request, state and report types.

These types are used by the session and the backends.
They are independent of any HTTP/CLI layer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Sequence


StopReason = Literal["eog", "length", "error", "cleared"]


@dataclass(frozen=True)
class Message:
    """A role-tagged conversation message."""

    role: str
    content: str

    @classmethod
    def coerce(cls, value: Any) -> "Message":
        """Accept a Message, a `(role, content)` pair or a `{"role", "content"}` mapping."""
        if isinstance(value, Message):
            return value
        if isinstance(value, dict):
            return cls(role=str(value.get("role", "")), content=str(value.get("content") or ""))
        if isinstance(value, (tuple, list)) and len(value) == 2:
            role, content = value
            return cls(role=str(role), content=str(content or ""))
        raise TypeError(f"Cannot interpret {value!r} as a chat message.")


def coerce_messages(messages: Iterable[Any]) -> list[Message]:
    return [Message.coerce(m) for m in messages]


@dataclass(frozen=True)
class CompletionRequest:
    """Immutable input to `Session.completion_init`."""

    messages: tuple[Message, ...]
    deterministic: bool = False

    @classmethod
    def of(cls, messages: Iterable[Any], *, deterministic: bool = False) -> "CompletionRequest":
        return cls(messages=tuple(coerce_messages(messages)), deterministic=deterministic)


@dataclass
class GenerationState:
    """Mutable per-session generation counters.

    Invariant: `n_cur <= generation_end_position` while `is_done` is False.
    """

    n_cur: int = 0
    n_decode: int = 0
    generation_end_position: int = 0
    is_done: bool = True
    stop_reason: StopReason | None = None

    def reset(self) -> None:
        self.n_cur = 0
        self.n_decode = 0
        self.generation_end_position = 0
        self.stop_reason = None


@dataclass(frozen=True)
class BenchResult:
    """Throughput measured by `Session.bench_result`."""

    model_desc: str
    model_size_bytes: int
    model_n_params: int
    backend: str
    prompt_len: int
    gen_len: int
    parallel_sequences: int
    repeats: int
    pp_samples: Sequence[float] = field(default_factory=tuple)
    tg_samples: Sequence[float] = field(default_factory=tuple)
    pp_avg: float = 0.0
    pp_std: float = 0.0
    tg_avg: float = 0.0
    tg_std: float = 0.0

    def to_markdown(self) -> str:
        size = f"{self.model_size_bytes / 1024.0 / 1024.0 / 1024.0:.2f} GiB"
        n_params = f"{self.model_n_params / 1e9:.2f} B"
        rows = [
            "| model | size | params | backend | test | t/s |",
            "| --- | --- | --- | --- | --- | --- |",
            f"| {self.model_desc} | {size} | {n_params} | {self.backend} | pp {self.prompt_len} "
            f"| {self.pp_avg:.2f} ± {self.pp_std:.2f} |",
            f"| {self.model_desc} | {size} | {n_params} | {self.backend} | tg {self.gen_len} "
            f"| {self.tg_avg:.2f} ± {self.tg_std:.2f} |",
        ]
        return "\n".join(rows) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model_desc,
            "size_bytes": self.model_size_bytes,
            "n_params": self.model_n_params,
            "backend": self.backend,
            "prompt_len": self.prompt_len,
            "gen_len": self.gen_len,
            "parallel_sequences": self.parallel_sequences,
            "repeats": self.repeats,
            "pp_tok_per_s": {"mean": self.pp_avg, "std": self.pp_std},
            "tg_tok_per_s": {"mean": self.tg_avg, "std": self.tg_std},
        }
