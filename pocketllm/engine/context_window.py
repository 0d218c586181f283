"""Context window budgeting.

The context window holds prompt and generated tokens together. Planning keeps
the most recent prompt tokens that leave room for at least
`min_generation_reserve` new tokens, then sizes the generation budget to what
is left.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .backends.base import InferenceBackend
from .errors import ContextOverflow


@dataclass(frozen=True)
class ContextPlan:
    """Result of `plan_context`."""

    kept_tokens: tuple[int, ...]
    generation_budget: int
    truncated: int = 0

    @property
    def generation_end_position(self) -> int:
        return len(self.kept_tokens) + self.generation_budget


def plan_context(
    tokens: Sequence[int],
    *,
    context_size: int,
    min_generation_reserve: int,
    max_new_tokens: int,
) -> ContextPlan:
    """Fit a prompt into the context window.

    If the prompt would eat into the generation reserve, only the most recent
    `context_size - min_generation_reserve` tokens are kept (at least one).

    Raises:
        ContextOverflow: if no slot is left for generation, or the plan would
            not fit the window.
    """
    if context_size <= 0:
        raise ContextOverflow(f"Invalid context size: {context_size}.")

    kept = tuple(tokens)
    truncated = 0
    keep_limit = context_size - min_generation_reserve
    if len(kept) >= keep_limit:
        keep = max(1, keep_limit)
        truncated = max(len(kept) - keep, 0)
        kept = kept[-keep:]

    available = context_size - len(kept) - 1
    if available <= 0:
        raise ContextOverflow(
            f"No room left in context window for generation "
            f"(prompt={len(kept)} tokens, n_ctx={context_size})."
        )

    generation_budget = min(max_new_tokens, available)
    if len(kept) + generation_budget > context_size:
        raise ContextOverflow(
            f"Required KV cache size {len(kept) + generation_budget} exceeds n_ctx={context_size}."
        )

    return ContextPlan(kept_tokens=kept, generation_budget=generation_budget, truncated=truncated)


def reset_cache(backend: InferenceBackend) -> None:
    """Clear the backend's key-value cache; loaded weights are kept."""
    backend.memory_clear()
