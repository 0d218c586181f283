"""Token sampling strategies.

Two strategies are supported:

- `Stochastic(params)` ("chat"): repetition penalty (optional) -> top-k -> top-p
  -> min-p -> temperature -> seeded random draw.
- `Deterministic()` ("greedy"): always the highest-scoring token.

A sampler instance belongs to exactly one strategy. Switching strategy means
building a new sampler with `make_sampler`; staying on the same strategy only
calls `reset()`.
"""

from __future__ import annotations

import logging
import random
from collections import deque
from dataclasses import dataclass, field
from typing import Union

import torch

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StochasticParams:
    """Parameters of the chat sampler chain."""

    top_k: int = 40  # <= 0 disables
    top_p: float = 0.90  # 1.0 disables
    min_p: float = 0.05  # 0.0 disables
    temperature: float = 0.70  # <= 0.0 samples greedily
    min_keep: int = 1
    seed: int | None = None  # None: fresh random seed on every construction/reset
    penalty_last_n: int = 64
    penalty_repeat: float = 1.0  # 1.0 disables

    def validate(self) -> None:
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError("'top_p' must be in (0, 1].")
        if not 0.0 <= self.min_p <= 1.0:
            raise ValueError("'min_p' must be in [0, 1].")
        if self.min_keep < 1:
            raise ValueError("'min_keep' must be >= 1.")
        if self.penalty_last_n < 0:
            raise ValueError("'penalty_last_n' must be >= 0.")
        if self.penalty_repeat <= 0.0:
            raise ValueError("'penalty_repeat' must be > 0.")


@dataclass(frozen=True)
class Stochastic:
    params: StochasticParams = field(default_factory=StochasticParams)


@dataclass(frozen=True)
class Deterministic:
    pass


SamplingStrategy = Union[Stochastic, Deterministic]


def strategy_for(deterministic: bool, params: StochasticParams | None = None) -> SamplingStrategy:
    if deterministic:
        return Deterministic()
    return Stochastic(params or StochasticParams())


# =============================================================================
# Samplers
# =============================================================================


class Sampler:
    """Stateful logits -> token selector."""

    strategy: SamplingStrategy

    def sample(self, logits: torch.Tensor) -> int:
        """Pick a token from a 1-D logits row and record it as accepted."""
        token = self._select(logits.detach().reshape(-1).float().cpu())
        self.accept(token)
        return token

    def accept(self, token: int) -> None:
        pass

    def reset(self) -> None:
        pass

    def _select(self, logits: torch.Tensor) -> int:
        raise NotImplementedError


class GreedySampler(Sampler):
    def __init__(self) -> None:
        self.strategy = Deterministic()

    def _select(self, logits: torch.Tensor) -> int:
        return int(torch.argmax(logits).item())


class ChatSampler(Sampler):
    """Penalties -> top-k -> top-p -> min-p -> temperature -> dist."""

    def __init__(self, params: StochasticParams | None = None) -> None:
        params = params or StochasticParams()
        params.validate()
        self.strategy = Stochastic(params)
        self.params = params
        self._history: deque[int] = deque(maxlen=max(params.penalty_last_n, 1))
        self._generator = torch.Generator(device="cpu")
        self.seed = self._reseed()

    def _reseed(self) -> int:
        seed = self.params.seed if self.params.seed is not None else random.randint(1, 2**32 - 1)
        self._generator.manual_seed(seed)
        return seed

    def accept(self, token: int) -> None:
        if self.params.penalty_last_n > 0:
            self._history.append(int(token))

    def reset(self) -> None:
        self._history.clear()
        self.seed = self._reseed()

    def _select(self, logits: torch.Tensor) -> int:
        p = self.params
        logits = logits.clone()

        logits = apply_repetition_penalty(logits, list(self._history), p.penalty_repeat)
        logits = apply_top_k(logits, p.top_k)
        logits = apply_top_p(logits, p.top_p, min_keep=p.min_keep)
        logits = apply_min_p(logits, p.min_p, min_keep=p.min_keep)

        if p.temperature <= 0.0:
            return int(torch.argmax(logits).item())
        logits = logits / float(p.temperature)

        probs = torch.softmax(logits, dim=-1)
        if torch.isnan(probs).any() or not bool((probs.sum() > 0).item()):
            logger.debug("Degenerate distribution; falling back to argmax")
            return int(torch.argmax(logits).item())
        return int(torch.multinomial(probs, 1, generator=self._generator).item())


def make_sampler(strategy: SamplingStrategy) -> Sampler:
    """Build a fresh sampler for `strategy`."""
    if isinstance(strategy, Deterministic):
        return GreedySampler()
    if isinstance(strategy, Stochastic):
        return ChatSampler(strategy.params)
    raise TypeError(f"Unknown sampling strategy: {strategy!r}")


# =============================================================================
# Chain stages (1-D float logits in, filtered logits out)
# =============================================================================


def apply_repetition_penalty(logits: torch.Tensor, history: list[int], penalty: float) -> torch.Tensor:
    if penalty == 1.0 or not history:
        return logits
    ids = torch.tensor(sorted(set(history)), dtype=torch.long)
    ids = ids[(ids >= 0) & (ids < logits.numel())]
    if ids.numel() == 0:
        return logits
    selected = logits[ids]
    logits[ids] = torch.where(selected > 0, selected / penalty, selected * penalty)
    return logits


def apply_top_k(logits: torch.Tensor, k: int) -> torch.Tensor:
    if k <= 0 or k >= logits.numel():
        return logits
    kth = torch.topk(logits, k).values[-1]
    return logits.masked_fill(logits < kth, float("-inf"))


def apply_top_p(logits: torch.Tensor, p: float, *, min_keep: int = 1) -> torch.Tensor:
    if p >= 1.0:
        return logits
    sorted_logits, sorted_idx = torch.sort(logits, descending=True)
    cumulative = torch.cumsum(torch.softmax(sorted_logits, dim=-1), dim=-1)
    # Keep the smallest prefix whose mass reaches p.
    remove = cumulative > p
    remove[1:] = remove[:-1].clone()
    remove[: min(min_keep, remove.numel())] = False
    mask = torch.zeros_like(remove).scatter(0, sorted_idx, remove)
    return logits.masked_fill(mask, float("-inf"))


def apply_min_p(logits: torch.Tensor, p: float, *, min_keep: int = 1) -> torch.Tensor:
    if p <= 0.0:
        return logits
    probs = torch.softmax(logits, dim=-1)
    remove = probs < p * probs.max()
    if int((~remove).sum().item()) < min_keep:
        keep_idx = torch.topk(probs, min(min_keep, probs.numel())).indices
        remove[keep_idx] = False
    return logits.masked_fill(remove, float("-inf"))
