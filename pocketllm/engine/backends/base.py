"""Base interface for inference backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    import torch

    from ..batch import Batch
    from ..types import Message


class InferenceBackend(ABC):
    """
    Abstract base class for inference backends.

    A backend owns the loaded model and its inference context (key-value
    cache). The engine treats it as an opaque collaborator reached through a
    narrow interface that keeps native buffer conventions: size-bounded calls
    return a negative count when the output does not fit, and the magnitude is
    the required capacity.

    Thread Safety:
        Backends are NOT thread-safe. The owning Session serializes access.
    """

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    def load(self, model_path: str, **kwargs) -> None:
        """
        Load the model and create its inference context.

        Args:
            model_path: Local path or hub identifier.
            **kwargs: Backend-specific options (n_ctx, device, threads, ...).

        Raises:
            ModelLoadError: The model could not be loaded.
            ContextInitError: The model loaded but the context could not be created.
        """

    def close(self) -> None:
        """
        Release context and model resources, in that order.

        Default implementation does nothing; override if cleanup is needed.
        """

    # -------------------------------------------------------------------------
    # Read-only properties
    # -------------------------------------------------------------------------

    @property
    @abstractmethod
    def context_size(self) -> int:
        """Maximum number of tokens the context can hold."""

    @property
    @abstractmethod
    def n_vocab(self) -> int:
        """Vocabulary size."""

    @property
    def chat_template(self) -> str | None:
        """The model's chat template, or None if it ships none."""
        return None

    @property
    def description(self) -> str:
        """Short human-readable model description."""
        return type(self).__name__

    @property
    def size_bytes(self) -> int:
        return 0

    @property
    def n_params(self) -> int:
        return 0

    @property
    def device_name(self) -> str:
        return "cpu"

    # -------------------------------------------------------------------------
    # Vocabulary
    # -------------------------------------------------------------------------

    @abstractmethod
    def tokenize(
        self,
        text: str,
        n_tokens_max: int,
        *,
        add_special: bool,
        parse_special: bool = True,
    ) -> tuple[int, list[int]]:
        """
        Convert text to token ids.

        Returns:
            `(n, tokens)`. If `n < 0` the result needed `-n` slots and `tokens`
            is empty.
        """

    @abstractmethod
    def token_to_piece(self, token: int, length: int, *, special: bool = False) -> tuple[int, bytes]:
        """
        Raw bytes for a single token.

        Returns:
            `(n, piece)`. If `n < 0` the piece needs `-n` bytes and `piece` is
            empty. Control tokens render as an empty piece unless `special`.
        """

    @abstractmethod
    def is_eog(self, token: int) -> bool:
        """True if `token` marks the end of generation."""

    def apply_chat_template(
        self,
        template: str,
        messages: Sequence[Message],
        *,
        add_assistant: bool,
        length: int,
    ) -> tuple[int, bytes]:
        """
        Render `messages` with `template`.

        Returns:
            `(n, data)` where `n` is the full rendered length in bytes and
            `data` holds at most `length` of them. `n < 0` if the template
            could not be applied.
        """
        return -1, b""

    # -------------------------------------------------------------------------
    # Decode
    # -------------------------------------------------------------------------

    @abstractmethod
    def decode(self, batch: Batch) -> None:
        """
        Run the model over `batch`, advancing the key-value cache.

        Raises:
            DecodeFailure: The backend rejected the batch or the forward pass failed.
        """

    @abstractmethod
    def get_logits(self, index: int) -> torch.Tensor:
        """Logits row for batch record `index` from the last decode."""

    @abstractmethod
    def memory_clear(self) -> None:
        """Clear the key-value cache without unloading weights."""

    def synchronize(self) -> None:
        """Wait for outstanding decode work to finish."""
