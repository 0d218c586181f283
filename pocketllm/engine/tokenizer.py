"""Prompt rendering and buffer-retry tokenization over an inference backend."""

from __future__ import annotations

import logging
from typing import Sequence

from .backends.base import InferenceBackend
from .types import Message

logger = logging.getLogger(__name__)

PIECE_BUFFER_BYTES = 8
MIN_TEMPLATE_BUFFER_BYTES = 4096


def render_plain(messages: Sequence[Message]) -> str:
    """`role: content` lines, used when no chat template can be applied."""
    return "\n".join(f"{m.role}: {m.content}" for m in messages)


class TokenizerAdapter:
    """Stateless text <-> token conversion for one backend.

    Every backend call that writes into a caller-sized buffer is attempted at
    most twice: once with an estimated size and once with the exact size the
    backend reported.
    """

    def __init__(self, backend: InferenceBackend) -> None:
        self.backend = backend

    def render(self, messages: Sequence[Message]) -> str:
        """Format `messages` into a prompt, ending with an open assistant turn.

        Never raises: falls back to the plain rendering, and returns "" for no
        messages.
        """
        if not messages:
            return ""

        template = self.backend.chat_template
        if template is None:
            return render_plain(messages)

        # Rough upper bound: template markup is small compared to content.
        estimate = sum(len(m.content.encode("utf-8")) + 24 for m in messages) * 4
        length = max(MIN_TEMPLATE_BUFFER_BYTES, estimate)

        try:
            n, data = self.backend.apply_chat_template(template, messages, add_assistant=True, length=length)
            if n > length:
                length = n + 1
                n, data = self.backend.apply_chat_template(template, messages, add_assistant=True, length=length)
            if n < 0 or n > length:
                logger.warning("Chat template failed (n=%d); using plain rendering", n)
                return render_plain(messages)
            return data[:n].decode("utf-8")
        except (UnicodeEncodeError, UnicodeDecodeError) as exc:
            logger.warning("Chat template produced invalid text: %s; using plain rendering", exc)
            return render_plain(messages)

    def tokenize(self, text: str, *, add_leading_marker: bool = True) -> list[int]:
        """Token ids for `text`; an empty list means tokenization failed."""
        n_max = len(text.encode("utf-8")) + 2
        n, tokens = self.backend.tokenize(text, n_max, add_special=add_leading_marker, parse_special=True)
        if n < 0:
            n, tokens = self.backend.tokenize(text, -n, add_special=add_leading_marker, parse_special=True)
        if n <= 0:
            logger.debug("Tokenization failed (n=%d, chars=%d)", n, len(text))
            return []
        return list(tokens[:n])

    def detokenize_piece(self, token: int) -> bytes:
        """Raw bytes for `token` (may be a partial UTF-8 character)."""
        n, piece = self.backend.token_to_piece(token, PIECE_BUFFER_BYTES)
        if n < 0:
            n, piece = self.backend.token_to_piece(token, -n)
        if n < 0:
            return b""
        return piece[:n]
