"""Streaming detokenization of per-token byte pieces.

A single token may decode to part of a multi-byte UTF-8 character. Pieces are
accumulated until the pending bytes form valid text; only then is anything
emitted. A stuck partial character is released lossily once the pending buffer
reaches `flush_threshold` bytes, or when the stream is flushed.
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_THRESHOLD = 12


class StreamingDetokenizer:
    """Byte accumulator that only ever emits well-formed text."""

    def __init__(self, *, flush_threshold: int = DEFAULT_FLUSH_THRESHOLD) -> None:
        if flush_threshold <= 0:
            raise ValueError(f"flush_threshold must be > 0, got {flush_threshold}")
        self.flush_threshold = flush_threshold
        self._pending = bytearray()

    @property
    def pending(self) -> bytes:
        return bytes(self._pending)

    def push(self, piece: bytes) -> str:
        """Append one token's piece and return whatever text is now complete."""
        if piece:
            self._pending.extend(piece)
        return self._drain(flush=False)

    def flush(self) -> str:
        """Emit everything still buffered (lossy if it is not valid UTF-8)."""
        return self._drain(flush=True)

    def reset(self) -> None:
        self._pending.clear()

    def _drain(self, *, flush: bool) -> str:
        if not self._pending:
            return ""

        data = bytes(self._pending)
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            if not flush and len(data) < self.flush_threshold:
                # Presumed partial multi-byte character; wait for continuation bytes.
                return ""
            logger.debug("Lossy decode of %d pending bytes (flush=%s)", len(data), flush)
            text = data.decode("utf-8", errors="replace")

        self._pending.clear()
        return text
