"""Error taxonomy for the completion engine.

Session-creation errors (`ModelLoadError`, `ContextInitError`) propagate to the
caller. Once a Session exists, `TokenizationFailure`, `ContextOverflow` and
`DecodeFailure` are absorbed by the Session: they are logged and the current
completion is marked done.
"""

from __future__ import annotations


class PocketLLMError(Exception):
    """Base class for all engine errors."""


class ModelLoadError(PocketLLMError):
    """The model file is missing, corrupted, or incompatible with the backend."""

    def __init__(self, path: str, reason: str | None = None) -> None:
        self.path = path
        self.reason = reason
        message = f"Could not load model file at {path}. The model may be incompatible or corrupted."
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ContextInitError(PocketLLMError):
    """The model loaded but its inference context could not be created."""

    def __init__(self, path: str, reason: str | None = None) -> None:
        self.path = path
        self.reason = reason
        message = (
            f"Model loaded but context initialization failed for {path}. "
            "Try a smaller model or a smaller context size."
        )
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class TokenizationFailure(PocketLLMError):
    """The prompt could not be converted to tokens."""


class ContextOverflow(PocketLLMError):
    """No room in the context window for the prompt plus generation."""


class DecodeFailure(PocketLLMError):
    """A backend decode call returned an error."""


class EmptyGenerationExhausted(PocketLLMError):
    """Every retry tier produced an empty reply."""

    def __init__(self, attempts: int, generated_tokens: int) -> None:
        self.attempts = attempts
        self.generated_tokens = generated_tokens
        super().__init__(
            f"All {attempts} completion attempts produced empty output "
            f"({generated_tokens} tokens generated)."
        )


class SessionBusyError(PocketLLMError):
    """The session is mid-generation and cannot be torn down."""


class SessionClosedError(PocketLLMError):
    """The session has been closed and its backend released."""
