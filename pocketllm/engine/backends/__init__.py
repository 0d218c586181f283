# Inference backends
#
# Each backend implements a common interface for:
#   - Loading a model and creating its inference context
#   - Tokenizing, detokenizing and applying chat templates
#   - Decoding batches and exposing per-row logits
#
# The engine uses backends to stay model-agnostic.

from .base import InferenceBackend

__all__ = ["InferenceBackend"]
