"""Inference backend registry.

Maps backend names to their corresponding backend classes.
"""

from typing import Type

from .backends.base import InferenceBackend
from .backends.transformers import TransformersBackend

# Registry mapping backend names to backend classes
_BACKEND_REGISTRY: dict[str, Type[InferenceBackend]] = {
    "transformers": TransformersBackend,
}


def get_backend(name: str) -> InferenceBackend:
    """
    Get an unloaded backend instance by name.

    Args:
        name: Name of the backend (e.g., "transformers").

    Returns:
        A backend instance.

    Raises:
        ValueError: If the backend is not registered.
    """
    if name not in _BACKEND_REGISTRY:
        available = ", ".join(_BACKEND_REGISTRY.keys())
        raise ValueError(f"Unknown backend: {name!r}. Available: {available}")
    return _BACKEND_REGISTRY[name]()


def register_backend(name: str, backend_cls: Type[InferenceBackend]) -> None:
    """
    Register a new backend.

    Args:
        name: Name of the backend.
        backend_cls: Backend class (must inherit from InferenceBackend).
    """
    _BACKEND_REGISTRY[name] = backend_cls


def list_backends() -> list[str]:
    """Return list of registered backend names."""
    return list(_BACKEND_REGISTRY.keys())


def create_backend(name: str, model_path: str, **kwargs) -> InferenceBackend:
    """Instantiate backend `name` and load `model_path` into it."""
    backend = get_backend(name)
    backend.load(model_path, **kwargs)
    return backend
