"""Runtime environment checks for pocketllm backends."""

from __future__ import annotations

import functools
import os

import torch


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def is_mps_available() -> bool:
    """Check if the Apple Metal (MPS) backend is available."""
    backend = getattr(torch.backends, "mps", None)
    if backend is None:
        return False
    return bool(backend.is_available())


def default_device() -> str:
    """Pick the preferred torch device for on-device inference."""
    if is_cuda_available():
        return "cuda"
    if is_mps_available():
        return "mps"
    return "cpu"


def default_thread_count() -> int:
    """CPU threads for decode: two cores left to the host, capped at 8."""
    cpu_count = os.cpu_count() or 1
    return max(1, min(8, cpu_count - 2))


def synchronize_device(device: str) -> None:
    """Wait for outstanding kernels on `device` to finish."""
    if device.startswith("cuda") and is_cuda_available():
        torch.cuda.synchronize()
    elif device.startswith("mps") and is_mps_available():
        torch.mps.synchronize()
