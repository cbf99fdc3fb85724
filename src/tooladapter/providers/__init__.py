"""Backend implementations."""

from .base import Backend, BackendCapabilities
from .mock import MockBackend
from .openai import OpenAIBackend

__all__ = [
    "Backend",
    "BackendCapabilities",
    "MockBackend",
    "OpenAIBackend",
]
