"""Generative backend implementations."""

from .base import (
    CallRecorder,
    GenerativeBackend,
    InMemoryCallRecorder,
    StreamHandle,
    StreamItem,
)
from .openrouter import OpenRouterBackend
from .scripted import ScriptedBackend, ScriptedResponse

__all__ = [
    "CallRecorder",
    "GenerativeBackend",
    "InMemoryCallRecorder",
    "OpenRouterBackend",
    "ScriptedBackend",
    "ScriptedResponse",
    "StreamHandle",
    "StreamItem",
]
