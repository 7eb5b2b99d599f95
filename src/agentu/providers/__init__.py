"""Model backends for upstream AI providers."""

from .base import BackendContext, ChatRequest, ChatResponse, ModelBackend, StreamEvent, classify_http_error
from .registry import available_backends, lookup_backend, register_backend

__all__ = [
    "BackendContext",
    "ChatRequest",
    "ChatResponse",
    "ModelBackend",
    "StreamEvent",
    "available_backends",
    "classify_http_error",
    "lookup_backend",
    "register_backend",
]
