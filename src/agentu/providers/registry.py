"""
Provider code -> backend lookup table.

Codes resolve exactly first, then by the family prefix before the first
``-`` (``openai-official`` and ``openai-premium`` both use the ``openai``
backend).
"""

from .anthropic import anthropic_dialect
from .base import ModelBackend
from .google import gemini_dialect
from .http_backend import HttpChatBackend
from .local import LocalEchoBackend
from .openai import openai_dialect, zhipu_dialect

_BACKENDS: dict[str, ModelBackend] = {
    "openai": HttpChatBackend(openai_dialect),
    "anthropic": HttpChatBackend(anthropic_dialect),
    "google": HttpChatBackend(gemini_dialect),
    "zhipu": HttpChatBackend(zhipu_dialect),
    "local": LocalEchoBackend(),
}


def register_backend(code: str, backend: ModelBackend) -> None:
    _BACKENDS[code.strip().lower()] = backend


def available_backends() -> list[str]:
    return sorted(_BACKENDS)


def lookup_backend(provider_code: str) -> ModelBackend | None:
    """Backend for a provider code, or None when nothing matches."""
    code = (provider_code or "").strip().lower()
    backend = _BACKENDS.get(code)
    if backend is None and "-" in code:
        backend = _BACKENDS.get(code.split("-", 1)[0])
    return backend
