"""Token estimation for quota pre-checks, rate limiting and context management.

Uses tiktoken with the cl100k_base encoding as the default. Counts are
estimates: providers report authoritative usage after each call, and those
reported numbers are what the quota ledger charges.
"""

from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Any

import structlog
import tiktoken

logger = structlog.get_logger(__name__)

DEFAULT_ENCODING = "cl100k_base"

# Per-message framing overhead used by chat-style APIs (role markers, separators)
MESSAGE_OVERHEAD_TOKENS = 4


@lru_cache(maxsize=4)
def _get_encoder(encoding_name: str = DEFAULT_ENCODING):
    """Get a cached tiktoken encoder, or None when it cannot be loaded."""
    try:
        return tiktoken.get_encoding(encoding_name)
    except Exception as e:
        logger.warning("tiktoken encoding unavailable, using heuristic", encoding=encoding_name, error=str(e))
        return None


def estimate_tokens(text: str, encoding: str | None = None) -> int:
    """Estimate the number of tokens in a text string.

    Falls back to ~4 characters per token when the encoding cannot be
    loaded (e.g. no network access for the BPE file).

    Example:
        >>> estimate_tokens("")
        0
    """
    if not text:
        return 0

    encoder = _get_encoder(encoding or DEFAULT_ENCODING)
    if encoder is not None:
        try:
            return len(encoder.encode(text, disallowed_special=()))
        except Exception as e:
            logger.warning("tiktoken encoding failed, using heuristic", error=str(e))

    return chars_to_tokens_estimate(len(text))


def estimate_message_tokens(messages: Iterable[Mapping[str, Any]], encoding: str | None = None) -> int:
    """Estimate the prompt size of a chat message list ({"role", "content"} dicts)."""
    total = 0
    for message in messages:
        total += MESSAGE_OVERHEAD_TOKENS + estimate_tokens(str(message.get("content") or ""), encoding)
    return total


def chars_to_tokens_estimate(chars: int) -> int:
    """Token count from character count, rounded up so non-empty text is never 0."""
    return (chars + 3) // 4
