"""
Conversation history pruning for the model's context window.

Keeps the most recent messages that fit ``context_window - max_output_tokens``
after the system prompt; the newest message (the turn being answered) is
always kept.
"""

from collections.abc import Callable, Sequence

from ..core.logging import get_logger
from ..models.enums import MessageRole, MessageStatus
from ..models.records import MessageRecord
from ..utils.tokenization import MESSAGE_OVERHEAD_TOKENS, estimate_tokens

logger = get_logger(__name__)

PROMPT_ROLES = (MessageRole.SYSTEM, MessageRole.USER, MessageRole.ASSISTANT)


class ContextWindowManager:
    def __init__(self, history_limit: int = 50, token_estimator: Callable[[str], int] = estimate_tokens) -> None:
        self.history_limit = max(1, history_limit)
        self._estimate = token_estimator

    def _cost(self, content: str) -> int:
        return MESSAGE_OVERHEAD_TOKENS + self._estimate(content)

    def build_messages(
        self,
        history: Sequence[MessageRecord],
        *,
        context_window: int,
        max_output_tokens: int,
        system_prompt: str | None = None,
    ) -> list[dict[str, str]]:
        """Chat messages for a provider request, oldest first."""
        candidates = [m for m in history if m.status == MessageStatus.NORMAL and m.role in PROMPT_ROLES]
        candidates = candidates[-self.history_limit :]

        budget = context_window - max_output_tokens
        if system_prompt:
            budget -= self._cost(system_prompt)

        kept: list[MessageRecord] = []
        used = 0
        for message in reversed(candidates):
            cost = self._cost(message.content)
            if kept and used + cost > budget:
                break
            kept.append(message)
            used += cost
        kept.reverse()

        if len(kept) < len(candidates):
            logger.info(
                "Context window pruned",
                extra={"kept": len(kept), "dropped": len(candidates) - len(kept), "budget": budget},
            )

        messages = [{"role": m.role.value, "content": m.content} for m in kept]
        if system_prompt:
            messages.insert(0, {"role": MessageRole.SYSTEM.value, "content": system_prompt})
        return messages
