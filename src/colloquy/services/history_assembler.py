from __future__ import annotations

import logging
from typing import Collection, List, Sequence

from src.colloquy.config import DEFAULT_HISTORY_MAX_MESSAGES, DEFAULT_HISTORY_MAX_TOKENS
from src.colloquy.models.session import ConversationTurn, Message

logger = logging.getLogger(__name__)


def estimate_tokens(text: str) -> int:
    """
    Rough heuristic: assume 4 characters per token with a minimum floor of 1.
    """
    normalized = (text or "").strip()
    if not normalized:
        return 0
    return max(1, int((len(normalized) + 3) / 4))


class HistoryAssembler:
    """
    Derive the bounded, ordered context injected into the next completion call.

    The result is the longest suffix of the committed message sequence that fits
    both ``max_messages`` and ``max_tokens``. Older messages are dropped first and
    a message is never split; the first message (walking backward) that would
    overflow either bound ends the window.
    """

    def __init__(
        self,
        max_messages: int = DEFAULT_HISTORY_MAX_MESSAGES,
        max_tokens: int = DEFAULT_HISTORY_MAX_TOKENS,
    ) -> None:
        if max_messages < 0 or max_tokens < 0:
            raise ValueError("History budget values must be non-negative.")
        self.max_messages = max_messages
        self.max_tokens = max_tokens

    def assemble(
        self,
        messages: Sequence[Message],
        exclude_ids: Collection[str] = (),
    ) -> List[ConversationTurn]:
        """
        Build the history window from messages given in stored order.

        Args:
            messages: Committed messages, oldest first.
            exclude_ids: Ids of in-flight messages that must not appear in context.

        Returns:
            ConversationTurn entries, oldest first.
        """
        window: List[ConversationTurn] = []
        used_tokens = 0
        trimmed = False
        for message in reversed(messages):
            if message.id in exclude_ids:
                continue
            cost = estimate_tokens(message.content)
            if len(window) >= self.max_messages or used_tokens + cost > self.max_tokens:
                trimmed = True
                break
            used_tokens += cost
            window.append(ConversationTurn(role=message.role, content=message.content))

        window.reverse()
        if trimmed:
            logger.debug(
                "History trimmed to %d of %d message(s) (~%d tokens)",
                len(window),
                len(messages),
                used_tokens,
            )
        return window
