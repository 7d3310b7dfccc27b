# services/context.py
"""Conversation context selection under a token budget"""
import logging
from typing import List, Optional, Sequence

from config import settings
from core.domain import ChatMessage
from core.interfaces import IChatRepository
from utils.common import estimate_tokens

logger = logging.getLogger(settings.LOGGER_NAME)


def trim_to_token_budget(
    messages: Sequence[ChatMessage],
    token_budget: int = settings.CONTEXT_TOKEN_BUDGET,
    max_turns: int = settings.CONTEXT_MAX_TURNS,
) -> List[ChatMessage]:
    """
    Walk messages newest-first, keeping each while the running token estimate
    stays within budget, stop at max_turns. Returned in chronological order.
    """
    selected: List[ChatMessage] = []
    total_tokens = 0
    for message in reversed(messages):
        if len(selected) >= max_turns:
            break
        tokens = estimate_tokens(message.content)
        if total_tokens + tokens > token_budget:
            break
        selected.append(message)
        total_tokens += tokens
    selected.reverse()
    return selected


class ContextService:
    """Fetches recent prior turns of a session and trims them for the prompt."""

    def __init__(
        self,
        repository: IChatRepository,
        max_messages: int = settings.CONTEXT_MAX_MESSAGES,
        token_budget: int = settings.CONTEXT_TOKEN_BUDGET,
        max_turns: int = settings.CONTEXT_MAX_TURNS,
    ):
        self.repository = repository
        self.max_messages = max_messages
        self.token_budget = token_budget
        self.max_turns = max_turns

    async def get_conversation_context(
        self, session_id: str, exclude_id: Optional[int] = None
    ) -> List[ChatMessage]:
        recent = await self.repository.get_recent_messages(
            session_id, self.max_messages, exclude_id=exclude_id
        )
        trimmed = trim_to_token_budget(recent, self.token_budget, self.max_turns)
        logger.debug(f"[CONTEXT] {session_id}: {len(recent)} recent -> {len(trimmed)} in prompt")
        return trimmed
