"""
Bounded conversation history.

A session keeps only its most recent exchanges so the context forwarded to
the reply generator stays small. User and assistant messages share the
same window and the oldest entry is dropped first.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence

from concierge.schemas import ChatMessage, MessageRole

HISTORY_LIMIT = 3


def new_message(role: MessageRole, content: str, now: Optional[datetime] = None) -> ChatMessage:
    """Create a history entry stamped with the current UTC time."""
    return ChatMessage(
        role=MessageRole(role),
        content=content,
        timestamp=now or datetime.now(timezone.utc),
    )


def append_message(
    history: Sequence[ChatMessage],
    message: ChatMessage,
    limit: int = HISTORY_LIMIT,
) -> list[ChatMessage]:
    """
    Return a new history with `message` appended and trimmed to `limit`.

    The input sequence is left untouched.
    """
    if limit < 1:
        raise ValueError("history limit must be at least 1")
    return [*history, message][-limit:]
