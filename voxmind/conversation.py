"""
Conversation log: a bounded, ordered record of dialogue turns.

The log holds at most ``max_history`` messages. Eviction is FIFO and happens
immediately after each append, so the bound holds at every observable point.
The underlying list is mutated in place; request contexts keep a reference to
it and always see the current turns.
"""

from __future__ import annotations

import structlog

from voxmind.errors import ValidationError
from voxmind.types import ConversationMessage

logger = structlog.get_logger(__name__)


class ConversationManager:
    """Bounded FIFO log of ``ConversationMessage`` objects, most-recent-last."""

    def __init__(self, max_history: int = 50):
        if max_history < 1:
            raise ValidationError(
                "Conversation history cap must be at least 1",
                code="INVALID_HISTORY_CAP",
                details={"max_history": max_history},
            )
        self._max_history = int(max_history)
        self._history: list[ConversationMessage] = []

    @property
    def max_history(self) -> int:
        return self._max_history

    def add_message(self, message: ConversationMessage) -> None:
        self._history.append(message)
        overflow = len(self._history) - self._max_history
        if overflow > 0:
            del self._history[:overflow]
            logger.debug(
                "conversation.evicted",
                evicted=overflow,
                remaining=len(self._history),
            )

    def get_history(self) -> list[ConversationMessage]:
        """Return the live ordered log. Callers must treat it as read-only."""
        return self._history

    def recent(self, count: int) -> list[ConversationMessage]:
        if count <= 0:
            return []
        return self._history[-count:]

    def snapshot(self) -> list[ConversationMessage]:
        return list(self._history)

    def clear(self) -> None:
        self._history.clear()
        logger.info("conversation.cleared")

    def __len__(self) -> int:
        return len(self._history)
