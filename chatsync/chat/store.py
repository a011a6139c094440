"""In-memory index of conversations and their messages."""

from __future__ import annotations

import logging
from dataclasses import replace
from enum import Enum

from chatsync.chat.models import Conversation, Message, derive_title

logger = logging.getLogger(__name__)


class UpsertOutcome(str, Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"

    @property
    def changed(self) -> bool:
        return self is not UpsertOutcome.UNCHANGED


class ConversationStore:
    """Owns the conversation id -> Conversation and id -> [Message] maps.

    Message lists are kept sorted by timestamp and hold each ``message_id``
    at most once. Every mutation completes synchronously.
    """

    def __init__(self, title_max_length: int = 50) -> None:
        self._title_max_length = title_max_length
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}

    # -- Messages --------------------------------------------------------------

    def upsert_message(self, message: Message) -> UpsertOutcome:
        """Insert *message*, or replace the stored message with the same id.

        Raises ValueError when the message has no conversation id.
        """
        conversation_id = message.conversation_id
        if not conversation_id:
            raise ValueError(f"Message {message.message_id} has no conversation_id")

        messages = self._messages.setdefault(conversation_id, [])
        outcome = UpsertOutcome.INSERTED
        for i, existing in enumerate(messages):
            if existing.message_id == message.message_id:
                if existing == message:
                    return UpsertOutcome.UNCHANGED
                messages[i] = message
                outcome = UpsertOutcome.UPDATED
                break
        else:
            messages.append(message)

        # Stable sort: equal timestamps keep arrival order.
        messages.sort(key=lambda m: m.timestamp)
        self._touch_conversation(message)
        return outcome

    def _touch_conversation(self, message: Message) -> None:
        conversation = self._conversations.get(message.conversation_id)
        if conversation is None:
            conversation = Conversation(
                id=message.conversation_id,
                title=derive_title(message.content, self._title_max_length),
                last_message_time=message.timestamp,
            )
            self._conversations[conversation.id] = conversation
            logger.debug("Created conversation %s (%r)", conversation.id, conversation.title)
            return
        conversation.last_message_time = max(conversation.last_message_time, message.timestamp)

    def get_messages(self, conversation_id: str) -> list[Message]:
        """Messages of a conversation in timestamp order (a copy)."""
        return list(self._messages.get(conversation_id, ()))

    def get_message(self, conversation_id: str, message_id: str) -> Message | None:
        for message in self._messages.get(conversation_id, ()):
            if message.message_id == message_id:
                return message
        return None

    # -- Conversations ---------------------------------------------------------

    def upsert_conversation(self, conversation: Conversation) -> Conversation:
        """Create or update a conversation summary.

        An explicit title always wins; a derived title never replaces an
        explicit one. ``last_message_time`` only moves forward.
        """
        existing = self._conversations.get(conversation.id)
        if existing is None:
            stored = Conversation(
                id=conversation.id,
                title=conversation.title,
                last_message_time=conversation.last_message_time,
                title_explicit=conversation.title_explicit,
            )
            self._conversations[stored.id] = stored
            return replace(stored)

        if conversation.title_explicit or not existing.title_explicit:
            existing.title = conversation.title
            existing.title_explicit = existing.title_explicit or conversation.title_explicit
        existing.last_message_time = max(existing.last_message_time, conversation.last_message_time)
        return replace(existing)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        """A copy of the stored summary, or None."""
        conversation = self._conversations.get(conversation_id)
        return replace(conversation) if conversation is not None else None

    def has_conversation(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    def list_conversations(self) -> list[Conversation]:
        """All conversations, most recent first."""
        return sorted(
            (replace(c) for c in self._conversations.values()),
            key=lambda c: c.last_message_time or 0,
            reverse=True,
        )

    def clear(self) -> None:
        self._conversations.clear()
        self._messages.clear()
