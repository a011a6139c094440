"""Buffer for messages whose conversation id is not known yet."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from chatsync.chat.models import Message, PendingEntry, now_ms

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_MS = 5 * 60 * 1000


class PendingBuffer:
    """Holds orphan messages until a conversation id can be assigned.

    Entries older than *retention_ms* are dropped silently, both when a new
    message is enqueued and before a flush.
    """

    def __init__(
        self,
        retention_ms: int = DEFAULT_RETENTION_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._retention_ms = retention_ms
        self._clock = clock
        self._entries: list[PendingEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def enqueue(self, message: Message, *, from_dom: bool = False) -> bool:
        """Buffer *message* (its conversation id is cleared).

        A message id is buffered once. A DOM copy never replaces a network
        copy; any other repeat replaces the earlier entry in place. Returns
        False when the message was dropped as a duplicate.
        """
        self.sweep_expired()
        if message.conversation_id:
            message = message.with_conversation("")

        for i, entry in enumerate(self._entries):
            if entry.message.message_id != message.message_id:
                continue
            if from_dom and not entry.from_dom:
                logger.debug("DOM copy of pending message %s dropped", message.message_id)
                return False
            self._entries[i] = PendingEntry(
                message=message, enqueued_at=entry.enqueued_at, from_dom=from_dom
            )
            logger.debug("Replaced pending message %s", message.message_id)
            return True

        self._entries.append(
            PendingEntry(message=message, enqueued_at=self._clock(), from_dom=from_dom)
        )
        logger.debug(
            "Buffered pending %s message %s (%d pending)",
            message.role,
            message.message_id,
            len(self._entries),
        )
        return True

    def flush_entries(self, conversation_id: str) -> list[PendingEntry]:
        """Bind every buffered entry to *conversation_id* and hand them over.

        Entries are returned in enqueue order and the buffer is emptied.
        """
        if not conversation_id:
            raise ValueError("conversation_id is required to flush pending messages")
        self.sweep_expired()
        if not self._entries:
            return []
        flushed = [
            replace(entry, message=entry.message.with_conversation(conversation_id))
            for entry in self._entries
        ]
        self._entries.clear()
        logger.debug("Flushed %d pending messages into %s", len(flushed), conversation_id)
        return flushed

    def flush(self, conversation_id: str) -> list[Message]:
        """Like ``flush_entries`` but returns only the bound messages."""
        return [entry.message for entry in self.flush_entries(conversation_id)]

    def sweep_expired(self) -> int:
        """Drop entries older than the retention window. Returns the count dropped."""
        cutoff = self._clock() - self._retention_ms
        kept = [entry for entry in self._entries if entry.enqueued_at > cutoff]
        dropped = len(self._entries) - len(kept)
        if dropped:
            self._entries = kept
            logger.debug("Expired %d pending messages", dropped)
        return dropped

    def clear(self) -> int:
        """Drop everything. Returns the count of cleared entries."""
        count = len(self._entries)
        self._entries.clear()
        return count
