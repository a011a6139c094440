"""Canonical Message / Conversation records and their wire format."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"

UNKNOWN_MODEL = "unknown"
DEFAULT_TITLE = "New conversation"


def now_ms() -> int:
    """Wall-clock time in integer milliseconds."""
    return int(time.time() * 1000)


def seconds_to_ms(value: Any, default: int | None = None) -> int:
    """Convert a source ``create_time`` (seconds since epoch) to milliseconds.

    ISO 8601 strings are accepted too (conversation lists use them). Falls
    back to *default*, or the current time, when *value* is missing or
    unparseable.
    """
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return int(value * 1000)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
        else:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return int(parsed.timestamp() * 1000)
    return default if default is not None else now_ms()


def derive_title(content: str, max_length: int = 50) -> str:
    """First line of *content*, trimmed and capped at *max_length* chars."""
    first_line = content.split("\n", 1)[0].strip()
    return first_line[:max_length] or DEFAULT_TITLE


@dataclass(frozen=True)
class Message:
    """A single user or assistant turn.

    Attributes:
        message_id: Source id, or ``"<role>-<timestamp>"`` when the source had none.
        conversation_id: Owning conversation. Empty while the message is pending.
        role: ``"user"`` or ``"assistant"``.
        content: Joined text parts. Never empty after trimming.
        model: Model slug, ``"unknown"`` until resolved.
        timestamp: Milliseconds since epoch.
        parent_message_id: Only ever set on assistant messages.
        tools: Distinct tool names used while producing an assistant message.
    """

    message_id: str
    conversation_id: str
    role: str
    content: str
    model: str = UNKNOWN_MODEL
    timestamp: int = field(default_factory=now_ms)
    parent_message_id: str | None = None
    tools: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.role != ASSISTANT and self.parent_message_id is not None:
            object.__setattr__(self, "parent_message_id", None)

    @property
    def is_user(self) -> bool:
        return self.role == USER

    @property
    def is_assistant(self) -> bool:
        return self.role == ASSISTANT

    def with_conversation(self, conversation_id: str) -> Message:
        """Return a copy bound to *conversation_id*."""
        return replace(self, conversation_id=conversation_id)

    def with_model(self, model: str) -> Message:
        return replace(self, model=model)

    # -- Serialization ---------------------------------------------------------

    def to_payload(self) -> dict[str, Any]:
        """Serialize for the remote message store."""
        payload: dict[str, Any] = {
            "message_id": self.message_id,
            "provider_chat_id": self.conversation_id,
            "content": self.content,
            "role": self.role,
            "model": self.model or UNKNOWN_MODEL,
            "created_at": self.timestamp,
        }
        if self.parent_message_id:
            payload["parent_message_id"] = self.parent_message_id
        return payload


def make_message_id(role: str, timestamp: int | None = None) -> str:
    """Synthesize an id for a message the source did not label."""
    return f"{role}-{timestamp if timestamp is not None else now_ms()}"


@dataclass
class Conversation:
    """Summary of one conversation.

    ``title_explicit`` marks titles that came from the source (snapshot or
    conversation list) rather than being derived from the first message.
    """

    id: str
    title: str = DEFAULT_TITLE
    last_message_time: int = 0
    title_explicit: bool = False

    def to_payload(self, provider_name: str) -> dict[str, Any]:
        return {
            "provider_chat_id": self.id,
            "title": self.title,
            "provider_name": provider_name,
        }


@dataclass(frozen=True)
class PendingEntry:
    """A message waiting for its conversation id.

    ``from_dom`` marks copies seen by the DOM observer; a network copy of the
    same message always replaces them.
    """

    message: Message
    enqueued_at: int
    from_dom: bool = False
