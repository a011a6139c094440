"""Turn intercepted request/response fragments into canonical Messages."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from chatsync.chat.identity import resolve_payload
from chatsync.chat.models import (
    ASSISTANT,
    UNKNOWN_MODEL,
    USER,
    Message,
    make_message_id,
    now_ms,
    seconds_to_ms,
)

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"


def author_role(message: Mapping[str, Any]) -> str | None:
    """Role of a raw message: ``author.role``, falling back to a flat ``role``."""
    author = message.get("author")
    if isinstance(author, Mapping) and isinstance(author.get("role"), str):
        return author["role"]
    role = message.get("role")
    return role if isinstance(role, str) else None


def _part_text(part: Any) -> str | None:
    if isinstance(part, str):
        return part
    if isinstance(part, Mapping) and isinstance(part.get("text"), str):
        return part["text"]
    return None


def join_parts(content: Any) -> str:
    """Text of a raw ``content`` value.

    ``content.parts`` are joined with newlines; a plain string content is used
    as-is. Anything else yields an empty string.
    """
    if isinstance(content, str):
        return content
    if not isinstance(content, Mapping):
        return ""
    parts = content.get("parts")
    if isinstance(parts, list):
        return "\n".join(text for text in map(_part_text, parts) if text is not None)
    if isinstance(parts, str):
        return parts
    text = content.get("text")
    return text if isinstance(text, str) else ""


def _model_slug(message: Mapping[str, Any]) -> str | None:
    metadata = message.get("metadata")
    if isinstance(metadata, Mapping):
        slug = metadata.get("model_slug")
        if isinstance(slug, str) and slug:
            return slug
    return None


def _parent_id(message: Mapping[str, Any]) -> str | None:
    metadata = message.get("metadata")
    if isinstance(metadata, Mapping):
        parent = metadata.get("parent_id")
        if isinstance(parent, str) and parent:
            return parent
    return None


def _message_id(message: Mapping[str, Any], role: str, timestamp: int) -> str:
    """Source id as a string; synthesized when missing or not a scalar id."""
    value = message.get("id")
    if isinstance(value, bool):
        value = None
    if isinstance(value, int):
        value = str(value)
    if isinstance(value, str) and value:
        return value
    return make_message_id(role, timestamp)


def _normalize_request(body: Mapping[str, Any]) -> Message | None:
    messages = body.get("messages")
    if not isinstance(messages, list):
        return None

    user_message = None
    for raw in reversed(messages):
        if isinstance(raw, Mapping) and author_role(raw) == USER:
            user_message = raw
            break
    if user_message is None:
        return None

    content = join_parts(user_message.get("content"))
    if not content.strip():
        return None

    timestamp = seconds_to_ms(user_message.get("create_time"))
    model = body.get("model")
    return Message(
        message_id=_message_id(user_message, USER, timestamp),
        conversation_id=resolve_payload(body) or "",
        role=USER,
        content=content,
        model=model if isinstance(model, str) and model else UNKNOWN_MODEL,
        timestamp=timestamp,
    )


def _normalize_response(body: Mapping[str, Any]) -> Message | None:
    message = body.get("message")
    if not isinstance(message, Mapping):
        return None
    role = author_role(message)
    if role is not None and role != ASSISTANT:
        return None

    content = join_parts(message.get("content"))
    if not content.strip():
        return None

    timestamp = seconds_to_ms(message.get("create_time"))
    return Message(
        message_id=_message_id(message, ASSISTANT, timestamp),
        conversation_id=resolve_payload(body) or "",
        role=ASSISTANT,
        content=content,
        model=_model_slug(message) or UNKNOWN_MODEL,
        timestamp=timestamp,
        parent_message_id=_parent_id(message),
    )


def normalize(fragment: Any, direction: Direction | str) -> Message | None:
    """Convert a raw request or non-streaming response body into a Message.

    Returns None when the fragment is malformed, has no message of the
    expected role, or its content trims to empty.
    """
    if not isinstance(fragment, Mapping):
        return None
    if Direction(direction) is Direction.REQUEST:
        message = _normalize_request(fragment)
    else:
        message = _normalize_response(fragment)
    if message is None:
        logger.debug("No %s message in fragment", Direction(direction).value)
    return message


def message_from_fields(
    *,
    role: str,
    content: str | None,
    message_id: str | None = None,
    conversation_id: str | None = None,
    model: str | None = None,
    timestamp: int | None = None,
    parent_message_id: str | None = None,
) -> Message | None:
    """Build a Message from already-extracted fields (DOM events, assembled streams)."""
    if role not in (USER, ASSISTANT) or not content or not content.strip():
        return None
    ts = timestamp if timestamp is not None else now_ms()
    return Message(
        message_id=message_id or make_message_id(role, ts),
        conversation_id=conversation_id or "",
        role=role,
        content=content,
        model=model or UNKNOWN_MODEL,
        timestamp=ts,
        parent_message_id=parent_message_id,
    )
