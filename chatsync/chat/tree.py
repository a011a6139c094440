"""Flatten a conversation snapshot (node mapping) into ordered Messages.

A snapshot looks like::

    {
        "conversation_id": "...",
        "title": "...",
        "mapping": {
            "<node id>": {
                "id": "<node id>",
                "parent": "<node id>" | None,
                "children": ["<node id>", ...],
                "message": {
                    "author": {"role": "user" | "assistant" | "tool" | "system", "name": ...},
                    "content": {"content_type": "text", "parts": [...]},
                    "create_time": 1700000000.0,
                    "metadata": {"model_slug": "...", "parent_id": "..."},
                },
            },
        },
    }

Tool nodes sit between a user turn and its assistant answer. They never
become Messages: their names are folded into the ``tools`` of the assistant
answer they lead to, and the assistant's parent is found by walking past them
to the nearest user node.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from chatsync.chat.identity import resolve_payload
from chatsync.chat.models import (
    ASSISTANT,
    TOOL,
    UNKNOWN_MODEL,
    USER,
    Conversation,
    Message,
    derive_title,
    seconds_to_ms,
)
from chatsync.chat.normalizer import author_role

logger = logging.getLogger(__name__)

ROOT_NODE_ID = "client-created-root"
UNKNOWN_TOOL = "unknown-tool"


@dataclass
class Extraction:
    """Result of flattening one snapshot."""

    conversation: Conversation
    messages: list[Message]


def _node_message(node: Any) -> Mapping[str, Any] | None:
    if not isinstance(node, Mapping):
        return None
    message = node.get("message")
    if isinstance(message, Mapping) and author_role(message):
        return message
    return None


def extract_content(content: Any) -> str:
    """Text of a snapshot message's content, by ``content_type``.

    ``text`` joins ``parts`` with newlines. ``multimodal_text`` concatenates
    string parts and parts carrying a ``text`` string; images and other part
    kinds are skipped.
    """
    if not isinstance(content, Mapping):
        return ""
    content_type = content.get("content_type")
    parts = content.get("parts")

    if content_type == "text":
        if isinstance(parts, list):
            return "\n".join(p for p in parts if isinstance(p, str))
        return parts if isinstance(parts, str) else ""

    if content_type == "multimodal_text" and isinstance(parts, list):
        chunks = []
        for part in parts:
            if isinstance(part, str):
                chunks.append(part)
            elif isinstance(part, Mapping) and isinstance(part.get("text"), str):
                chunks.append(part["text"])
        return "".join(chunks)

    return ""


def _tool_name(message: Mapping[str, Any]) -> str:
    author = message.get("author")
    name = author.get("name") if isinstance(author, Mapping) else None
    return name if isinstance(name, str) and name else UNKNOWN_TOOL


class _Index:
    """Parent edges, tool attribution and model slugs from one pass over the mapping."""

    def __init__(self, mapping: Mapping[str, Any]) -> None:
        self.mapping = mapping
        self.parent_of: dict[str, str] = {}
        self.tools: dict[str, list[str]] = {}
        self.models: dict[str, str] = {}

        for node_id, node in mapping.items():
            if not isinstance(node, Mapping):
                continue
            for child_id in node.get("children") or ():
                if isinstance(child_id, str):
                    self.parent_of[child_id] = node_id
            parent = node.get("parent")
            if isinstance(parent, str) and parent:
                self.parent_of.setdefault(node_id, parent)

        # Tool attribution needs the complete edge map, so it runs once the
        # mapping has been fully indexed.
        for node_id, node in mapping.items():
            if node_id == ROOT_NODE_ID:
                continue
            message = _node_message(node)
            if message is None:
                continue
            if author_role(message) == TOOL:
                self._add_tool(node_id, message)
            metadata = message.get("metadata")
            if isinstance(metadata, Mapping):
                slug = metadata.get("model_slug")
                if isinstance(slug, str) and slug:
                    self.models[node_id] = slug

    def _add_tool(self, node_id: str, message: Mapping[str, Any]) -> None:
        parent_id = self.parent_of.get(node_id)
        if parent_id is None:
            return
        tool_name = _tool_name(message)
        names = self.tools.setdefault(parent_id, [])
        if tool_name not in names:
            names.append(tool_name)

    def role_of(self, node_id: str) -> str | None:
        message = _node_message(self.mapping.get(node_id))
        return author_role(message) if message is not None else None

    def _ancestors(self, node_id: str):
        seen = {node_id}
        current = self.parent_of.get(node_id)
        while current is not None and current not in seen:
            yield current
            seen.add(current)
            current = self.parent_of.get(current)

    def nearest_user_ancestor(self, node_id: str) -> str | None:
        for ancestor in self._ancestors(node_id):
            if self.role_of(ancestor) == USER:
                return ancestor
        return None

    def tools_for(self, node_id: str) -> tuple[str, ...]:
        """Tools used between the nearest user turn and *node_id*, then its own.

        Covers tool nodes sitting directly on the path and tools attributed
        to intermediate assistant turns (tool-call stubs with no text).
        """
        segments: list[list[str]] = []
        for ancestor in self._ancestors(node_id):
            role = self.role_of(ancestor)
            if role == USER:
                break
            if role == TOOL:
                message = _node_message(self.mapping.get(ancestor)) or {}
                segments.append([_tool_name(message)])
            elif role == ASSISTANT:
                segments.append(self.tools.get(ancestor, []))

        names: list[str] = []
        for segment in [*reversed(segments), self.tools.get(node_id, [])]:
            for name in segment:
                if name not in names:
                    names.append(name)
        return tuple(names)


def _assistant_parent(index: _Index, node_id: str, message: Mapping[str, Any]) -> str | None:
    metadata = message.get("metadata")
    if isinstance(metadata, Mapping):
        explicit = metadata.get("parent_id")
        if isinstance(explicit, str) and explicit:
            return explicit
    return index.nearest_user_ancestor(node_id)


def _backfill_models(messages: list[Message]) -> list[Message]:
    answered_by: dict[str, str] = {}
    for message in messages:
        if (
            message.is_assistant
            and message.parent_message_id
            and message.model != UNKNOWN_MODEL
        ):
            answered_by.setdefault(message.parent_message_id, message.model)

    return [
        message.with_model(answered_by[message.message_id])
        if message.is_user
        and message.model == UNKNOWN_MODEL
        and message.message_id in answered_by
        else message
        for message in messages
    ]


def extract_messages(snapshot: Mapping[str, Any]) -> list[Message]:
    """User and assistant Messages of *snapshot*, sorted by timestamp."""
    mapping = snapshot.get("mapping")
    if not isinstance(mapping, Mapping):
        return []
    conversation_id = resolve_payload(snapshot) or ""
    index = _Index(mapping)

    messages: list[Message] = []
    for node_id, node in mapping.items():
        if node_id == ROOT_NODE_ID:
            continue
        message = _node_message(node)
        if message is None:
            continue
        role = author_role(message)
        if role not in (USER, ASSISTANT):
            continue

        content = extract_content(message.get("content"))
        if not content.strip():
            continue

        parent_id = _assistant_parent(index, node_id, message) if role == ASSISTANT else None
        tools = index.tools_for(node_id) if role == ASSISTANT else ()
        messages.append(
            Message(
                message_id=node_id,
                conversation_id=conversation_id,
                role=role,
                content=content,
                model=index.models.get(node_id, UNKNOWN_MODEL),
                timestamp=seconds_to_ms(message.get("create_time")),
                parent_message_id=parent_id,
                tools=tools,
            )
        )

    messages = _backfill_models(messages)
    messages.sort(key=lambda m: m.timestamp)
    return messages


def extract(snapshot: Any, title_max_length: int = 50) -> Extraction | None:
    """Flatten *snapshot* into a Conversation summary and its Messages.

    Returns None when the snapshot carries no conversation id.
    """
    if not isinstance(snapshot, Mapping):
        return None
    conversation_id = resolve_payload(snapshot)
    if conversation_id is None:
        logger.warning("Snapshot without conversation_id skipped")
        return None

    messages = extract_messages(snapshot)

    title = snapshot.get("title")
    if isinstance(title, str) and title.strip():
        conversation = Conversation(id=conversation_id, title=title.strip(), title_explicit=True)
    elif messages:
        conversation = Conversation(
            id=conversation_id, title=derive_title(messages[0].content, title_max_length)
        )
    else:
        conversation = Conversation(id=conversation_id)

    if messages:
        conversation.last_message_time = max(m.timestamp for m in messages)
    else:
        conversation.last_message_time = seconds_to_ms(snapshot.get("update_time"), default=0)

    logger.debug(
        "Extracted %d messages from snapshot %s (%d nodes)",
        len(messages),
        conversation_id,
        len(snapshot.get("mapping") or ()),
    )
    return Extraction(conversation=conversation, messages=messages)
