"""Typed inbound events and the fallible parse step at the boundary.

The interception transport delivers loosely shaped JSON tagged with a
``type``. ``parse_event`` turns it into one of the models below or a
``Rejected`` outcome; nothing downstream inspects raw dicts for the tag.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class InboundEvent(BaseModel):
    """Base for transport events. Accepts camelCase aliases or field names."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class NavigationEvent(InboundEvent):
    type: Literal["navigation"] = "navigation"
    url: str


class ChatCompletionEvent(InboundEvent):
    """A request to the completion endpoint, with its response when available.

    ``response_body`` is the decoded JSON body for non-streaming responses and
    the raw SSE text (or its lines) when ``is_streaming`` is set.
    """

    type: Literal["chatCompletion"] = "chatCompletion"
    url: str | None = None
    request_body: dict[str, Any] | None = Field(default=None, alias="requestBody")
    response_body: dict[str, Any] | str | list[str] | None = Field(default=None, alias="responseBody")
    is_streaming: bool = Field(default=False, alias="isStreaming")


class SpecificConversationEvent(InboundEvent):
    type: Literal["specificConversation"] = "specificConversation"
    response_body: dict[str, Any] = Field(alias="responseBody")


class ConversationListEvent(InboundEvent):
    type: Literal["conversationList"] = "conversationList"
    response_body: dict[str, Any] = Field(alias="responseBody")


class AssistantResponseEvent(InboundEvent):
    """An assistant reply already assembled from a stream by the page script."""

    type: Literal["assistantResponse"] = "assistantResponse"
    message_id: str | None = Field(default=None, alias="messageId")
    content: str = ""
    conversation_id: str | None = Field(default=None, alias="conversationId")
    model: str | None = None
    create_time: float | None = Field(default=None, alias="createTime")
    parent_message_id: str | None = Field(default=None, alias="parentMessageId")


class DomMessageEvent(InboundEvent):
    """A message rendered in the page, as seen by the DOM observer."""

    type: Literal["domMessage"] = "domMessage"
    role: Literal["user", "assistant"]
    message_id: str | None = Field(default=None, alias="messageId")
    message: str
    timestamp: float | None = None
    provider_chat_id: str | None = Field(default=None, alias="providerChatId")


InterceptEvent = Annotated[
    NavigationEvent
    | ChatCompletionEvent
    | SpecificConversationEvent
    | ConversationListEvent
    | AssistantResponseEvent
    | DomMessageEvent,
    Field(discriminator="type"),
]

_adapter: TypeAdapter[InterceptEvent] = TypeAdapter(InterceptEvent)

EVENT_TYPES = frozenset(
    {
        "navigation",
        "chatCompletion",
        "specificConversation",
        "conversationList",
        "assistantResponse",
        "domMessage",
    }
)


@dataclass(frozen=True)
class Rejected:
    """A payload that did not validate as any known event."""

    reason: str
    event_type: str | None = None


def _infer_type(raw: Mapping[str, Any]) -> str | None:
    if "role" in raw and "message" in raw:
        return "domMessage"
    if "url" in raw and len(raw) == 1:
        return "navigation"
    return None


def _flatten(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Unwrap the transport's ``{"type": ..., "data": {...}}`` envelope."""
    data = raw.get("data")
    if isinstance(data, Mapping) and set(raw) <= {"type", "data"}:
        return {**data, "type": raw.get("type")}
    flat = dict(raw)
    if "type" not in flat:
        inferred = _infer_type(flat)
        if inferred:
            flat["type"] = inferred
    return flat


def parse_event(raw: Any) -> InterceptEvent | Rejected:
    """Validate a raw transport payload into a typed event."""
    if not isinstance(raw, Mapping):
        return Rejected(reason=f"expected an object, got {type(raw).__name__}")
    flat = _flatten(raw)
    event_type = flat.get("type") if isinstance(flat.get("type"), str) else None
    try:
        return _adapter.validate_python(flat)
    except ValidationError as exc:
        logger.debug("Rejected %s payload: %s", event_type or "untyped", exc)
        return Rejected(reason=str(exc), event_type=event_type)
