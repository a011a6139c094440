"""HTTP gateway to the remote chat-history store."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

import httpx

from chatsync.chat.models import Conversation, Message
from chatsync.config import Settings, settings
from chatsync.errors import PersistenceError

logger = logging.getLogger(__name__)

SAVE_MESSAGE_PATH = "/save/message"
SAVE_CHAT_PATH = "/save/chat"
SAVE_BATCH_PATH = "/save/batch"


@runtime_checkable
class Gateway(Protocol):
    """What the reconciliation controller needs from a persistence backend."""

    async def save_message(self, message: Message) -> None: ...

    async def save_conversation(self, conversation: Conversation) -> None: ...

    async def save_batch(
        self, conversations: Sequence[Conversation], messages: Sequence[Message]
    ) -> None: ...


class PersistenceGateway:
    """Posts messages and conversations to the remote store.

    Every call raises ``PersistenceError`` on a network failure or a non-2xx
    response; callers decide how to report it.
    """

    def __init__(self, config: Settings | None = None) -> None:
        self._settings = config or settings

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._settings.api_token:
            headers["Authorization"] = f"Bearer {self._settings.api_token}"
        return headers

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = self._settings.get_api_url(path)
        try:
            async with httpx.AsyncClient(timeout=self._settings.persist_timeout_seconds) as client:
                resp = await client.post(url, json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise PersistenceError(f"POST {path} failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise PersistenceError(
                f"POST {path} returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"result": data}

    async def save_message(self, message: Message) -> None:
        if not message.conversation_id:
            raise PersistenceError(f"Message {message.message_id} has no conversation id")
        await self._post(SAVE_MESSAGE_PATH, message.to_payload())
        logger.debug("Saved message %s...", message.message_id[:8])

    async def save_conversation(self, conversation: Conversation) -> None:
        await self._post(SAVE_CHAT_PATH, conversation.to_payload(self._settings.provider_name))
        logger.debug("Saved conversation %s...", conversation.id[:8])

    async def save_batch(
        self, conversations: Sequence[Conversation], messages: Sequence[Message]
    ) -> None:
        payload = {
            "chats": [c.to_payload(self._settings.provider_name) for c in conversations],
            "messages": [m.to_payload() for m in messages],
        }
        await self._post(SAVE_BATCH_PATH, payload)
        logger.debug(
            "Saved batch of %d conversations, %d messages", len(conversations), len(messages)
        )
