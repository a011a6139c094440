"""Turns observer events into a consistent chat history.

Three unsynchronized sources feed it: network interception (requests,
responses, conversation snapshots and lists), the DOM observer, and URL
navigation. Every handler mutates the store synchronously and only then
schedules persistence, so a later event never sees a half-applied update and
a slow save never holds up the next event.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from enum import Enum
from typing import Any

from chatsync.chat.events import (
    ConversationChanged,
    ConversationLoaded,
    EventKind,
    Listener,
    MessageReceived,
    MessageSent,
    Subscription,
)
from chatsync.chat.identity import resolve_payload, resolve_url
from chatsync.chat.models import (
    ASSISTANT,
    DEFAULT_TITLE,
    UNKNOWN_MODEL,
    Conversation,
    Message,
    seconds_to_ms,
)
from chatsync.chat.normalizer import Direction, message_from_fields, normalize
from chatsync.chat.payloads import (
    EVENT_TYPES,
    AssistantResponseEvent,
    ChatCompletionEvent,
    ConversationListEvent,
    DomMessageEvent,
    NavigationEvent,
    Rejected,
    SpecificConversationEvent,
    parse_event,
)
from chatsync.chat.session import SessionContext
from chatsync.chat.store import UpsertOutcome
from chatsync.chat.stream import assemble
from chatsync.chat.tree import extract
from chatsync.errors import LifecycleError, MalformedPayloadError, PersistenceError

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    NO_CONVERSATION = "no_conversation"
    HAS_CONVERSATION = "has_conversation"


class ReconciliationController:
    """Orchestrates identity resolution, normalization, buffering and persistence.

    Usage::

        context = SessionContext.create()
        controller = ReconciliationController(context)
        controller.initialize(page_url)
        controller.subscribe(EventKind.MESSAGE_SENT, on_sent)
        controller.handle_event(payload_from_transport)
        ...
        controller.cleanup()
    """

    def __init__(self, context: SessionContext) -> None:
        self._ctx = context
        self._current_id: str | None = None
        self._initialized = False
        self._tasks: set[asyncio.Task] = set()
        self._tail: asyncio.Task | None = None

    # -- Lifecycle -------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self, url: str | None = None) -> None:
        """Start accepting events. *url* is the page URL at session start."""
        if self._initialized:
            return
        self._initialized = True
        logger.info("Reconciliation controller initialized")
        if url:
            self.handle_navigation(url)

    def cleanup(self) -> None:
        """Clear buffers and the store and detach all listeners.

        In-flight saves are not cancelled.
        """
        if not self._initialized:
            return
        self._ctx.reset()
        self._current_id = None
        self._initialized = False
        logger.info("Reconciliation controller cleaned up")

    async def drain(self) -> None:
        """Wait until every scheduled save (and its error report) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._ctx.reporter.drain()

    def _require_initialized(self, operation: str) -> bool:
        if self._initialized:
            return True
        self._ctx.reporter.capture(
            LifecycleError(f"{operation} called while the controller is not initialized"),
            "Lifecycle misuse",
        )
        return False

    # -- State -----------------------------------------------------------------

    @property
    def state(self) -> ConversationState:
        if self._current_id:
            return ConversationState.HAS_CONVERSATION
        return ConversationState.NO_CONVERSATION

    def get_current_conversation_id(self) -> str | None:
        return self._current_id

    def set_current_conversation_id(self, conversation_id: str) -> None:
        """Make *conversation_id* current, flushing pending messages into it."""
        if not self._require_initialized("set_current_conversation_id"):
            return
        if not conversation_id or conversation_id == self._current_id:
            return
        self._current_id = conversation_id
        logger.info("Current conversation: %s", conversation_id)
        self._flush_pending(conversation_id)
        self._ctx.bus.publish(ConversationChanged(conversation_id=conversation_id))

    def get_conversation_messages(self, conversation_id: str) -> list[Message]:
        return self._ctx.store.get_messages(conversation_id)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._ctx.store.get_conversation(conversation_id)

    def get_conversations(self) -> list[Conversation]:
        return self._ctx.store.list_conversations()

    def subscribe(self, kind: EventKind | None, listener: Listener) -> Subscription:
        """Listen for domain events; release the handle to stop."""
        return self._ctx.bus.subscribe(kind, listener)

    # -- Entry point -----------------------------------------------------------

    def handle_event(self, raw: Any) -> bool:
        """Process one payload from an observer.

        Returns True when the payload was understood and processed. Failures
        are logged and reported; they never propagate to the caller.
        """
        if not self._require_initialized("handle_event"):
            return False

        event = parse_event(raw)
        if isinstance(event, Rejected):
            if event.event_type in EVENT_TYPES:
                self._ctx.reporter.capture(
                    MalformedPayloadError(event.reason), f"Malformed {event.event_type} payload"
                )
            else:
                logger.warning("Ignoring %s payload", event.event_type or "untyped")
            return False

        try:
            if isinstance(event, NavigationEvent):
                self.handle_navigation(event.url)
            elif isinstance(event, ChatCompletionEvent):
                self._on_chat_completion(event)
            elif isinstance(event, SpecificConversationEvent):
                self.handle_snapshot(event.response_body)
            elif isinstance(event, ConversationListEvent):
                self._on_conversation_list(event)
            elif isinstance(event, AssistantResponseEvent):
                self._on_assistant_response(event)
            elif isinstance(event, DomMessageEvent):
                self._on_dom_message(event)
        except Exception as exc:
            self._ctx.reporter.capture(exc, f"Error handling {event.type}")
            return False
        return True

    # -- Navigation ------------------------------------------------------------

    def handle_navigation(self, url: str) -> None:
        """Follow the page URL: a conversation path makes it current, anything else clears it."""
        if not self._require_initialized("handle_navigation"):
            return
        conversation_id = resolve_url(url, self._ctx.settings.conversation_path_prefix)
        if conversation_id is None:
            if self._current_id is not None:
                logger.info("Left conversation %s (%s)", self._current_id, url)
                self._current_id = None
            return
        if conversation_id != self._current_id:
            logger.debug("Detected conversation id from URL: %s", conversation_id)
            self.set_current_conversation_id(conversation_id)

    # -- Network events --------------------------------------------------------

    def _on_chat_completion(self, event: ChatCompletionEvent) -> None:
        if event.request_body:
            user_message = normalize(event.request_body, Direction.REQUEST)
            if user_message is not None:
                self._accept_user(user_message)

        body = self._response_body(event)
        if body is not None:
            assistant_message = normalize(body, Direction.RESPONSE)
            if assistant_message is not None:
                self._accept_assistant(assistant_message)
            else:
                # A stream can reveal the id before (or without) any reply text.
                conversation_id = resolve_payload(body)
                if conversation_id:
                    self._flush_pending(conversation_id)

        self._settle_pending()

    @staticmethod
    def _response_body(event: ChatCompletionEvent) -> Mapping[str, Any] | None:
        body = event.response_body
        if body is None:
            return None
        if isinstance(body, Mapping):
            return body
        if event.is_streaming:
            return assemble(body)
        logger.debug("Ignoring non-JSON body of a non-streaming response")
        return None

    def _on_assistant_response(self, event: AssistantResponseEvent) -> None:
        message = message_from_fields(
            role=ASSISTANT,
            content=event.content,
            message_id=event.message_id,
            conversation_id=event.conversation_id,
            model=event.model,
            timestamp=seconds_to_ms(event.create_time),
            parent_message_id=event.parent_message_id,
        )
        if message is not None:
            self._accept_assistant(message)
        self._settle_pending()

    def handle_snapshot(self, snapshot: Mapping[str, Any]) -> None:
        """Load a full conversation tree into the store and persist it as one batch."""
        if not self._require_initialized("handle_snapshot"):
            return
        extraction = extract(snapshot, self._ctx.settings.title_max_length)
        if extraction is None:
            return
        conversation_id = extraction.conversation.id
        store = self._ctx.store

        stored = store.upsert_conversation(extraction.conversation)
        changed: list[Message] = []
        for message in extraction.messages:
            merged = self._merge_known(message)
            if store.upsert_message(merged).changed:
                changed.append(merged)
        stored = store.get_conversation(conversation_id) or stored

        self._current_id = conversation_id
        gateway = self._ctx.gateway
        if gateway is not None:
            self._persist(
                f"conversation batch {conversation_id[:8]}",
                lambda: gateway.save_batch([stored], changed),
            )
        self._flush_pending(conversation_id)

        logger.info(
            "Loaded conversation %s (%d messages, %d new or changed)",
            conversation_id,
            len(extraction.messages),
            len(changed),
        )
        self._ctx.bus.publish(
            ConversationLoaded(
                conversation_id=conversation_id,
                title=stored.title,
                messages=tuple(extraction.messages),
            )
        )

    def _on_conversation_list(self, event: ConversationListEvent) -> None:
        items = event.response_body.get("items")
        if not isinstance(items, list):
            return
        count = 0
        for item in items:
            if not isinstance(item, Mapping):
                continue
            conversation_id = item.get("id")
            if not isinstance(conversation_id, str) or not conversation_id:
                continue
            title = item.get("title")
            explicit = isinstance(title, str) and bool(title.strip())
            if explicit:
                title = title.strip()
            else:
                # An untitled item keeps whatever title is already known.
                known = self._ctx.store.get_conversation(conversation_id)
                title = known.title if known is not None else DEFAULT_TITLE
            self._ctx.store.upsert_conversation(
                Conversation(
                    id=conversation_id,
                    title=title,
                    last_message_time=seconds_to_ms(item.get("update_time"), default=0),
                    title_explicit=explicit,
                )
            )
            count += 1
        logger.debug("Indexed %d conversations from list", count)

    # -- DOM events ------------------------------------------------------------

    def _on_dom_message(self, event: DomMessageEvent) -> None:
        conversation_id = event.provider_chat_id or ""
        if (
            conversation_id
            and event.message_id
            and self._ctx.store.get_message(conversation_id, event.message_id) is not None
        ):
            # Network payloads are richer; the DOM only fills gaps.
            logger.debug("DOM message %s already known", event.message_id)
            return
        message = message_from_fields(
            role=event.role,
            content=event.message,
            message_id=event.message_id,
            conversation_id=conversation_id,
            timestamp=int(event.timestamp) if event.timestamp is not None else None,
        )
        if message is None:
            return
        if message.is_assistant:
            self._accept_assistant(message, from_dom=True)
        else:
            self._accept_user(message, from_dom=True)
        self._settle_pending()

    # -- Message paths ---------------------------------------------------------

    def _accept_user(self, message: Message, *, from_dom: bool = False) -> None:
        conversation_id = message.conversation_id
        if not conversation_id:
            self._ctx.pending.enqueue(message, from_dom=from_dom)
            return
        self._ingest(message)
        self._current_id = conversation_id

    def _accept_assistant(self, message: Message, *, from_dom: bool = False) -> None:
        conversation_id = message.conversation_id
        if not conversation_id:
            self._ctx.pending.enqueue(message, from_dom=from_dom)
            return
        if not self._ctx.store.has_conversation(conversation_id):
            # Requests still waiting for this id were sent before the reply.
            self._flush_pending(conversation_id)
        self._ingest(message)
        self._current_id = conversation_id

    def _ingest(self, message: Message) -> UpsertOutcome:
        """Store, announce and persist one message with a known conversation id."""
        is_new = not self._ctx.store.has_conversation(message.conversation_id)
        outcome, merged = self._upsert(message)
        if is_new:
            self._persist_conversation(message.conversation_id)
        self._announce_and_persist(merged, outcome)
        return outcome

    def _upsert(self, message: Message) -> tuple[UpsertOutcome, Message]:
        merged = self._merge_known(message)
        return self._ctx.store.upsert_message(merged), merged

    def _merge_known(self, message: Message) -> Message:
        """Keep model, parent and tools already known for this message id."""
        existing = self._ctx.store.get_message(message.conversation_id, message.message_id)
        if existing is None:
            return message
        updates: dict[str, Any] = {}
        if message.model == UNKNOWN_MODEL and existing.model != UNKNOWN_MODEL:
            updates["model"] = existing.model
        if message.is_assistant and not message.parent_message_id and existing.parent_message_id:
            updates["parent_message_id"] = existing.parent_message_id
        if not message.tools and existing.tools:
            updates["tools"] = existing.tools
        return replace(message, **updates) if updates else message

    def _announce_and_persist(self, message: Message, outcome: UpsertOutcome) -> None:
        if not outcome.changed:
            logger.debug("Message %s unchanged, skipped", message.message_id)
            return
        # Consumers hear about a message once; later copies only refresh the save.
        if outcome is UpsertOutcome.INSERTED:
            self._announce(message)
        gateway = self._ctx.gateway
        if gateway is not None:
            self._persist(f"message {message.message_id[:8]}", lambda: gateway.save_message(message))

    def _announce(self, message: Message) -> None:
        if message.is_user:
            self._ctx.bus.publish(
                MessageSent(
                    message_id=message.message_id,
                    content=message.content,
                    conversation_id=message.conversation_id,
                )
            )
        else:
            self._ctx.bus.publish(
                MessageReceived(
                    message_id=message.message_id,
                    content=message.content,
                    role=message.role,
                    conversation_id=message.conversation_id,
                )
            )

    def _persist_conversation(self, conversation_id: str) -> None:
        gateway = self._ctx.gateway
        conversation = self._ctx.store.get_conversation(conversation_id)
        if gateway is None or conversation is None:
            return
        self._persist(
            f"conversation {conversation_id[:8]}",
            lambda: gateway.save_conversation(conversation),
        )

    # -- Pending buffer --------------------------------------------------------

    def _flush_pending(self, conversation_id: str) -> None:
        store = self._ctx.store
        for entry in self._ctx.pending.flush_entries(conversation_id):
            message = entry.message
            known = store.get_message(conversation_id, message.message_id)
            if entry.from_dom and known is not None:
                logger.debug("Pending DOM message %s already known", message.message_id)
                continue
            self._ingest(message)

    def _settle_pending(self) -> None:
        """Attach still-pending messages to the open conversation, when enabled."""
        if not self._ctx.settings.adopt_current_conversation:
            return
        if self._current_id and len(self._ctx.pending):
            logger.debug(
                "Adopting %d pending messages into current conversation %s",
                len(self._ctx.pending),
                self._current_id,
            )
            self._flush_pending(self._current_id)

    # -- Persistence -----------------------------------------------------------

    def _persist(self, label: str, save: Callable[[], Awaitable[None]]) -> None:
        """Schedule *save* after every previously scheduled save, without waiting."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._ctx.reporter.capture(
                LifecycleError(f"no running event loop, dropped save of {label}"),
                "Persistence skipped",
            )
            return
        task = loop.create_task(self._run_save(label, save, self._tail))
        self._tail = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_save(
        self,
        label: str,
        save: Callable[[], Awaitable[None]],
        previous: asyncio.Task | None,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await save()
        except PersistenceError as exc:
            self._ctx.reporter.capture(exc, f"Error saving {label}")
        except Exception as exc:
            error = PersistenceError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
            self._ctx.reporter.capture(error, f"Error saving {label}")
