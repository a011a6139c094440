"""Domain events and the in-process bus that delivers them."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from chatsync.chat.models import Message

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    CONVERSATION_CHANGED = "conversation_changed"
    MESSAGE_SENT = "message_sent"
    MESSAGE_RECEIVED = "message_received"
    CONVERSATION_LOADED = "conversation_loaded"


@dataclass(frozen=True)
class ConversationChanged:
    conversation_id: str
    kind: ClassVar[EventKind] = EventKind.CONVERSATION_CHANGED


@dataclass(frozen=True)
class MessageSent:
    message_id: str
    content: str
    conversation_id: str
    kind: ClassVar[EventKind] = EventKind.MESSAGE_SENT


@dataclass(frozen=True)
class MessageReceived:
    message_id: str
    content: str
    role: str
    conversation_id: str
    kind: ClassVar[EventKind] = EventKind.MESSAGE_RECEIVED


@dataclass(frozen=True)
class ConversationLoaded:
    conversation_id: str
    title: str
    messages: tuple[Message, ...] = field(default_factory=tuple)
    kind: ClassVar[EventKind] = EventKind.CONVERSATION_LOADED


DomainEvent = ConversationChanged | MessageSent | MessageReceived | ConversationLoaded

# Listener signature: (event) -> None
Listener = Callable[[DomainEvent], None]


class Subscription:
    """Handle returned by ``EventBus.subscribe``. Call ``release()`` to detach."""

    def __init__(self, bus: EventBus, kind: EventKind | None, listener: Listener) -> None:
        self._bus = bus
        self.kind = kind
        self.listener = listener
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def release(self) -> None:
        if self._active:
            self._active = False
            self._bus._remove(self)


class EventBus:
    """Synchronous publish/subscribe over the closed set of ``EventKind``.

    Usage::

        bus = EventBus()
        sub = bus.subscribe(EventKind.MESSAGE_SENT, on_sent)
        ...
        sub.release()

    Subscribing with ``kind=None`` receives every event. A listener that
    raises is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []

    def subscribe(self, kind: EventKind | None, listener: Listener) -> Subscription:
        subscription = Subscription(self, kind, listener)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with contextlib.suppress(ValueError):
            self._subscriptions.remove(subscription)

    def publish(self, event: DomainEvent) -> int:
        """Deliver *event* to matching listeners. Returns the number notified."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            if subscription.kind is not None and subscription.kind is not event.kind:
                continue
            try:
                subscription.listener(event)
            except Exception:
                logger.exception("Listener failed for %s", event.kind.value)
            delivered += 1
        return delivered

    def release_all(self) -> int:
        """Detach every subscription. Returns the count released."""
        subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.release()
        return len(subscriptions)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
