"""Per-page-session context that owns every reconciliation collaborator."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from chatsync.chat.events import EventBus
from chatsync.chat.models import now_ms
from chatsync.chat.pending import PendingBuffer
from chatsync.chat.store import ConversationStore
from chatsync.config import Settings, settings
from chatsync.errors import ErrorReporter, Notifier
from chatsync.persistence.gateway import Gateway, PersistenceGateway

logger = logging.getLogger(__name__)


@dataclass
class SessionContext:
    """Everything one observed page session needs.

    Built once when the session starts and handed to the controller; nothing
    here is global. Pass ``gateway=None`` to run without remote persistence.
    """

    settings: Settings
    store: ConversationStore
    pending: PendingBuffer
    bus: EventBus
    reporter: ErrorReporter
    gateway: Gateway | None = None
    clock: Callable[[], int] = field(default=now_ms)

    @classmethod
    def create(
        cls,
        config: Settings | None = None,
        *,
        gateway: Gateway | None = None,
        notifier: Notifier | None = None,
        clock: Callable[[], int] = now_ms,
        persist: bool = True,
    ) -> SessionContext:
        """Build a context from settings.

        A ``PersistenceGateway`` is created unless *gateway* is given or
        *persist* is False.
        """
        config = config or settings
        if gateway is None and persist:
            gateway = PersistenceGateway(config)
        return cls(
            settings=config,
            store=ConversationStore(title_max_length=config.title_max_length),
            pending=PendingBuffer(retention_ms=config.pending_retention_ms, clock=clock),
            bus=EventBus(),
            reporter=ErrorReporter(notifier),
            gateway=gateway,
            clock=clock,
        )

    def reset(self) -> None:
        """Drop all session state and detach every subscriber."""
        dropped = self.pending.clear()
        self.store.clear()
        released = self.bus.release_all()
        logger.debug("Session reset: %d pending dropped, %d listeners released", dropped, released)
