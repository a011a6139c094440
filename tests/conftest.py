"""Shared test fixtures."""

from collections.abc import Sequence

import pytest

from chatsync.chat.controller import ReconciliationController
from chatsync.chat.models import Conversation, Message
from chatsync.chat.session import SessionContext
from chatsync.config import Settings
from chatsync.errors import PersistenceError


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeGateway:
    """Records every save instead of calling the remote API."""

    def __init__(self) -> None:
        self.messages: list[Message] = []
        self.conversations: list[Conversation] = []
        self.batches: list[tuple[list[Conversation], list[Message]]] = []
        self.calls: list[str] = []
        self.fail = False

    async def save_message(self, message: Message) -> None:
        self.calls.append(f"message:{message.message_id}")
        if self.fail:
            raise PersistenceError("remote store unavailable", status_code=503)
        self.messages.append(message)

    async def save_conversation(self, conversation: Conversation) -> None:
        self.calls.append(f"conversation:{conversation.id}")
        if self.fail:
            raise PersistenceError("remote store unavailable", status_code=503)
        self.conversations.append(conversation)

    async def save_batch(
        self, conversations: Sequence[Conversation], messages: Sequence[Message]
    ) -> None:
        self.calls.append(f"batch:{','.join(c.id for c in conversations)}")
        if self.fail:
            raise PersistenceError("remote store unavailable", status_code=503)
        self.batches.append((list(conversations), list(messages)))


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def notify(self, message: str) -> bool:
        self.sent.append(message)
        return True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def test_settings() -> Settings:
    return Settings()


@pytest.fixture
def context(test_settings, gateway, notifier, clock) -> SessionContext:
    return SessionContext.create(test_settings, gateway=gateway, notifier=notifier, clock=clock)


@pytest.fixture
def controller(context) -> ReconciliationController:
    ctrl = ReconciliationController(context)
    ctrl.initialize()
    yield ctrl
    ctrl.cleanup()
