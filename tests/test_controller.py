"""Tests for the reconciliation controller."""

from unittest.mock import patch

import pytest

from chatsync.chat.controller import ConversationState, ReconciliationController
from chatsync.chat.events import (
    ConversationChanged,
    ConversationLoaded,
    EventKind,
    MessageReceived,
    MessageSent,
)
from chatsync.chat.session import SessionContext
from chatsync.config import Settings
from chatsync.errors import LifecycleError, MalformedPayloadError, PersistenceError

CONV_ID = "6a1f0c2e-4b7d-4e8a-9c3f-0d2b5e7a1c44"


def _completion(request: dict | None = None, response=None, *, streaming: bool = False) -> dict:
    data: dict = {"url": "https://chatgpt.com/backend-api/conversation", "isStreaming": streaming}
    if request is not None:
        data["requestBody"] = request
    if response is not None:
        data["responseBody"] = response
    return {"type": "chatCompletion", "data": data}


def _user_request(text: str, msg_id: str = "u1", conversation_id: str | None = None,
                  create_time: float = 1_700_000_000.0) -> dict:
    body = {
        "action": "next",
        "model": "gpt-4o",
        "messages": [
            {
                "id": msg_id,
                "author": {"role": "user"},
                "content": {"content_type": "text", "parts": [text]},
                "create_time": create_time,
            }
        ],
    }
    if conversation_id:
        body["conversation_id"] = conversation_id
    return body


def _assistant_body(text: str, msg_id: str = "a1", conversation_id: str = CONV_ID,
                    create_time: float = 1_700_000_001.0, parent_id: str = "u1") -> dict:
    return {
        "conversation_id": conversation_id,
        "message": {
            "id": msg_id,
            "author": {"role": "assistant"},
            "content": {"content_type": "text", "parts": [text]},
            "create_time": create_time,
            "metadata": {"model_slug": "gpt-4o", "parent_id": parent_id},
        },
    }


def _snapshot(conversation_id: str = CONV_ID, title: str | None = "Weather chat") -> dict:
    def node(node_id, role, text, parent, children, create_time, **author):
        return {
            "id": node_id,
            "parent": parent,
            "children": children,
            "message": {
                "id": node_id,
                "author": {"role": role, **author},
                "content": {"content_type": "text", "parts": [text]},
                "create_time": create_time,
                "metadata": {"model_slug": "gpt-4o"} if role == "assistant" else {},
            },
        }

    return {
        "conversation_id": conversation_id,
        "title": title,
        "update_time": 1_700_000_010.0,
        "mapping": {
            "client-created-root": {"id": "client-created-root", "parent": None, "children": ["U1"], "message": None},
            "U1": node("U1", "user", "What's the weather?", "client-created-root", ["T1"], 1_700_000_000.0),
            "T1": node("T1", "tool", "72F", "U1", ["A1"], 1_700_000_001.0, name="browser"),
            "A1": node("A1", "assistant", "It is 72F.", "T1", [], 1_700_000_002.0),
        },
    }


@pytest.fixture
def events(controller) -> list:
    collected: list = []
    controller.subscribe(None, collected.append)
    return collected


# -- Navigation and state ------------------------------------------------------


def test_starts_without_conversation(controller: ReconciliationController) -> None:
    assert controller.state is ConversationState.NO_CONVERSATION
    assert controller.get_current_conversation_id() is None


def test_navigation_sets_current_conversation(controller, events) -> None:
    assert controller.handle_event({"type": "navigation", "url": "https://chatgpt.com/c/abc123"})
    assert controller.get_current_conversation_id() == "abc123"
    assert controller.state is ConversationState.HAS_CONVERSATION
    assert events == [ConversationChanged(conversation_id="abc123")]


def test_navigation_to_same_conversation_is_quiet(controller, events) -> None:
    controller.handle_navigation("https://chatgpt.com/c/abc123")
    controller.handle_navigation("https://chatgpt.com/c/abc123?model=gpt-4o")
    assert len(events) == 1


def test_navigation_away_clears_current(controller) -> None:
    controller.handle_navigation("https://chatgpt.com/c/abc123")
    controller.handle_navigation("https://chatgpt.com/")
    assert controller.state is ConversationState.NO_CONVERSATION


def test_initialize_with_url(context) -> None:
    controller = ReconciliationController(context)
    controller.initialize("https://chatgpt.com/c/abc123")
    assert controller.get_current_conversation_id() == "abc123"
    controller.cleanup()


# -- Outgoing messages ---------------------------------------------------------


async def test_request_on_conversation_page_is_stored_and_saved(controller, events, gateway) -> None:
    controller.handle_navigation("https://chatgpt.com/c/abc123")
    assert controller.handle_event(_completion(_user_request("Hello")))
    await controller.drain()

    messages = controller.get_conversation_messages("abc123")
    assert [(m.message_id, m.content, m.role) for m in messages] == [("u1", "Hello", "user")]
    assert MessageSent(message_id="u1", content="Hello", conversation_id="abc123") in events
    assert gateway.calls == ["conversation:abc123", "message:u1"]
    assert controller.get_conversation("abc123").title == "Hello"


async def test_request_with_conversation_id_is_stored_directly(controller, gateway) -> None:
    controller.handle_event(_completion(_user_request("Hi", conversation_id=CONV_ID)))
    await controller.drain()

    assert controller.get_current_conversation_id() == CONV_ID
    assert [m.message_id for m in controller.get_conversation_messages(CONV_ID)] == ["u1"]
    assert gateway.messages[0].model == "gpt-4o"


async def test_without_adoption_request_stays_pending(gateway, notifier, clock) -> None:
    context = SessionContext.create(
        Settings(adopt_current_conversation=False), gateway=gateway, notifier=notifier, clock=clock
    )
    controller = ReconciliationController(context)
    controller.initialize("https://chatgpt.com/c/abc123")

    controller.handle_event(_completion(_user_request("Hello")))
    await controller.drain()

    assert controller.get_conversation_messages("abc123") == []
    assert len(context.pending) == 1
    assert gateway.calls == []

    controller.handle_event(_completion(response=_assistant_body("Hi!", conversation_id="abc123")))
    await controller.drain()

    assert [m.message_id for m in controller.get_conversation_messages("abc123")] == ["u1", "a1"]
    assert gateway.calls == ["conversation:abc123", "message:u1", "message:a1"]
    controller.cleanup()


# -- New conversation race -----------------------------------------------------


async def test_new_chat_response_id_claims_pending_request(controller, events, gateway) -> None:
    controller.handle_navigation("https://chatgpt.com/")
    controller.handle_event(_completion(_user_request("Plan a trip")))
    assert controller.get_conversations() == []

    controller.handle_event(_completion(response=_assistant_body("Sure, where to?")))
    await controller.drain()

    messages = controller.get_conversation_messages(CONV_ID)
    assert [(m.message_id, m.role) for m in messages] == [("u1", "user"), ("a1", "assistant")]
    assert messages[1].parent_message_id == "u1"
    assert controller.get_current_conversation_id() == CONV_ID

    kinds = [e.kind for e in events if e.kind is not EventKind.CONVERSATION_CHANGED]
    assert kinds == [EventKind.MESSAGE_SENT, EventKind.MESSAGE_RECEIVED]
    assert gateway.calls == [f"conversation:{CONV_ID}", "message:u1", "message:a1"]
    assert controller.get_conversation(CONV_ID).title == "Plan a trip"


async def test_new_chat_dom_echo_is_not_ingested_twice(controller, events, gateway) -> None:
    controller.handle_navigation("https://chatgpt.com/")
    controller.handle_event(_completion(_user_request("Plan a trip\nto Lisbon")))
    controller.handle_event(
        {"role": "user", "message": "Plan a trip to Lisbon", "messageId": "u1", "providerChatId": None}
    )
    controller.handle_event(_completion(response=_assistant_body("Sure, when?")))
    await controller.drain()

    sent = [e for e in events if isinstance(e, MessageSent)]
    assert len(sent) == 1
    assert sent[0].content == "Plan a trip\nto Lisbon"
    assert gateway.calls == [f"conversation:{CONV_ID}", "message:u1", "message:a1"]
    assert controller.get_conversation_messages(CONV_ID)[0].content == "Plan a trip\nto Lisbon"


async def test_pending_dom_copy_skipped_after_network_copy(controller, context, events, gateway) -> None:
    controller.handle_navigation("https://chatgpt.com/")
    controller.handle_event({"role": "user", "message": "Plan a trip to Lisbon", "messageId": "u1"})
    request = _user_request("Plan a trip\nto Lisbon", conversation_id=CONV_ID)
    controller.handle_event(_completion(request))
    await controller.drain()

    messages = controller.get_conversation_messages(CONV_ID)
    assert [(m.message_id, m.content) for m in messages] == [("u1", "Plan a trip\nto Lisbon")]
    assert len([e for e in events if isinstance(e, MessageSent)]) == 1
    assert gateway.calls.count("message:u1") == 1
    assert len(context.pending) == 0


async def test_request_and_response_in_one_event(controller, gateway) -> None:
    controller.handle_event(_completion(_user_request("Hello"), _assistant_body("Hi")))
    await controller.drain()

    assert [m.message_id for m in controller.get_conversation_messages(CONV_ID)] == ["u1", "a1"]


async def test_expired_pending_request_is_dropped(controller, clock) -> None:
    controller.handle_event(_completion(_user_request("Hello")))
    clock.advance(5 * 60 * 1000 + 1)
    controller.handle_event(_completion(response=_assistant_body("Hi")))
    await controller.drain()

    assert [m.message_id for m in controller.get_conversation_messages(CONV_ID)] == ["a1"]


async def test_set_current_conversation_flushes_pending(controller, events) -> None:
    controller.handle_event(_completion(_user_request("Hello")))
    controller.set_current_conversation_id("abc123")
    await controller.drain()

    assert [m.message_id for m in controller.get_conversation_messages("abc123")] == ["u1"]
    assert events[-1] == ConversationChanged(conversation_id="abc123")


# -- Incoming messages ---------------------------------------------------------


async def test_duplicate_response_not_announced_or_saved_twice(controller, events, gateway) -> None:
    body = _assistant_body("Hi")
    controller.handle_event(_completion(response=body))
    controller.handle_event(_completion(response=body))
    await controller.drain()

    received = [e for e in events if isinstance(e, MessageReceived)]
    assert len(received) == 1
    assert gateway.calls.count("message:a1") == 1
    assert len(controller.get_conversation_messages(CONV_ID)) == 1


async def test_streaming_response_is_assembled(controller, gateway) -> None:
    sse = (
        'data: {"v": {"message": {"id": "a9", "author": {"role": "assistant"}, '
        '"content": {"content_type": "text", "parts": [""]}, "create_time": 1700000001.0, '
        '"metadata": {"model_slug": "gpt-4o"}}, "conversation_id": "%s"}}\n\n'
        'data: {"p": "/message/content/parts/0", "o": "append", "v": "Hel"}\n\n'
        'data: {"v": "lo"}\n\n'
        "data: [DONE]\n\n"
    ) % CONV_ID
    controller.handle_event(_completion(_user_request("Say hello"), sse, streaming=True))
    await controller.drain()

    messages = controller.get_conversation_messages(CONV_ID)
    assert [(m.message_id, m.content) for m in messages] == [("u1", "Say hello"), ("a9", "Hello")]
    assert messages[1].model == "gpt-4o"


async def test_stream_with_only_conversation_id_flushes_pending(controller) -> None:
    sse = f'data: {{"conversation_id": "{CONV_ID}", "type": "title_generation"}}\n\ndata: [DONE]\n\n'
    controller.handle_event(_completion(_user_request("Hello"), sse, streaming=True))
    await controller.drain()

    assert [m.message_id for m in controller.get_conversation_messages(CONV_ID)] == ["u1"]


async def test_assistant_response_event(controller, events) -> None:
    controller.handle_event(
        {
            "type": "assistantResponse",
            "messageId": "a7",
            "content": "Done.",
            "conversationId": CONV_ID,
            "model": "gpt-4o-mini",
            "createTime": 1_700_000_005.0,
            "parentMessageId": "u7",
        }
    )
    await controller.drain()

    message = controller.get_conversation_messages(CONV_ID)[0]
    assert message.model == "gpt-4o-mini"
    assert message.parent_message_id == "u7"
    assert message.timestamp == 1_700_000_005_000
    assert MessageReceived(message_id="a7", content="Done.", role="assistant", conversation_id=CONV_ID) in events


# -- DOM observer --------------------------------------------------------------


async def test_dom_message_already_seen_on_network_is_ignored(controller, events, gateway) -> None:
    controller.handle_event(_completion(response=_assistant_body("Hi")))
    await controller.drain()
    before = list(gateway.calls)

    controller.handle_event({"role": "assistant", "message": "Hi", "messageId": "a1", "providerChatId": CONV_ID})
    await controller.drain()

    assert gateway.calls == before
    assert len([e for e in events if isinstance(e, MessageReceived)]) == 1
    assert controller.get_conversation_messages(CONV_ID)[0].model == "gpt-4o"


async def test_dom_first_then_network_copy_announced_once(controller, events, gateway) -> None:
    controller.handle_event(
        {"role": "user", "message": "Plan a trip to Lisbon", "messageId": "u1", "providerChatId": CONV_ID}
    )
    request = _user_request("Plan a trip\nto Lisbon", conversation_id=CONV_ID)
    controller.handle_event(_completion(request))
    await controller.drain()

    assert len([e for e in events if isinstance(e, MessageSent)]) == 1
    messages = controller.get_conversation_messages(CONV_ID)
    assert [(m.message_id, m.content) for m in messages] == [("u1", "Plan a trip\nto Lisbon")]
    assert messages[0].model == "gpt-4o"
    assert gateway.calls.count("message:u1") == 2
    assert gateway.messages[-1].content == "Plan a trip\nto Lisbon"


async def test_dom_message_fills_gap(controller, events) -> None:
    controller.handle_event(
        {
            "type": "domMessage",
            "data": {
                "role": "user",
                "message": "Typed in the page",
                "messageId": "d1",
                "timestamp": 1_700_000_000_000,
                "providerChatId": CONV_ID,
            },
        }
    )
    await controller.drain()

    message = controller.get_conversation_messages(CONV_ID)[0]
    assert message.message_id == "d1"
    assert message.timestamp == 1_700_000_000_000
    assert isinstance(events[-1], MessageSent)


# -- Snapshots and lists -------------------------------------------------------


async def test_snapshot_loads_and_persists_as_batch(controller, events, gateway) -> None:
    controller.handle_event({"type": "specificConversation", "responseBody": _snapshot()})
    await controller.drain()

    messages = controller.get_conversation_messages(CONV_ID)
    assert [m.message_id for m in messages] == ["U1", "A1"]
    assert messages[1].tools == ("browser",)
    assert messages[1].parent_message_id == "U1"
    assert controller.get_current_conversation_id() == CONV_ID

    assert gateway.calls == [f"batch:{CONV_ID}"]
    chats, saved = gateway.batches[0]
    assert chats[0].title == "Weather chat"
    assert [m.message_id for m in saved] == ["U1", "A1"]

    loaded = [e for e in events if isinstance(e, ConversationLoaded)]
    assert len(loaded) == 1
    assert loaded[0].title == "Weather chat"
    assert [m.message_id for m in loaded[0].messages] == ["U1", "A1"]


async def test_reloaded_snapshot_saves_no_unchanged_messages(controller, gateway) -> None:
    controller.handle_snapshot(_snapshot())
    controller.handle_snapshot(_snapshot())
    await controller.drain()

    assert len(gateway.batches) == 2
    assert gateway.batches[1][1] == []
    assert len(controller.get_conversation_messages(CONV_ID)) == 2


async def test_snapshot_flushes_pending(controller, gateway) -> None:
    controller.handle_event(_completion(_user_request("Follow-up", msg_id="u2", create_time=1_700_000_003.0)))
    controller.handle_snapshot(_snapshot())
    await controller.drain()

    assert [m.message_id for m in controller.get_conversation_messages(CONV_ID)] == ["U1", "A1", "u2"]
    assert gateway.calls == [f"batch:{CONV_ID}", "message:u2"]


async def test_snapshot_title_beats_derived_title(controller) -> None:
    controller.handle_event(_completion(_user_request("What's the weather?", conversation_id=CONV_ID)))
    assert controller.get_conversation(CONV_ID).title == "What's the weather?"

    controller.handle_snapshot(_snapshot(title="Weather chat"))
    await controller.drain()
    assert controller.get_conversation(CONV_ID).title == "Weather chat"


async def test_snapshot_without_id_is_ignored(controller, events, gateway) -> None:
    snapshot = _snapshot()
    del snapshot["conversation_id"]
    controller.handle_snapshot(snapshot)
    await controller.drain()

    assert events == []
    assert gateway.calls == []


async def test_conversation_list_indexes_titles(controller, gateway) -> None:
    controller.handle_event(
        {
            "type": "conversationList",
            "responseBody": {
                "items": [
                    {"id": "c-old", "title": "Old chat", "update_time": "2023-11-14T22:13:20Z"},
                    {"id": "c-new", "title": "New chat", "update_time": 1_700_000_500.0},
                    {"title": "missing id"},
                ]
            },
        }
    )
    await controller.drain()

    conversations = controller.get_conversations()
    assert [(c.id, c.title) for c in conversations] == [("c-new", "New chat"), ("c-old", "Old chat")]
    assert gateway.calls == []


async def test_untitled_list_item_keeps_derived_title(controller) -> None:
    controller.handle_event(
        {"role": "user", "message": "Plan a trip", "messageId": "u1", "providerChatId": CONV_ID}
    )
    controller.handle_event(
        {
            "type": "conversationList",
            "responseBody": {"items": [{"id": CONV_ID, "title": None}, {"id": "c-blank", "title": "  "}]},
        }
    )
    await controller.drain()

    assert controller.get_conversation(CONV_ID).title == "Plan a trip"
    assert controller.get_conversation("c-blank").title == "New conversation"


# -- Failures ------------------------------------------------------------------


async def test_persistence_failure_reported_without_rollback(controller, context, gateway, notifier) -> None:
    gateway.fail = True
    controller.handle_event(_completion(_user_request("Hello", conversation_id=CONV_ID)))
    await controller.drain()

    assert len(controller.get_conversation_messages(CONV_ID)) == 1
    errors = [error for error, _ in context.reporter.captured]
    assert len(errors) == 2
    assert all(isinstance(e, PersistenceError) for e in errors)
    assert len(notifier.sent) == 2
    assert all(text.startswith("Could not save chat history") for text in notifier.sent)


async def test_unexpected_save_error_is_wrapped(controller, context, gateway) -> None:
    async def broken(message) -> None:
        raise RuntimeError("serializer exploded")

    gateway.save_message = broken
    controller.handle_event(_completion(_user_request("Hello", conversation_id=CONV_ID)))
    await controller.drain()

    error, label = context.reporter.captured[-1]
    assert isinstance(error, PersistenceError)
    assert isinstance(error.__cause__, RuntimeError)
    assert label == "Error saving message u1"


async def test_saves_run_in_scheduling_order(controller, gateway) -> None:
    for i in range(5):
        controller.handle_event(_completion(_user_request(f"m{i}", msg_id=f"u{i}", conversation_id=CONV_ID,
                                                          create_time=1_700_000_000.0 + i)))
    await controller.drain()

    assert gateway.calls == [f"conversation:{CONV_ID}"] + [f"message:u{i}" for i in range(5)]


def test_save_without_event_loop_is_reported(controller, context) -> None:
    controller.handle_event(_completion(_user_request("Hello", conversation_id=CONV_ID)))

    assert len(controller.get_conversation_messages(CONV_ID)) == 1
    assert all(isinstance(error, LifecycleError) for error, _ in context.reporter.captured)


async def test_malformed_payload_does_not_stop_processing(controller, context, notifier) -> None:
    assert controller.handle_event("not an object") is False
    assert controller.handle_event({"type": "userInfo", "data": {"email": "x@example.com"}}) is False
    assert controller.handle_event({"type": "chatCompletion", "requestBody": "oops"}) is False
    assert controller.handle_event(_completion(_user_request("Hello", conversation_id=CONV_ID)))
    await controller.drain()

    assert len(controller.get_conversation_messages(CONV_ID)) == 1
    # Only the known-but-invalid event is reported, and never shown to the user.
    reported = [(type(e), label) for e, label in context.reporter.captured]
    assert reported == [(MalformedPayloadError, "Malformed chatCompletion payload")]
    assert notifier.sent == []


async def test_handler_exception_is_captured(controller, context) -> None:
    with patch.object(controller, "_on_dom_message", side_effect=RuntimeError("boom")):
        ok = controller.handle_event({"role": "user", "message": "hi"})

    assert ok is False
    error, label = context.reporter.captured[-1]
    assert isinstance(error, RuntimeError)
    assert label == "Error handling domMessage"


# -- Lifecycle -----------------------------------------------------------------


def test_events_before_initialize_are_refused(context) -> None:
    controller = ReconciliationController(context)
    assert controller.handle_event({"type": "navigation", "url": "https://chatgpt.com/c/abc123"}) is False
    assert controller.get_current_conversation_id() is None
    error, _ = context.reporter.captured[-1]
    assert isinstance(error, LifecycleError)


def test_cleanup_releases_everything(controller, context) -> None:
    sent: list = []
    controller.subscribe(EventKind.MESSAGE_SENT, sent.append)
    controller.handle_navigation("https://chatgpt.com/c/abc123")
    controller.cleanup()

    assert context.bus.subscriber_count == 0
    assert controller.get_current_conversation_id() is None
    assert controller.get_conversations() == []
    assert controller.handle_event(_completion(_user_request("late", conversation_id=CONV_ID))) is False
    assert sent == []


def test_subscription_release(controller) -> None:
    sent: list = []
    subscription = controller.subscribe(EventKind.MESSAGE_SENT, sent.append)
    subscription.release()
    controller.handle_event(_completion(_user_request("Hello", conversation_id=CONV_ID)))
    assert sent == []
