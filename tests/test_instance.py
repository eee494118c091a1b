"""Tests for the public ChatInstance API."""

import asyncio
from unittest.mock import Mock

import pytest

from ai_chat_core.backends.base import ChatBackend, final_text_chunk, partial_text_chunk
from ai_chat_core.backends.scripted import ScriptedBackend
from ai_chat_core.config import Settings
from ai_chat_core.instance import ChatInstance
from ai_chat_core.message_store import StoredResponse
from ai_chat_core.models.events import BusEventType
from ai_chat_core.models.messages import MessageRequest, MessageResponse
from ai_chat_core.models.session import ResponseState


def text_message(message_id, text):
    return {
        "id": message_id,
        "output": {"generic": [{"response_type": "text", "text": text}]},
    }


@pytest.fixture
def settings():
    return Settings(ERROR_MESSAGE_TEXT="Something went wrong")


@pytest.fixture
def chat(settings):
    return ChatInstance(settings=settings)


@pytest.fixture
def events(chat):
    received = []
    chat.subscribe(BusEventType.ALL, received.append)
    return received


def event_types(events):
    return [e.type for e in events]


# Scenario: streamed text then final


def test_streamed_text_then_final(chat, events):
    chat.add_message_chunk(partial_text_chunk("r1", "1", "Hel"))
    chat.add_message_chunk(partial_text_chunk("r1", "1", "lo"))

    pending = chat.get_pending_items("r1")
    assert pending[0].item.text == "Hello"
    assert chat.get_message_by_id("r1") is None

    chat.add_message_chunk(final_text_chunk("r1", "1", "Hello"))

    message = chat.get_message_by_id("r1")
    assert [item.text for item in message.output.generic] == ["Hello"]
    assert event_types(events)[-2:] == [BusEventType.RECEIVE, BusEventType.RESPONSE_COMPLETE]
    assert chat.get_pending_items("r1") == []


# Scenario: user stop mid-stream


def test_stop_mid_stream_keeps_partial_text(chat, events):
    chat.add_message_chunk(partial_text_chunk("r1", "1", "Hel"))

    assert chat.stop_streaming("r1") is True

    entry = chat.get_entry("r1")
    assert entry.state == ResponseState.CANCELLED
    assert entry.message.output.generic[0].text == "Hel"
    assert events[-1].type == BusEventType.RESPONSE_CANCELLED

    assert chat.add_message_chunk(partial_text_chunk("r1", "1", "lo")) is False
    assert chat.add_message_chunk(final_text_chunk("r1", "1", "Hello")) is False
    assert chat.get_message_by_id("r1").output.generic[0].text == "Hel"
    assert events[-1].type == BusEventType.RESPONSE_CANCELLED


def test_stop_streaming_is_idempotent(chat, events):
    chat.add_message_chunk(partial_text_chunk("r1", "1", "Hel"))

    assert chat.stop_streaming("r1") is True
    count = len(events)
    assert chat.stop_streaming("r1") is False
    assert chat.stop_streaming() is False

    assert len(events) == count


def test_stop_streaming_defaults_to_active_response(chat):
    chat.add_message_chunk(partial_text_chunk("r1", "1", "Hel"))

    assert chat.stop_streaming() is True
    assert chat.get_response_state("r1") == ResponseState.CANCELLED


def test_stop_on_complete_response_is_noop(chat):
    chat.add_message(text_message("r1", "done"))

    assert chat.stop_streaming("r1") is False
    assert chat.get_entry("r1").state == ResponseState.COMPLETE


# Scenario: interleaved items


def test_interleaved_items_keep_first_seen_order(chat):
    chat.add_message_chunk(partial_text_chunk("r1", "a", "A1"))
    chat.add_message_chunk(partial_text_chunk("r1", "b", "B1"))
    chat.add_message_chunk(partial_text_chunk("r1", "a", "A2"))

    pending = chat.get_pending_items("r1")
    assert [(local.ui_state.id, local.item.text) for local in pending] == [
        ("a", "A1A2"),
        ("b", "B1"),
    ]

    chat.add_message_chunk(
        {
            "final_response": {
                "id": "r1",
                "output": {
                    "generic": [
                        {"response_type": "text", "text": "A1A2", "streaming_metadata": {"id": "a"}},
                        {"response_type": "text", "text": "B1", "streaming_metadata": {"id": "b"}},
                    ]
                },
            },
            "streaming_metadata": {"response_id": "r1"},
        }
    )

    assert [item.text for item in chat.get_message_by_id("r1").output.generic] == ["A1A2", "B1"]


def test_hello_world_partials_then_final(chat):
    chat.add_message_chunk(partial_text_chunk("r1", "1", "Hello "))
    chat.add_message_chunk(partial_text_chunk("r1", "1", "world"))
    chat.add_message_chunk(final_text_chunk("r1", "1", "Hello world"))

    messages = chat.get_all_messages()
    assert len(messages) == 1
    assert messages[0].output.generic[0].text == "Hello world"


def test_completion_order_does_not_reorder_items(chat):
    """Items keep first-seen order even when completed out of order."""
    chat.tracker.begin_response("r1", expected_items=2)
    chat.add_message_chunk(partial_text_chunk("r1", "1", "one"))
    chat.add_message_chunk(partial_text_chunk("r1", "2", "two"))
    chat.add_message_chunk(partial_text_chunk("r1", "1", "!"))

    for item_id, text in [("2", "two"), ("1", "one!")]:
        chat.add_message_chunk(
            {
                "complete_item": {
                    "response_type": "text",
                    "text": text,
                    "streaming_metadata": {"id": item_id},
                },
                "streaming_metadata": {"response_id": "r1"},
            }
        )

    entry = chat.get_entry("r1")
    assert entry.state == ResponseState.COMPLETE
    assert [item.text for item in entry.message.output.generic] == ["one!", "two"]


# Scenario: malformed chunk


def test_malformed_chunk_is_dropped(chat, events):
    chat.add_message_chunk(partial_text_chunk("r1", "1", "Hel"))
    count = len(events)

    assert chat.add_message_chunk({"partial_item": {"text": "x"}, "streaming_metadata": {"response_id": "r1"}}) is False
    assert chat.add_message_chunk({"streaming_metadata": {"response_id": "r1"}}) is False
    assert chat.add_message_chunk("not a chunk") is False

    assert len(events) == count
    assert chat.get_pending_items("r1")[0].item.text == "Hel"

    assert chat.add_message_chunk(partial_text_chunk("r1", "1", "lo")) is True
    assert chat.get_pending_items("r1")[0].item.text == "Hello"


# Non-streaming equivalence


def test_add_message_equals_single_final_chunk(settings):
    message = {
        "id": "m1",
        "output": {"generic": [{"response_type": "text", "text": "hi", "extra": {"k": 1}}]},
        "history": {"label": "x"},
    }

    direct = ChatInstance(settings=settings)
    direct.add_message(message)
    chunked = ChatInstance(settings=settings)
    chunked.add_message_chunk(
        {"final_response": message, "streaming_metadata": {"response_id": "m1"}}
    )

    assert direct.get_all_messages() == chunked.get_all_messages()
    assert direct.get_entry("m1").state == chunked.get_entry("m1").state


def test_add_message_without_id_gets_one(chat):
    assert chat.add_message({"output": {"generic": [{"response_type": "text", "text": "hi"}]}}) is True

    messages = chat.get_all_messages()
    assert len(messages) == 1
    assert messages[0].id


def test_add_message_twice_keeps_first(chat):
    chat.add_message(text_message("m1", "first"))

    assert chat.add_message(text_message("m1", "second")) is False
    assert chat.get_message_by_id("m1").output.generic[0].text == "first"


def test_unknown_fields_round_trip(chat):
    message = {
        "id": "m1",
        "output": {
            "generic": [
                {"response_type": "carousel", "items": [{"title": "t"}], "custom_flag": True}
            ]
        },
        "custom_top": {"a": 1},
    }

    chat.add_message(message)

    wire = chat.get_message_by_id("m1").to_wire()
    assert wire["custom_top"] == {"a": 1}
    assert wire["output"]["generic"][0]["items"] == [{"title": "t"}]
    assert wire["output"]["generic"][0]["custom_flag"] is True


def test_returned_messages_are_copies(chat):
    chat.add_message(text_message("m1", "hi"))

    chat.get_message_by_id("m1").output.generic[0].text = "changed"

    assert chat.get_message_by_id("m1").output.generic[0].text == "hi"


# Subscribers


def test_listener_errors_do_not_break_ingestion(chat):
    healthy = Mock()
    chat.subscribe(BusEventType.CHUNK_RECEIVED, Mock(side_effect=ValueError("boom")))
    chat.subscribe(BusEventType.CHUNK_RECEIVED, healthy)

    assert chat.add_message_chunk(partial_text_chunk("r1", "1", "x")) is True
    healthy.assert_called_once()


def test_listener_adding_chunks_is_reentrant(chat, events):
    """A chunk added from a listener is processed after the current event."""

    def on_first(event):
        if event.data["chunk"]["partial_item"]["text"] == "a":
            chat.add_message_chunk(partial_text_chunk("r1", "1", "b"))

    chat.subscribe(BusEventType.CHUNK_RECEIVED, on_first)
    chat.add_message_chunk(partial_text_chunk("r1", "1", "a"))

    assert chat.get_pending_items("r1")[0].item.text == "ab"
    texts = [e.data["chunk"]["partial_item"]["text"] for e in events]
    assert texts == ["a", "b"]


def test_unsubscribe(chat):
    listener = Mock()
    chat.subscribe(BusEventType.CHUNK_RECEIVED, listener)

    chat.unsubscribe(BusEventType.CHUNK_RECEIVED, listener)
    chat.add_message_chunk(partial_text_chunk("r1", "1", "x"))

    listener.assert_not_called()


def test_message_options_stream_into_response(chat):
    chat.add_message_chunk(
        {
            "partial_item": {"response_type": "text", "text": "x", "streaming_metadata": {"id": "1"}},
            "partial_response": {"message_options": {"response_user_profile": {"nickname": "Bot"}}},
            "streaming_metadata": {"response_id": "r1"},
        }
    )
    chat.stop_streaming("r1")

    message = chat.get_message_by_id("r1")
    assert message.message_options == {"response_user_profile": {"nickname": "Bot"}}


def test_is_stop_available_follows_cancellable_flag(chat):
    chat.add_message_chunk(partial_text_chunk("r1", "1", "x", cancellable=False))
    assert chat.is_stop_available("r1") is False

    chat.add_message_chunk(partial_text_chunk("r1", "1", "y", cancellable=True))
    assert chat.is_stop_available("r1") is True
    assert chat.is_stop_available() is True

    chat.stop_streaming("r1")
    assert chat.is_stop_available("r1") is False


# History and restart


def test_insert_history_keeps_states(chat):
    cancelled = StoredResponse(
        message=MessageResponse.model_validate(text_message("old-1", "partial")),
        state=ResponseState.CANCELLED,
    )

    inserted = chat.insert_history([cancelled, text_message("old-2", "full")])

    assert inserted == 2
    assert [m.id for m in chat.get_all_messages()] == ["old-1", "old-2"]
    assert chat.get_entry("old-1").state == ResponseState.CANCELLED
    assert chat.add_message_chunk(partial_text_chunk("old-1", "1", "more")) is False


def test_restart_conversation(chat, events):
    chat.add_message(text_message("m1", "hi"))
    chat.add_message_chunk(partial_text_chunk("r2", "1", "streaming"))

    chat.restart_conversation()

    assert chat.get_all_messages() == []
    assert chat.get_pending_items("r2") == []
    assert events[-1].type == BusEventType.RESTART_CONVERSATION
    assert events[-1].data["cancelled"] == ["r2"]


def test_message_id_reusable_after_restart(chat):
    chat.add_message(text_message("m1", "before"))
    chat.restart_conversation()

    assert chat.add_message(text_message("m1", "after")) is True
    assert chat.get_entry("m1").state == ResponseState.COMPLETE
    assert chat.get_message_by_id("m1").output.generic[0].text == "after"


def test_streamed_id_reusable_after_restart(chat):
    chat.add_message_chunk(partial_text_chunk("r1", "1", "old"))
    chat.restart_conversation()

    assert chat.add_message_chunk(partial_text_chunk("r1", "1", "new")) is True
    assert chat.add_message_chunk(final_text_chunk("r1", "1", "new text")) is True
    assert chat.get_message_by_id("r1").output.generic[0].text == "new text"


def test_add_message_keeps_items_whose_id_looks_synthetic(chat):
    chat.add_message({
        "id": "r1",
        "output": {
            "generic": [
                {"response_type": "text", "text": "A", "streaming_metadata": {"id": "item-1"}},
                {"response_type": "text", "text": "B"},
            ]
        },
    })

    assert [item.text for item in chat.get_message_by_id("r1").output.generic] == ["A", "B"]


# send() with backends


@pytest.mark.asyncio
async def test_send_streams_backend_response(settings):
    backend = ScriptedBackend([
        partial_text_chunk("r1", "1", "Hel"),
        partial_text_chunk("r1", "1", "lo"),
        final_text_chunk("r1", "1", "Hello"),
    ])
    chat = ChatInstance(backend=backend, settings=settings)
    received = []
    chat.subscribe(BusEventType.ALL, received.append)

    response_id = await chat.send("hi")

    assert response_id == "r1"
    message = chat.get_message_by_id("r1")
    assert message.output.generic[0].text == "Hello"
    assert message.request_id is not None
    types = event_types(received)
    assert types[:2] == [BusEventType.PRE_SEND, BusEventType.SEND]
    assert types[-1] == BusEventType.RESPONSE_COMPLETE


@pytest.mark.asyncio
async def test_send_links_request_id(settings):
    backend = ScriptedBackend([final_text_chunk("r1", "1", "ok")])
    chat = ChatInstance(backend=backend, settings=settings)
    request = MessageRequest.model_validate({"id": "req-42", "input": {"text": "hi"}})

    await chat.send(request)

    assert chat.get_message_by_id("r1").request_id == "req-42"


@pytest.mark.asyncio
async def test_send_with_message_response_backend(settings):
    backend = ScriptedBackend([text_message("m1", "whole answer")])
    chat = ChatInstance(backend=backend, settings=settings)

    response_id = await chat.send("hi")

    assert response_id == "m1"
    assert chat.get_entry("m1").state == ResponseState.COMPLETE


@pytest.mark.asyncio
async def test_send_without_final_completes_stream(settings):
    backend = ScriptedBackend([partial_text_chunk("r1", "1", "only part")])
    chat = ChatInstance(backend=backend, settings=settings)

    await chat.send("hi")

    entry = chat.get_entry("r1")
    assert entry.state == ResponseState.COMPLETE
    assert entry.message.output.generic[0].text == "only part"


@pytest.mark.asyncio
async def test_send_skips_malformed_backend_chunks(settings):
    backend = ScriptedBackend([
        partial_text_chunk("r1", "1", "Hel"),
        {"partial_item": {"text": "?"}, "streaming_metadata": {"response_id": "r1"}},
        partial_text_chunk("r1", "1", "lo"),
        final_text_chunk("r1", "1", "Hello"),
    ])
    chat = ChatInstance(backend=backend, settings=settings)

    await chat.send("hi")

    assert chat.get_message_by_id("r1").output.generic[0].text == "Hello"


class FailingBackend(ChatBackend):
    """Yields some chunks, then raises."""

    name = "failing"

    def __init__(self, chunks):
        self.chunks = chunks

    async def handle_request(self, request, controller, cancel_event=None):
        for chunk in self.chunks:
            yield chunk
        raise RuntimeError("connection reset")


@pytest.mark.asyncio
async def test_backend_failure_mid_stream_appends_inline_error(settings):
    chat = ChatInstance(backend=FailingBackend([partial_text_chunk("r1", "1", "Hel")]), settings=settings)

    response_id = await chat.send("hi")

    assert response_id == "r1"
    generic = chat.get_message_by_id("r1").output.generic
    assert [item.response_type for item in generic] == ["text", "inline_error"]
    assert generic[1].text == "Something went wrong"
    assert chat.get_entry("r1").state == ResponseState.COMPLETE


@pytest.mark.asyncio
async def test_backend_failure_before_any_chunk(settings):
    chat = ChatInstance(backend=FailingBackend([]), settings=settings)

    response_id = await chat.send(MessageRequest.model_validate({"id": "req-1", "input": {"text": "hi"}}))

    message = chat.get_message_by_id(response_id)
    assert message.output.generic[0].response_type == "inline_error"
    assert message.request_id == "req-1"


@pytest.mark.asyncio
async def test_backend_error_dict_is_failure(settings):
    backend = ScriptedBackend([{"type": "error", "code": "rate_limited", "message": "slow down"}])
    chat = ChatInstance(backend=backend, settings=settings)

    response_id = await chat.send("hi")

    assert chat.get_message_by_id(response_id).output.generic[0].text == "Something went wrong"


@pytest.mark.asyncio
async def test_send_without_backend_returns_none(chat):
    assert await chat.send("hi") is None


class GatedBackend(ChatBackend):
    """Streams one chunk, then waits on a gate before sending the rest."""

    name = "gated"

    def __init__(self, response_id):
        self.response_id = response_id
        self.gate = asyncio.Event()
        self.started = asyncio.Event()
        self.saw_cancel = False

    async def handle_request(self, request, controller, cancel_event=None):
        yield partial_text_chunk(self.response_id, "1", "Hel")
        self.started.set()
        await self.gate.wait()
        self.saw_cancel = cancel_event.is_set()
        yield partial_text_chunk(self.response_id, "1", "lo")
        yield final_text_chunk(self.response_id, "1", "Hello")


@pytest.mark.asyncio
async def test_stop_during_send(settings):
    backend = GatedBackend("r1")
    chat = ChatInstance(backend=backend, settings=settings)

    task = asyncio.create_task(chat.send("hi"))
    await backend.started.wait()
    assert chat.is_stop_available() is True

    assert chat.stop_streaming() is True
    backend.gate.set()
    response_id = await task

    assert response_id == "r1"
    assert backend.saw_cancel is True
    entry = chat.get_entry("r1")
    assert entry.state == ResponseState.CANCELLED
    assert entry.message.output.generic[0].text == "Hel"


@pytest.mark.asyncio
async def test_new_send_orphans_streaming_response(settings):
    first = GatedBackend("r1")
    chat = ChatInstance(backend=first, settings=settings)

    task = asyncio.create_task(chat.send("first"))
    await first.started.wait()

    chat.backend = ScriptedBackend([final_text_chunk("r2", "1", "second answer")])
    await chat.send("second")

    assert chat.get_entry("r1").state == ResponseState.CANCELLED
    assert chat.get_entry("r2").state == ResponseState.COMPLETE

    first.gate.set()
    await task
    assert chat.get_message_by_id("r1").output.generic[0].text == "Hel"
    assert [m.id for m in chat.get_all_messages()] == ["r1", "r2"]


@pytest.mark.asyncio
async def test_backend_can_push_through_controller(settings):
    class PushingBackend(ChatBackend):
        async def handle_request(self, request, controller, cancel_event=None):
            controller.ingest(partial_text_chunk("r1", "1", "pushed"))
            controller.ingest(final_text_chunk("r1", "1", "pushed"))
            return
            yield

    chat = ChatInstance(backend=PushingBackend(), settings=settings)

    await chat.send("hi")

    assert chat.get_message_by_id("r1").output.generic[0].text == "pushed"
    assert chat.get_entry("r1").state == ResponseState.COMPLETE


class SlowStartBackend(ChatBackend):
    """Waits on a gate before producing anything."""

    name = "slow-start"

    def __init__(self, response_id, fail=False):
        self.response_id = response_id
        self.fail = fail
        self.gate = asyncio.Event()
        self.waiting = asyncio.Event()

    async def handle_request(self, request, controller, cancel_event=None):
        self.waiting.set()
        await self.gate.wait()
        if self.fail:
            raise RuntimeError("connection reset")
        yield partial_text_chunk(self.response_id, "1", "stale")
        yield final_text_chunk(self.response_id, "1", "stale answer")


@pytest.mark.asyncio
async def test_new_send_abandons_turn_without_chunks(settings):
    """An older turn that starts streaming late never cuts the newer answer."""
    first = SlowStartBackend("old")
    chat = ChatInstance(backend=first, settings=settings)

    task = asyncio.create_task(chat.send("first"))
    await first.waiting.wait()

    chat.backend = ScriptedBackend([
        partial_text_chunk("new", "1", "new"),
        final_text_chunk("new", "1", "new answer"),
    ])
    assert await chat.send("second") == "new"

    first.gate.set()
    assert await task is None

    entry = chat.get_entry("new")
    assert entry.state == ResponseState.COMPLETE
    assert entry.message.output.generic[0].text == "new answer"
    assert chat.get_entry("old") is None
    assert [m.id for m in chat.get_all_messages()] == ["new"]


@pytest.mark.asyncio
async def test_abandoned_turn_failure_adds_no_error(settings):
    first = SlowStartBackend("old", fail=True)
    chat = ChatInstance(backend=first, settings=settings)

    task = asyncio.create_task(chat.send("first"))
    await first.waiting.wait()

    chat.backend = ScriptedBackend([final_text_chunk("new", "1", "new answer")])
    await chat.send("second")

    first.gate.set()
    assert await task is None
    assert [m.id for m in chat.get_all_messages()] == ["new"]


@pytest.mark.asyncio
async def test_pushed_chunks_sealed_when_backend_fails(settings):
    class PushThenFail(ChatBackend):
        async def handle_request(self, request, controller, cancel_event=None):
            controller.ingest(partial_text_chunk("p1", "1", "pushed"))
            raise RuntimeError("connection reset")
            yield

    chat = ChatInstance(backend=PushThenFail(), settings=settings)

    response_id = await chat.send("hi")

    assert response_id == "p1"
    entry = chat.get_entry("p1")
    assert entry.state == ResponseState.COMPLETE
    generic = entry.message.output.generic
    assert [item.response_type for item in generic] == ["text", "inline_error"]
    assert generic[0].text == "pushed"
    assert [m.id for m in chat.get_all_messages()] == ["p1"]


@pytest.mark.asyncio
async def test_pushed_chunks_completed_without_final(settings):
    class PushOnly(ChatBackend):
        async def handle_request(self, request, controller, cancel_event=None):
            controller.ingest(partial_text_chunk("p1", "1", "only part"))
            return
            yield

    chat = ChatInstance(backend=PushOnly(), settings=settings)

    assert await chat.send("hi") == "p1"
    assert chat.get_entry("p1").state == ResponseState.COMPLETE
    assert chat.get_response_state("p1") == ResponseState.COMPLETE


@pytest.mark.asyncio
async def test_pushed_error_fails_the_turn(settings):
    class PushError(ChatBackend):
        async def handle_request(self, request, controller, cancel_event=None):
            controller.ingest(partial_text_chunk("p1", "1", "Hel"))
            controller.ingest({"type": "error", "code": "overloaded", "message": "busy"})
            return
            yield

    chat = ChatInstance(backend=PushError(), settings=settings)

    assert await chat.send("hi") == "p1"
    generic = chat.get_message_by_id("p1").output.generic
    assert generic[-1].response_type == "inline_error"
    assert generic[-1].text == "Something went wrong"
