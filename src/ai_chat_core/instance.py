"""Public chat instance API wiring the engine components together."""

import asyncio
import logging
import uuid
from contextlib import aclosing
from typing import Any, Callable, Dict, Iterable, List, Optional, Union, cast

from pydantic import ValidationError

from .backends.base import ChatBackend
from .config import Settings
from .event_bus import EventBus, EventTypeKey
from .exceptions import BackendFailureError, ChatCoreError, MalformedChunkError
from .message_store import MessageStore, StoredResponse
from .models.events import BusEvent, BusEventType
from .models.messages import (
    ChunkStreamingMetadata,
    MessageInput,
    MessageOutput,
    MessageRequest,
    MessageResponse,
    StreamChunk,
    create_inline_error_item,
    is_message_response,
    parse_chunk,
    parse_message,
)
from .models.session import LocalMessageItem, ResponseState
from .stream_controller import CancellationController
from .tracker import ResponseTracker
from .types import BackendErrorDict, ChunkInput, Listener
from .types import MessageInput as MessageInputType

logger = logging.getLogger(__name__)


class _Turn:
    """
    One send() reading its backend.

    The turn is the StreamController its backend receives, so pushed
    chunks are tied to the turn exactly like yielded ones. Once its
    cancel event is set (user stop or a newer send), nothing it delivers
    starts or changes a session.
    """

    def __init__(self, chat: "ChatInstance", request: MessageRequest):
        self.chat = chat
        self.request = request
        self.cancel_event = asyncio.Event()
        self.response_id: Optional[str] = None
        self.failure: Optional[BackendFailureError] = None

    def ingest(self, chunk: ChunkInput) -> bool:
        try:
            return self.chat._handle_backend_entry(chunk, self)
        except BackendFailureError as e:
            logger.error(f"Backend pushed an error for request {self.request.id}: {e.message}")
            self.failure = e
            return False
        except ChatCoreError as e:
            logger.warning(f"Dropping pushed chunk: {e.message} {e.detail}".strip())
            return False
        except Exception:
            logger.exception("Unexpected error ingesting pushed chunk")
            return False

    def stop(self, response_id: Optional[str] = None) -> bool:
        target = response_id or self.response_id
        if target is None:
            self.cancel_event.set()
            return False
        return self.chat.stop_streaming(target)


class ChatInstance:
    """
    Facade over the chunk assembly engine.

    Features:
    - send() drives a pluggable backend and feeds its chunks to the tracker
    - add_message() / add_message_chunk() for collaborators that push content
    - stop_streaming() keeps whatever already streamed
    - subscribe() / unsubscribe() / once() for lifecycle notifications
    - Read access to flushed and pending content

    No public method raises: faults are logged and reported as False/None.
    Each send() hands its backend a per-turn StreamController; the instance
    itself also satisfies the protocol (ingest/stop) for callers outside a turn.
    """

    def __init__(
        self,
        backend: Optional[ChatBackend] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or Settings()
        self.backend = backend
        self.store = MessageStore()
        self.bus = EventBus()
        self.tracker = ResponseTracker(
            self.store,
            self.bus,
            synthetic_id_prefix=self.settings.SYNTHETIC_ITEM_ID_PREFIX,
        )
        self.cancellation = CancellationController(self.tracker)
        self._turns: List[_Turn] = []

        logger.info(
            f"Initialized ChatInstance with backend: {backend.name if backend else 'none'}"
        )

    # Inbound

    async def send(self, request: Union[MessageRequest, Dict[str, Any], str]) -> Optional[str]:
        """
        Send a user turn to the backend and assemble its response.

        A response still streaming from an earlier turn is cancelled first,
        and an earlier turn whose backend has not produced anything yet is
        abandoned: whatever it delivers later is ignored.

        Args:
            request: MessageRequest, its wire dict, or plain text

        Returns:
            Id of the response the turn produced, or None if nothing was sent
        """
        try:
            message_request = self._coerce_request(request)
        except ValidationError as e:
            logger.warning(f"Ignoring invalid request: {e}")
            return None

        if self.backend is None:
            logger.error("Cannot send: no backend configured")
            return None

        for pending in self._turns:
            logger.info(f"New turn {message_request.id} supersedes request {pending.request.id}")
            if pending.response_id is not None:
                self.cancellation.stop(pending.response_id)
            # Not streaming yet: its first chunk must not start a session.
            pending.cancel_event.set()
        previous = self.tracker.active_response_id
        if previous is not None:
            logger.info(f"New turn {message_request.id} orphans response {previous}")
            self.cancellation.stop(previous)

        request_data = {"request": message_request.to_wire()}
        self.bus.publish(BusEvent(type=BusEventType.PRE_SEND, data=request_data))

        turn = _Turn(self, message_request)
        self._turns.append(turn)
        try:
            self.bus.publish(BusEvent(type=BusEventType.SEND, data=request_data))
            stream = self.backend.handle_request(message_request, turn, turn.cancel_event)
            async with aclosing(stream):
                async for entry in stream:
                    self._handle_backend_entry(entry, turn)
                    if turn.failure is not None:
                        raise turn.failure
                    if turn.cancel_event.is_set():
                        logger.info(
                            f"Stopped reading backend stream for request {message_request.id}"
                        )
                        break
            if turn.failure is not None:
                raise turn.failure
        except Exception as e:
            logger.error(f"Backend failed for request {message_request.id}: {e}", exc_info=True)
            self._handle_backend_failure(turn)
        else:
            response_id = turn.response_id
            if response_id is not None and self.tracker.is_active(response_id):
                logger.warning(f"Backend ended without final response for {response_id}")
                self.tracker.complete(response_id)
        finally:
            self._turns.remove(turn)
            if turn.response_id is not None:
                self.cancellation.cleanup_stream(turn.response_id)

        return turn.response_id

    def add_message(self, message: MessageInputType) -> bool:
        """
        Insert a complete response; same result as a single final_response chunk.

        Returns:
            True if the message was stored
        """
        try:
            return self._add_response(parse_message(message))
        except ChatCoreError as e:
            logger.warning(f"Dropping message: {e.message} {e.detail}".strip())
            return False
        except Exception:
            logger.exception("Unexpected error adding message")
            return False

    def add_message_chunk(self, chunk: ChunkInput) -> bool:
        """
        Insert one stream chunk.

        Returns:
            True if the chunk was applied, False if dropped (malformed or late)
        """
        try:
            return self.tracker.ingest(parse_chunk(chunk))
        except MalformedChunkError as e:
            logger.warning(f"Dropping malformed chunk: {e.message} {e.detail}".strip())
            return False
        except ChatCoreError as e:
            logger.warning(f"Dropping chunk: {e.message}")
            return False
        except Exception:
            logger.exception("Unexpected error adding chunk")
            return False

    def stop_streaming(self, response_id: Optional[str] = None) -> bool:
        """
        Stop a streaming response (the active one by default).

        Returns:
            True if a response was cancelled by this call
        """
        target = response_id or self.tracker.active_response_id
        if target is None:
            logger.debug("stop_streaming: nothing is streaming")
            return False
        try:
            return self.cancellation.stop(target)
        except Exception:
            logger.exception(f"Unexpected error stopping {target}")
            return False

    def insert_history(self, messages: Iterable[Union[StoredResponse, MessageInputType]]) -> int:
        """
        Load earlier conversation content.

        StoredResponse entries keep their terminal state; plain messages are
        added as complete responses.

        Returns:
            Number of entries inserted
        """
        inserted = 0
        for message in messages:
            if isinstance(message, StoredResponse):
                inserted += self.store.load([message])
            elif self.add_message(message):
                inserted += 1
        logger.info(f"Inserted {inserted} history entries")
        return inserted

    def restart_conversation(self) -> None:
        """Cancel everything streaming and clear the timeline."""
        for turn in self._turns:
            turn.cancel_event.set()
        cancelled = self.tracker.reset()
        for response_id in cancelled:
            self.cancellation.cleanup_stream(response_id)
        self.store.clear()
        self.bus.publish(
            BusEvent(type=BusEventType.RESTART_CONVERSATION, data={"cancelled": cancelled})
        )

    async def shutdown(self) -> None:
        if self.backend is not None:
            await self.backend.shutdown()

    # StreamController protocol

    def ingest(self, chunk: ChunkInput) -> bool:
        return self.add_message_chunk(chunk)

    def stop(self, response_id: Optional[str] = None) -> bool:
        return self.stop_streaming(response_id)

    # Outbound

    def subscribe(self, event_type: EventTypeKey, listener: Listener) -> Callable[[], None]:
        """Add a listener; returns a callable that removes it."""
        return self.bus.subscribe(event_type, listener)

    def unsubscribe(self, event_type: EventTypeKey, listener: Optional[Listener] = None) -> None:
        self.bus.unsubscribe(event_type, listener)

    def once(self, event_type: EventTypeKey, listener: Listener) -> Callable[[], None]:
        return self.bus.once(event_type, listener)

    def get_message_by_id(self, message_id: str) -> Optional[MessageResponse]:
        return self.store.get(message_id)

    def get_all_messages(self) -> List[MessageResponse]:
        return self.store.all_messages()

    def get_entry(self, message_id: str) -> Optional[StoredResponse]:
        return self.store.get_entry(message_id)

    def get_pending_items(self, response_id: str) -> List[LocalMessageItem]:
        """Live items of a response while it streams."""
        return self.store.pending_items(response_id)

    def get_response_state(self, response_id: str) -> Optional[ResponseState]:
        return self.tracker.state_of(response_id)

    def is_stop_available(self, response_id: Optional[str] = None) -> bool:
        """Whether a stop control should be offered for the response."""
        target = response_id or self.tracker.active_response_id
        if target is None:
            return False
        session = self.tracker.get_session(target)
        return session is not None and session.cancellable

    # Internals

    def _coerce_request(self, request: Union[MessageRequest, Dict[str, Any], str]) -> MessageRequest:
        if isinstance(request, MessageRequest):
            return request
        if isinstance(request, str):
            return MessageRequest(input=MessageInput(text=request))
        return MessageRequest.model_validate(request)

    def _add_response(self, message: MessageResponse, request_id: Optional[str] = None) -> bool:
        update: Dict[str, Any] = {}
        if not message.id:
            update["id"] = str(uuid.uuid4())
        if request_id is not None and message.request_id is None:
            update["request_id"] = request_id
        if update:
            message = message.model_copy(update=update)

        chunk = StreamChunk(
            final_response=message,
            streaming_metadata=ChunkStreamingMetadata(response_id=message.id),
        )
        return self.tracker.ingest(chunk)

    def _handle_backend_entry(self, entry: Any, turn: _Turn) -> bool:
        """Apply one yielded or pushed backend entry to the turn's response."""
        if turn.cancel_event.is_set():
            logger.debug(f"Ignoring backend entry for stopped request {turn.request.id}")
            return False

        if isinstance(entry, dict) and entry.get("type") == "error":
            error = cast(BackendErrorDict, entry)
            raise BackendFailureError(
                error.get("message", "Backend reported an error"),
                detail=error.get("detail") or error.get("code", ""),
            )

        try:
            if is_message_response(entry):
                message = parse_message(entry)
                if not message.id:
                    message = message.model_copy(
                        update={"id": turn.response_id or str(uuid.uuid4())}
                    )
                if turn.response_id is None:
                    self._begin(message.id, turn)
                return self._add_response(message, request_id=turn.request.id)

            chunk = parse_chunk(entry)
            if turn.response_id is None and chunk.response_id:
                self._begin(chunk.response_id, turn)
            return self.tracker.ingest(chunk)
        except MalformedChunkError as e:
            logger.warning(f"Dropping malformed backend chunk: {e.message} {e.detail}".strip())
            return False

    def _begin(self, response_id: str, turn: _Turn) -> None:
        turn.response_id = response_id
        self.tracker.begin_response(response_id, request_id=turn.request.id)
        self.cancellation.attach(response_id, turn.cancel_event)

    def _handle_backend_failure(self, turn: _Turn) -> None:
        response_id = turn.response_id
        if response_id is None and turn.cancel_event.is_set():
            logger.info(f"Dropping failure of abandoned request {turn.request.id}")
            return

        error_item = create_inline_error_item(self.settings.ERROR_MESSAGE_TEXT)

        if response_id is not None and self.tracker.is_active(response_id):
            self.tracker.complete(response_id, extra_items=[error_item])
            return

        if response_id is not None and self.tracker.state_of(response_id) is not None:
            # Already sealed (stopped by the user); its content stays as is.
            return

        message = MessageResponse(
            id=str(uuid.uuid4()),
            output=MessageOutput(generic=[error_item]),
            request_id=turn.request.id,
        )
        self._add_response(message)
        turn.response_id = message.id
