"""Response session tracking: creation, merging, sealing and flushing."""

import logging
from typing import Dict, List, Optional

from .event_bus import EventBus
from .exceptions import LateChunkError, MalformedChunkError
from .merger import DEFAULT_SYNTHETIC_PREFIX, MergeResult, build_response, merge_chunk
from .message_store import MessageStore, StoredResponse
from .models.events import BusEvent, BusEventType
from .models.messages import (
    ChunkKind,
    GenericItem,
    MessageResponse,
    MessageResponseTypes,
    StreamChunk,
)
from .models.session import ResponseSession, ResponseState

logger = logging.getLogger(__name__)


class ResponseTracker:
    """
    Owns the in-progress response sessions.

    Features:
    - Lazy session creation on the first chunk of a response
    - Single active (user-initiated) session; a new turn orphans the old one
    - Late-chunk law: chunks for sealed responses have no effect
    - Flush into the MessageStore before any terminal event is published
    """

    def __init__(
        self,
        store: MessageStore,
        bus: EventBus,
        synthetic_id_prefix: str = DEFAULT_SYNTHETIC_PREFIX,
    ):
        self._store = store
        self._bus = bus
        self._synthetic_id_prefix = synthetic_id_prefix
        self.sessions: Dict[str, ResponseSession] = {}
        self._sealed: Dict[str, ResponseState] = {}
        self._active_id: Optional[str] = None

    @property
    def active_response_id(self) -> Optional[str]:
        if self._active_id is not None and self.is_active(self._active_id):
            return self._active_id
        return None

    def begin_response(
        self,
        response_id: str,
        expected_items: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> Optional[ResponseSession]:
        """
        Register the session for a user-initiated turn and make it active.

        Any previously active session still streaming is orphaned: it is
        sealed CANCELLED with its content kept.

        Returns:
            The session, or None if the response is already sealed
        """
        previous = self.active_response_id
        if previous is not None and previous != response_id:
            logger.info(f"Orphaning response {previous}: new turn {response_id} started")
            self.cancel(previous)

        if self.state_of(response_id) in (ResponseState.COMPLETE, ResponseState.CANCELLED):
            logger.warning(f"Cannot begin response {response_id}: already sealed")
            return None

        session = self.sessions.get(response_id)
        if session is None:
            session = ResponseSession(
                response_id=response_id,
                expected_items=expected_items,
                request_id=request_id,
            )
            self._store.open_pending(response_id)
        else:
            update = {}
            if expected_items is not None:
                update["expected_items"] = expected_items
            if request_id is not None:
                update["request_id"] = request_id
            session = session.model_copy(update=update)

        self.sessions[response_id] = session
        self._active_id = response_id
        logger.info(f"Began response {response_id} (expected_items={expected_items})")
        return session

    def ingest(self, chunk: StreamChunk) -> bool:
        """
        Apply one chunk.

        Returns:
            True if the chunk changed state, False if it was dropped as late

        Raises:
            MalformedChunkError: If the chunk cannot be addressed or merged;
                the session is left untouched
        """
        response_id = chunk.response_id
        if not response_id:
            raise MalformedChunkError("Chunk has no streaming_metadata.response_id")

        sealed_state = self._sealed_state(response_id)
        if sealed_state is not None:
            logger.debug(f"Dropping late chunk for response {response_id} ({sealed_state.value})")
            return False

        session = self.sessions.get(response_id)
        is_new = session is None
        if session is None:
            session = ResponseSession(response_id=response_id)

        try:
            result = merge_chunk(session, chunk, self._synthetic_id_prefix)
        except LateChunkError as e:
            logger.debug(f"Dropping late chunk: {e.message}")
            return False

        if is_new:
            logger.info(f"Started streaming response {response_id}")
            if self.active_response_id is None and not result.session.state.is_sealed:
                self._active_id = response_id
        if result.delta.implicit_append:
            logger.info(
                f"complete_item for unseen item {result.delta.item_id} in {response_id}; appending"
            )

        self._apply(result, chunk)
        return True

    def cancel(self, response_id: str) -> bool:
        """
        Seal a session CANCELLED, flushing whatever accumulated.

        Returns:
            True if the session was streaming and is now cancelled
        """
        session = self.sessions.get(response_id)
        if session is None:
            return False

        sealed = session.model_copy(update={"state": ResponseState.CANCELLED})
        entry = self._flush(sealed)
        logger.info(f"Cancelled response {response_id} with {len(sealed.order)} items")
        self._publish(
            BusEventType.RESPONSE_CANCELLED,
            response_id,
            {"message": entry.message.to_wire(), "state": entry.state.value},
        )
        return True

    def complete(self, response_id: str, extra_items: Optional[List[GenericItem]] = None) -> bool:
        """
        Seal a session COMPLETE with its accumulated content.

        Used when a backend ends without a final response, or fails and
        ``extra_items`` carries the inline error.
        """
        session = self.sessions.get(response_id)
        if session is None:
            return False

        sealed = session.model_copy(update={"state": ResponseState.COMPLETE})
        entry = self._flush(sealed, extra_items=extra_items)
        logger.info(f"Completed response {response_id} without final response")
        self._publish(
            BusEventType.RESPONSE_COMPLETE,
            response_id,
            {"message": entry.message.to_wire(), "state": entry.state.value},
        )
        return True

    def cancel_all(self) -> List[str]:
        """Cancel every streaming session."""
        cancelled = [response_id for response_id in list(self.sessions) if self.cancel(response_id)]
        self._active_id = None
        return cancelled

    def reset(self) -> List[str]:
        """
        Cancel everything streaming and forget every sealed response id.

        After a reset an id used earlier in the conversation can start a
        new response.

        Returns:
            Ids of the responses cancelled by the reset
        """
        cancelled = self.cancel_all()
        self._sealed.clear()
        logger.info(f"Reset tracker ({len(cancelled)} responses cancelled)")
        return cancelled

    def is_active(self, response_id: str) -> bool:
        """Whether the response exists and is still accepting chunks."""
        return response_id in self.sessions

    def get_session(self, response_id: str) -> Optional[ResponseSession]:
        return self.sessions.get(response_id)

    def state_of(self, response_id: str) -> Optional[ResponseState]:
        session = self.sessions.get(response_id)
        if session is not None:
            return session.state
        return self._sealed_state(response_id)

    def _sealed_state(self, response_id: str) -> Optional[ResponseState]:
        state = self._sealed.get(response_id)
        if state is not None:
            return state
        entry = self._store.get_entry(response_id)
        if entry is not None:
            return entry.state
        return None

    def _apply(self, result: MergeResult, chunk: StreamChunk) -> None:
        session, delta = result
        response_id = session.response_id
        chunk_data = {
            "chunk": chunk.to_wire(),
            "delta": delta.model_dump(mode="json"),
            "state": session.state.value,
        }

        if not session.state.is_sealed:
            self.sessions[response_id] = session
            self._store.update_pending(response_id, session.local_items())
            self._publish(BusEventType.CHUNK_RECEIVED, response_id, chunk_data)

            item = chunk.item
            if item is not None and item.response_type == MessageResponseTypes.USER_DEFINED.value:
                self._publish(
                    BusEventType.CHUNK_USER_DEFINED_RESPONSE,
                    response_id,
                    {"item": item.to_wire(), "chunk": chunk.to_wire()},
                )
            return

        # Flush first so every listener already sees the stored entry.
        entry = self._flush(session, base=chunk.final_response)
        message_data = {"message": entry.message.to_wire(), "state": entry.state.value}
        self._publish(BusEventType.CHUNK_RECEIVED, response_id, chunk_data)
        if chunk.kind == ChunkKind.FINAL:
            self._publish(BusEventType.RECEIVE, response_id, message_data)
        self._publish(BusEventType.RESPONSE_COMPLETE, response_id, message_data)

    def _flush(
        self,
        session: ResponseSession,
        base: Optional[MessageResponse] = None,
        extra_items: Optional[List[GenericItem]] = None,
    ) -> StoredResponse:
        response_id = session.response_id
        message = build_response(session, base=base, extra_items=extra_items)
        entry = self._store.flush(response_id, message, session.state)

        self.sessions.pop(response_id, None)
        self._sealed[response_id] = session.state
        if self._active_id == response_id:
            self._active_id = None
        return entry

    def _publish(self, event_type: BusEventType, response_id: str, data: dict) -> None:
        self._bus.publish(BusEvent(type=event_type, response_id=response_id, data=data))
