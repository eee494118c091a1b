"""In-memory message ledger with pending slots for streaming responses."""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import AlreadyFlushedError
from .models.messages import MessageResponse
from .models.session import LocalMessageItem, ResponseState

logger = logging.getLogger(__name__)


class StoredResponse(BaseModel):
    """One flushed entry. Frozen: entries never change after flush."""

    model_config = ConfigDict(frozen=True)

    message: MessageResponse
    state: ResponseState = Field(..., description="COMPLETE or CANCELLED")
    stored_at: datetime = Field(default_factory=datetime.now)

    @property
    def message_id(self) -> str:
        return self.message.id or ""


class MessageStore:
    """
    Append-only sequence of finalized responses plus pending slots.

    Features:
    - Insertion-ordered ledger keyed by message id
    - One pending slot per in-flight response exposing live items
    - Atomic flush: the pending slot is replaced by the entry in one step
    - Reads always return copies
    """

    def __init__(self) -> None:
        self._entries: Dict[str, StoredResponse] = {}
        self._pending: Dict[str, List[LocalMessageItem]] = {}

    def open_pending(self, response_id: str) -> None:
        """Create an empty pending slot for a response."""
        if response_id in self._entries:
            raise AlreadyFlushedError(response_id)
        self._pending.setdefault(response_id, [])

    def update_pending(self, response_id: str, items: Iterable[LocalMessageItem]) -> None:
        """Replace the live items of a pending response."""
        if response_id in self._entries:
            raise AlreadyFlushedError(response_id)
        self._pending[response_id] = list(items)

    def flush(
        self, response_id: str, message: MessageResponse, state: ResponseState
    ) -> StoredResponse:
        """
        Commit a sealed response.

        Args:
            response_id: Key for the entry (and the message id)
            message: Final content
            state: COMPLETE or CANCELLED

        Returns:
            The stored entry

        Raises:
            AlreadyFlushedError: If an entry with this id already exists
        """
        if response_id in self._entries:
            raise AlreadyFlushedError(response_id)
        if not state.is_sealed:
            raise ValueError(f"Cannot flush response {response_id} in state {state.value}")

        entry = StoredResponse(
            message=message.model_copy(update={"id": response_id}, deep=True),
            state=state,
        )
        self._entries[response_id] = entry
        self._pending.pop(response_id, None)
        logger.debug(f"Flushed response {response_id} ({state.value}, {len(message.output.generic)} items)")
        return entry

    def get(self, message_id: str) -> Optional[MessageResponse]:
        """Get a flushed message by id (copy)."""
        entry = self._entries.get(message_id)
        if entry is None:
            return None
        return entry.message.model_copy(deep=True)

    def get_entry(self, message_id: str) -> Optional[StoredResponse]:
        """Get a flushed entry with its terminal state (copy)."""
        entry = self._entries.get(message_id)
        if entry is None:
            return None
        return entry.model_copy(deep=True)

    def all_messages(self) -> List[MessageResponse]:
        """All flushed messages in flush order (copies)."""
        return [entry.message.model_copy(deep=True) for entry in self._entries.values()]

    def all_entries(self) -> List[StoredResponse]:
        return [entry.model_copy(deep=True) for entry in self._entries.values()]

    def pending_items(self, response_id: str) -> List[LocalMessageItem]:
        """Live items of an in-flight response (copies); empty if none."""
        return [item.model_copy(deep=True) for item in self._pending.get(response_id, [])]

    def pending_ids(self) -> List[str]:
        return list(self._pending)

    def contains(self, message_id: str) -> bool:
        return message_id in self._entries

    def load(self, entries: Iterable[StoredResponse]) -> int:
        """Append previously persisted entries; ids already present are skipped."""
        loaded = 0
        for entry in entries:
            if entry.message_id in self._entries:
                logger.warning(f"Skipping history entry {entry.message_id}: already stored")
                continue
            self._entries[entry.message_id] = entry.model_copy(deep=True)
            loaded += 1
        return loaded

    def clear(self) -> None:
        """Drop every entry and pending slot (conversation restart)."""
        self._entries.clear()
        self._pending.clear()
        logger.info("Message store cleared")

    def __len__(self) -> int:
        return len(self._entries)
