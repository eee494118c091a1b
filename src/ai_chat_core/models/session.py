"""Response session state models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from .messages import GenericItem


class ResponseState(str, Enum):
    """Lifecycle state of one response."""

    CREATED = "created"
    STREAMING = "streaming"
    COMPLETE = "complete"
    CANCELLED = "cancelled"

    @property
    def is_sealed(self) -> bool:
        return self in (ResponseState.COMPLETE, ResponseState.CANCELLED)


class ItemState(str, Enum):
    """Per-item UI state."""

    LOADING = "loading"
    COMPLETE = "complete"


class ItemUIState(BaseModel):
    """UI bookkeeping for one item."""

    id: str = Field(..., description="Item id within its response")
    state: ItemState = Field(ItemState.LOADING, description="Loading or complete")
    chunk_count: int = Field(0, description="Number of chunks merged into this item")


class LocalMessageItem(BaseModel):
    """A (possibly partial) item paired with its UI state."""

    item: GenericItem
    ui_state: ItemUIState


class ResponseSession(BaseModel):
    """Mutable-by-replacement accumulation context for one response."""

    response_id: str = Field(..., description="Response being assembled")
    items_by_id: Dict[str, LocalMessageItem] = Field(default_factory=dict)
    order: List[str] = Field(default_factory=list, description="Item ids in first-seen order")
    state: ResponseState = ResponseState.CREATED
    expected_items: Optional[int] = Field(
        None, description="Seal COMPLETE once this many items are complete"
    )
    request_id: Optional[str] = None
    message_options: Optional[Dict[str, Any]] = None
    cancellable: bool = False
    created_at: datetime = Field(default_factory=datetime.now)

    def local_items(self) -> List[LocalMessageItem]:
        """Items in rendering order."""
        return [self.items_by_id[item_id] for item_id in self.order]

    def completed_count(self) -> int:
        return sum(
            1 for item in self.items_by_id.values() if item.ui_state.state == ItemState.COMPLETE
        )
