"""Wire models for messages and stream chunks.

Every model allows extra keys so that response types and fields this
package does not know about pass through untouched. ``to_wire`` dumps
only the keys that were actually provided, which keeps the round trip
exact for backend interop.
"""

import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..exceptions import MalformedChunkError


class MessageResponseTypes(str, Enum):
    """Known values of ``response_type``. The field itself stays an open string."""

    TEXT = "text"
    AUDIO = "audio"
    VIDEO = "video"
    IMAGE = "image"
    IFRAME = "iframe"
    CARD = "card"
    CAROUSEL = "carousel"
    GRID = "grid"
    BUTTON = "button"
    OPTION = "option"
    TABLE = "table"
    DATE = "date"
    CONVERSATIONAL_SEARCH = "conversational_search"
    USER_DEFINED = "user_defined"
    INLINE_ERROR = "inline_error"


class ChunkKind(str, Enum):
    """Which payload a stream chunk carries."""

    PARTIAL = "partial_item"
    COMPLETE = "complete_item"
    FINAL = "final_response"


class WireModel(BaseModel):
    """Base for models that mirror the JSON wire format."""

    model_config = ConfigDict(extra="allow")

    def to_wire(self) -> Dict[str, Any]:
        """Dump back to the wire shape, keeping only keys that were provided."""
        return self.model_dump(mode="json", exclude_unset=True)


class ItemStreamingMetadata(WireModel):
    """Per-item streaming metadata."""

    id: Optional[str] = Field(None, description="Item id, unique within its response")
    cancellable: Optional[bool] = Field(
        None, description="Whether the user may stop the stream this item belongs to"
    )


class ItemDelta(WireModel):
    """Incremental update to one item (the payload of a partial chunk)."""

    response_type: Optional[str] = Field(None, description="Open response type tag")
    text: Optional[str] = Field(None, description="Text fragment for text-bearing items")
    streaming_metadata: Optional[ItemStreamingMetadata] = None

    @property
    def item_id(self) -> Optional[str]:
        if self.streaming_metadata is None:
            return None
        return self.streaming_metadata.id


class GenericItem(ItemDelta):
    """One content block of a response."""

    response_type: str = Field(..., description="Open response type tag")


class MessageOutput(WireModel):
    """Output section of a response."""

    generic: List[GenericItem] = Field(default_factory=list)


class MessageResponse(WireModel):
    """A fully resolved assistant turn."""

    id: Optional[str] = Field(None, description="Message id")
    output: MessageOutput = Field(default_factory=MessageOutput)
    request_id: Optional[str] = Field(None, description="Id of the request this answers")
    message_options: Optional[Dict[str, Any]] = None
    history: Optional[Dict[str, Any]] = None


class MessageInput(WireModel):
    """Input section of a request."""

    message_type: str = "text"
    text: str = ""


class MessageRequest(WireModel):
    """A user turn handed to a backend by ``send``."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    input: MessageInput = Field(default_factory=MessageInput)
    thread_id: Optional[str] = None


class ChunkStreamingMetadata(WireModel):
    """Chunk-level streaming metadata."""

    response_id: Optional[str] = Field(None, description="Response the chunk belongs to")


class PartialResponse(WireModel):
    """Response-level fields streamed alongside an item chunk."""

    message_options: Optional[Dict[str, Any]] = None


class StreamChunk(WireModel):
    """One unit of streamed delivery."""

    partial_item: Optional[ItemDelta] = None
    complete_item: Optional[GenericItem] = None
    final_response: Optional[MessageResponse] = None
    partial_response: Optional[PartialResponse] = None
    streaming_metadata: Optional[ChunkStreamingMetadata] = None

    @property
    def kind(self) -> Optional[ChunkKind]:
        if self.final_response is not None:
            return ChunkKind.FINAL
        if self.complete_item is not None:
            return ChunkKind.COMPLETE
        if self.partial_item is not None:
            return ChunkKind.PARTIAL
        return None

    @property
    def response_id(self) -> Optional[str]:
        if self.streaming_metadata is not None and self.streaming_metadata.response_id:
            return self.streaming_metadata.response_id
        # A final response may be addressed by its own id.
        if self.final_response is not None and self.final_response.id:
            return self.final_response.id
        return None

    @property
    def item(self) -> Optional[ItemDelta]:
        """The partial or complete item carried by this chunk."""
        if self.complete_item is not None:
            return self.complete_item
        return self.partial_item


def parse_chunk(data: Any) -> StreamChunk:
    """
    Validate a chunk from the wire.

    Raises:
        MalformedChunkError: If the payload is not a valid chunk shape
    """
    if isinstance(data, StreamChunk):
        return data
    try:
        return StreamChunk.model_validate(data)
    except ValidationError as e:
        raise MalformedChunkError("Invalid stream chunk", detail=str(e)) from e


def parse_message(data: Any) -> MessageResponse:
    """
    Validate a full message response from the wire.

    Raises:
        MalformedChunkError: If the payload is not a valid message shape
    """
    if isinstance(data, MessageResponse):
        return data
    try:
        return MessageResponse.model_validate(data)
    except ValidationError as e:
        raise MalformedChunkError("Invalid message response", detail=str(e)) from e


def is_message_response(data: Any) -> bool:
    """Tell a bare MessageResponse payload apart from a stream chunk."""
    if isinstance(data, MessageResponse):
        return True
    return isinstance(data, dict) and "output" in data and "streaming_metadata" not in data


def create_inline_error_item(text: str) -> GenericItem:
    """Build the inline error item shown when a backend fails."""
    return GenericItem(response_type=MessageResponseTypes.INLINE_ERROR.value, text=text)
