"""Common type definitions for AI Chat Core.

This module provides TypedDict definitions for the wire shapes and the
narrow Protocol interfaces handed to collaborators, so that nothing has
to hold a reference to the whole ChatInstance.
"""

from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    TypedDict,
    Union,
)

if TYPE_CHECKING:
    from .models.events import BusEvent
    from .models.messages import MessageResponse, StreamChunk


class ItemStreamingMetadataDict(TypedDict, total=False):
    """Per-item streaming metadata."""
    id: str
    cancellable: bool


class ItemDeltaDict(TypedDict, total=False):
    """Partial item; type-specific fields pass through."""
    response_type: str
    text: str
    streaming_metadata: ItemStreamingMetadataDict


class MessageOutputDict(TypedDict, total=False):
    """Output section of a response."""
    generic: List[Dict[str, Any]]


class MessageResponseDict(TypedDict, total=False):
    """Full message response."""
    id: str
    output: MessageOutputDict
    request_id: str
    message_options: Dict[str, Any]
    history: Dict[str, Any]


class ChunkStreamingMetadataDict(TypedDict, total=False):
    """Chunk-level streaming metadata."""
    response_id: str


class StreamChunkDict(TypedDict, total=False):
    """One streamed chunk."""
    partial_item: ItemDeltaDict
    complete_item: Dict[str, Any]
    final_response: MessageResponseDict
    partial_response: Dict[str, Any]
    streaming_metadata: ChunkStreamingMetadataDict


class BackendErrorDict(TypedDict, total=False):
    """Error yielded by a backend instead of raising."""
    type: str
    code: str
    message: str
    detail: Optional[str]


ChunkInput = Union["StreamChunk", StreamChunkDict, Dict[str, Any]]
MessageInput = Union["MessageResponse", MessageResponseDict, Dict[str, Any]]

# Event bus listener
Listener = Callable[["BusEvent"], None]


class StreamController(Protocol):
    """Capability handed to backends: push chunks and stop streams, nothing else."""

    def ingest(self, chunk: ChunkInput) -> bool: ...

    def stop(self, response_id: Optional[str] = None) -> bool: ...


class SessionSealer(Protocol):
    """Capability handed to the cancellation controller."""

    def cancel(self, response_id: str) -> bool: ...

    def is_active(self, response_id: str) -> bool: ...
