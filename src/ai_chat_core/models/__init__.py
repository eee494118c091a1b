"""Data models for AI Chat Core."""

from .events import BusEvent, BusEventType
from .messages import (
    ChunkKind,
    GenericItem,
    ItemDelta,
    MessageRequest,
    MessageResponse,
    MessageResponseTypes,
    StreamChunk,
)
from .session import ItemState, LocalMessageItem, ResponseSession, ResponseState

__all__ = [
    "BusEvent",
    "BusEventType",
    "ChunkKind",
    "GenericItem",
    "ItemDelta",
    "MessageRequest",
    "MessageResponse",
    "MessageResponseTypes",
    "StreamChunk",
    "ItemState",
    "LocalMessageItem",
    "ResponseSession",
    "ResponseState",
]
