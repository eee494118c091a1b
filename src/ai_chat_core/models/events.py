"""Event bus event models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field


class BusEventType(str, Enum):
    """Event types published on the event bus."""

    CHUNK_RECEIVED = "chunk:received"
    RESPONSE_COMPLETE = "response:complete"
    RESPONSE_CANCELLED = "response:cancelled"
    PRE_SEND = "pre:send"
    SEND = "send"
    RECEIVE = "receive"
    CHUNK_USER_DEFINED_RESPONSE = "chunk:userDefinedResponse"
    RESTART_CONVERSATION = "restartConversation"
    ALL = "*"


class BusEvent(BaseModel):
    """One notification delivered to listeners."""

    type: BusEventType = Field(..., description="Event type")
    response_id: Optional[str] = Field(None, description="Response the event concerns")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
