"""Abstract base class for message backends."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, Dict, Optional

from ..models.messages import MessageRequest
from ..types import StreamController


class ChatBackend(ABC):
    """
    Abstract interface for whatever produces assistant responses.

    Implementations can use different underlying systems:
    - Scripted chunk sequences (demos, replays, tests)
    - Anthropic SDK (AI-generated responses)
    - Human agents or any custom transport

    A backend yields wire dicts: zero or more stream chunks terminated by
    exactly one final_response chunk, or a single message response. A
    transport that delivers chunks from callbacks may push them through
    ``controller.ingest`` instead of yielding them.
    """

    name = "backend"

    @abstractmethod
    async def handle_request(
        self,
        request: MessageRequest,
        controller: StreamController,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncGenerator[Dict[str, Any], None]:
        """
        Stream the response to one request.

        Args:
            request: The user turn
            controller: Capability to push chunks or stop the stream
            cancel_event: Set when the user stops the response

        Yields:
            dict: Stream chunks, a message response, or an error dict
        """
        pass

    async def shutdown(self) -> None:
        """Cleanup resources on shutdown."""
        pass


def partial_text_chunk(
    response_id: str, item_id: str, text: str, cancellable: bool = True
) -> Dict[str, Any]:
    """Wire dict for one text fragment of a streaming item."""
    return {
        "partial_item": {
            "response_type": "text",
            "text": text,
            "streaming_metadata": {"id": item_id, "cancellable": cancellable},
        },
        "streaming_metadata": {"response_id": response_id},
    }


def final_text_chunk(
    response_id: str, item_id: str, text: str, request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Wire dict for the final response holding a single text item."""
    final_response: Dict[str, Any] = {
        "id": response_id,
        "output": {
            "generic": [
                {
                    "response_type": "text",
                    "text": text,
                    "streaming_metadata": {"id": item_id},
                }
            ]
        },
    }
    if request_id is not None:
        final_response["request_id"] = request_id
    return {
        "final_response": final_response,
        "streaming_metadata": {"response_id": response_id},
    }
