"""Stream lifecycle management and cancellation support."""

import asyncio
import logging
from typing import Dict

from .types import SessionSealer

logger = logging.getLogger(__name__)


class CancellationController:
    """
    Seals responses early on user-initiated stop.

    Each streaming response may have a cancellation event registered by
    the turn reading its backend; stopping sets it so the backend loop
    ends between chunks.

    Sealing goes through the narrow SessionSealer capability, so a stop
    takes effect before the next chunk is merged even if the backend
    has one more chunk in flight.
    """

    def __init__(self, sealer: SessionSealer):
        self._sealer = sealer
        self._streams: Dict[str, asyncio.Event] = {}

    def attach(self, stream_id: str, cancel_event: asyncio.Event) -> None:
        """Register a turn's event under the response id once it is known."""
        self._streams[stream_id] = cancel_event
        logger.debug(f"Attached cancel event for stream {stream_id}")

    def stop(self, stream_id: str) -> bool:
        """
        Stop a response, keeping the content streamed so far.

        Idempotent: stopping a sealed or unknown response is a no-op.

        Returns:
            True if the response was streaming and is now cancelled
        """
        cancel_event = self._streams.get(stream_id)
        if cancel_event is not None:
            cancel_event.set()

        if not self._sealer.is_active(stream_id):
            logger.debug(f"Stop ignored for {stream_id}: not streaming")
            return False

        cancelled = self._sealer.cancel(stream_id)
        if cancelled:
            logger.info(f"Cancelled stream {stream_id}")
        return cancelled

    def cleanup_stream(self, stream_id: str) -> None:
        """Remove stream state after completion."""
        if self._streams.pop(stream_id, None) is not None:
            logger.debug(f"Cleaned up stream {stream_id}")
