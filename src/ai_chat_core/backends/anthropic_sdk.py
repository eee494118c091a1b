"""Anthropic SDK backend - streams Claude responses as message chunks."""

import asyncio
import logging
import uuid
from typing import Any, AsyncGenerator, Dict, Optional
from anthropic import AsyncAnthropic

from .base import ChatBackend, final_text_chunk, partial_text_chunk
from ..exceptions import BackendAuthError
from ..models.messages import MessageRequest
from ..types import StreamController

logger = logging.getLogger(__name__)

TEXT_ITEM_ID = "1"


def is_debug() -> bool:
    """Check if debug logging is enabled."""
    return logger.isEnabledFor(logging.DEBUG)


class AnthropicSDKBackend(ChatBackend):
    """
    Backend using Anthropic Python SDK for direct API calls.

    Every text delta becomes a partial_item chunk for a single text item;
    the accumulated text is sent once more as the final_response.

    Requires: ANTHROPIC_API_KEY from console.anthropic.com
    """

    name = "anthropic-sdk"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-20250514",
        max_tokens: int = 4096,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self._client: Optional[AsyncAnthropic] = None
        self._lock = asyncio.Lock()

    async def get_client(self) -> AsyncAnthropic:
        """Get or create Anthropic client instance (lazy init)."""
        async with self._lock:
            if self._client is None:
                self._client = await self._create_client()
            return self._client

    async def _create_client(self) -> AsyncAnthropic:
        """Create Anthropic client asynchronously."""
        logger.info("Initializing Anthropic SDK client")

        try:
            client = AsyncAnthropic(api_key=self.api_key)
            logger.info("Anthropic SDK client initialized successfully")
            return client
        except Exception as e:
            logger.error(f"Failed to initialize Anthropic client: {e}")
            raise BackendAuthError(f"Failed to initialize: {e}")

    async def handle_request(
        self,
        request: MessageRequest,
        controller: StreamController,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncGenerator[Dict[str, Any], None]:
        """
        Stream response from Claude using Anthropic SDK.

        Args:
            request: The user turn
            controller: Unused; chunks are yielded
            cancel_event: Optional event to signal cancellation

        Yields:
            dict: partial_item chunks, then one final_response chunk
        """
        response_id = str(uuid.uuid4())
        client = await self.get_client()
        prompt = request.input.text

        logger.debug(f"Sending prompt to Claude (length: {len(prompt)} chars)")

        if is_debug():
            logger.debug("=" * 80)
            logger.debug("ANTHROPIC SDK INPUT - USER PROMPT:")
            logger.debug("-" * 80)
            logger.debug(prompt)
            logger.debug("=" * 80)

        pieces = []
        async with client.messages.stream(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=[{"role": "user", "content": prompt}],
        ) as stream:
            async for text in stream.text_stream:
                if cancel_event and cancel_event.is_set():
                    logger.info(f"Anthropic stream {response_id} cancelled by user")
                    return
                if not text:
                    continue

                if is_debug():
                    logger.debug(f"ANTHROPIC SDK OUTPUT CHUNK: {text[:100]}{'...' if len(text) > 100 else ''}")

                pieces.append(text)
                yield partial_text_chunk(response_id, TEXT_ITEM_ID, text)

        yield final_text_chunk(response_id, TEXT_ITEM_ID, "".join(pieces), request_id=request.id)

    async def shutdown(self) -> None:
        """Cleanup on shutdown."""
        if self._client:
            logger.info("Shutting down Anthropic SDK client...")
            await self._client.close()
            self._client = None
            logger.info("Anthropic SDK client shut down successfully")
