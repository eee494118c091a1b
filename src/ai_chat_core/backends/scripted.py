"""Scripted backend - replays prepared chunk sequences."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Union

from .base import ChatBackend
from ..exceptions import MalformedChunkError
from ..models.messages import MessageRequest
from ..types import StreamController

logger = logging.getLogger(__name__)

Script = Union[List[Dict[str, Any]], Callable[[MessageRequest], List[Dict[str, Any]]]]


class ScriptedBackend(ChatBackend):
    """
    Backend that yields a fixed list of wire dicts.

    The script is either a list reused for every request or a callable
    building the list from the request. Cancellation is checked between
    chunks, like a real transport would.
    """

    name = "scripted"

    def __init__(self, script: Script, delay_seconds: float = 0.0):
        self.script = script
        self.delay_seconds = delay_seconds

    @classmethod
    def from_jsonl(cls, path: Union[str, Path], delay_seconds: float = 0.0) -> "ScriptedBackend":
        """
        Load a script from a JSON-lines file (one chunk or response per line).

        Raises:
            MalformedChunkError: If a line is not a JSON object
        """
        entries: List[Dict[str, Any]] = []
        with open(path) as f:
            for line_no, line in enumerate(f, start=1):
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError as e:
                    raise MalformedChunkError(f"Invalid JSON on line {line_no}", detail=str(e)) from e
                if not isinstance(entry, dict):
                    raise MalformedChunkError(f"Line {line_no} is not a JSON object")
                entries.append(entry)

        logger.info(f"Loaded {len(entries)} scripted entries from {path}")
        return cls(entries, delay_seconds=delay_seconds)

    async def handle_request(
        self,
        request: MessageRequest,
        controller: StreamController,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncGenerator[Dict[str, Any], None]:
        entries = self.script(request) if callable(self.script) else self.script

        for entry in entries:
            if cancel_event and cancel_event.is_set():
                logger.info(f"Scripted stream for request {request.id} cancelled")
                return
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            yield entry
