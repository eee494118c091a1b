"""SQLite persistence for flushed responses."""

import aiosqlite
import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Union

from .exceptions import HistoryStoreError, MalformedChunkError
from .message_store import StoredResponse
from .models.events import BusEvent, BusEventType
from .models.messages import parse_message
from .models.session import ResponseState

logger = logging.getLogger(__name__)


class HistoryStore:
    """
    Lightweight SQLite store for finalized responses.

    Entries are written once and never updated, mirroring the
    in-memory MessageStore. Only COMPLETE and CANCELLED responses are
    persisted; pending content never reaches disk.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema (idempotent)."""
        async with self._lock:
            if self._initialized:
                return

            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS responses (
                        message_id TEXT PRIMARY KEY,
                        request_id TEXT,
                        state TEXT NOT NULL,
                        payload TEXT NOT NULL,
                        stored_at TEXT NOT NULL
                    )
                """)

                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_responses_stored_at
                    ON responses(stored_at)
                """)

                await db.commit()
                logger.info(f"HistoryStore initialized at {self.db_path}")
                self._initialized = True

    async def save_entry(self, entry: StoredResponse) -> bool:
        """
        Persist one entry.

        Returns:
            False if an entry with the same id was already saved
        """
        await self.initialize()

        if not entry.message_id:
            raise HistoryStoreError("Cannot persist a response without an id")

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT OR IGNORE INTO responses
                    (message_id, request_id, state, payload, stored_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    entry.message_id,
                    entry.message.request_id,
                    entry.state.value,
                    json.dumps(entry.message.to_wire()),
                    entry.stored_at.isoformat(),
                ),
            )
            await db.commit()
            saved = cursor.rowcount > 0

        if not saved:
            logger.debug(f"Response {entry.message_id} already persisted")
        return saved

    async def save_entries(self, entries: List[StoredResponse]) -> int:
        saved = 0
        for entry in entries:
            if await self.save_entry(entry):
                saved += 1
        return saved

    async def get_entry(self, message_id: str) -> Optional[StoredResponse]:
        """Retrieve one persisted entry."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM responses WHERE message_id = ?", (message_id,)
            ) as cursor:
                row = await cursor.fetchone()
                if row:
                    return self._row_to_entry(row)
                return None

    async def load_entries(self, limit: Optional[int] = None) -> List[StoredResponse]:
        """Load persisted entries in the order they were flushed."""
        await self.initialize()

        query = "SELECT * FROM responses ORDER BY stored_at ASC, rowid ASC"
        params: tuple = ()
        if limit is not None:
            # Most recent `limit` entries, still oldest first.
            query = (
                "SELECT * FROM (SELECT rowid AS rid, * FROM responses "
                "ORDER BY stored_at DESC, rowid DESC LIMIT ?) ORDER BY stored_at ASC, rid ASC"
            )
            params = (limit,)

        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()

        entries = []
        for row in rows:
            try:
                entries.append(self._row_to_entry(row))
            except HistoryStoreError as e:
                logger.warning(f"Skipping unreadable history row: {e.message}")
        return entries

    async def count(self) -> int:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM responses") as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    async def delete_all(self) -> int:
        """Remove every persisted entry."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM responses")
            await db.commit()
            deleted = cursor.rowcount

        logger.info(f"Deleted {deleted} persisted responses")
        return deleted

    def _row_to_entry(self, row: aiosqlite.Row) -> StoredResponse:
        try:
            message = parse_message(json.loads(row["payload"]))
            return StoredResponse(
                message=message,
                state=ResponseState(row["state"]),
                stored_at=datetime.fromisoformat(row["stored_at"]),
            )
        except (ValueError, MalformedChunkError) as e:
            raise HistoryStoreError(
                f"Invalid history row {row['message_id']}", detail=str(e)
            ) from e


class HistoryRecorder:
    """
    Collects terminal bus events and writes them to a HistoryStore.

    Bus listeners are synchronous, so entries are buffered and written
    by ``flush()``.
    """

    def __init__(self, store: HistoryStore):
        self.store = store
        self._buffer: List[StoredResponse] = []
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self, subscribe: Callable[[BusEventType, Callable[[BusEvent], None]], Callable[[], None]]) -> None:
        """Start recording; ``subscribe`` is ChatInstance.subscribe or EventBus.subscribe."""
        for event_type in (BusEventType.RESPONSE_COMPLETE, BusEventType.RESPONSE_CANCELLED):
            self._unsubscribers.append(subscribe(event_type, self._on_terminal))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    async def flush(self) -> int:
        """Write buffered entries; returns how many were newly saved."""
        entries, self._buffer = self._buffer, []
        saved = await self.store.save_entries(entries)
        logger.info(f"Persisted {saved}/{len(entries)} responses")
        return saved

    def _on_terminal(self, event: BusEvent) -> None:
        self._buffer.append(
            StoredResponse(
                message=parse_message(event.data["message"]),
                state=ResponseState(event.data["state"]),
            )
        )
