from __future__ import annotations

import asyncio
import json
import logging
import time
from importlib import resources
from pathlib import Path
from typing import Any

import aiosqlite

from taskrelay.db.base import (
    ItemExistsError,
    ItemNotFoundError,
    MoveResult,
    StateStore,
)
from taskrelay.db.document import parse_document, render_document
from taskrelay.models.blocker import BlockerRecord
from taskrelay.models.work_item import Bucket, WorkItem

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/taskrelay.db")


class SqliteStore(StateStore):
    """Async SQLite state store.

    Holds a single persistent connection with WAL mode for concurrent reads.
    All writes are serialised through that connection. ``items.id`` is the
    primary key, so an item can never be present in two buckets; a move is a
    single conditional UPDATE of its ``bucket`` column.
    """

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self._conn: aiosqlite.Connection | None = None
        self._mu = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the persistent connection."""
        if self._conn is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        schema_sql = resources.files("taskrelay.db").joinpath("schema.sql").read_text()

        self._conn = await aiosqlite.connect(self.db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

        logger.info("Database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Database not initialized; call initialize() first"
        return self._conn

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def list(self, bucket: Bucket) -> list[str]:
        cursor = await self.conn.execute(
            "SELECT id FROM items WHERE bucket = ? ORDER BY id", (bucket.value,)
        )
        rows = await cursor.fetchall()
        return [row["id"] for row in rows]

    async def read(self, bucket: Bucket, item_id: str) -> WorkItem:
        cursor = await self.conn.execute(
            "SELECT document FROM items WHERE id = ? AND bucket = ?",
            (item_id, bucket.value),
        )
        row = await cursor.fetchone()
        if row is None:
            raise ItemNotFoundError(bucket, item_id)
        return parse_document(row["document"], bucket)

    async def write(self, bucket: Bucket, item_id: str, item: WorkItem) -> None:
        document = render_document(item)
        async with self._mu:
            existing = await self._bucket_of(item_id)
            if existing is not None and existing is not bucket:
                raise ItemExistsError(item_id, existing, bucket)
            await self.conn.execute(
                """
                INSERT INTO items (id, bucket, document, modified_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    document = excluded.document,
                    modified_at = excluded.modified_at
                """,
                (item_id, bucket.value, document, time.time()),
            )
            await self.conn.commit()

    async def move_atomic(
        self, from_bucket: Bucket, to_bucket: Bucket, item_id: str
    ) -> MoveResult:
        async with self._mu:
            if from_bucket is to_bucket:
                present = await self._bucket_of(item_id) is from_bucket
                return MoveResult.ALREADY_PRESENT if present else MoveResult.NOT_FOUND

            cursor = await self.conn.execute(
                "UPDATE items SET bucket = ? WHERE id = ? AND bucket = ?",
                (to_bucket.value, item_id, from_bucket.value),
            )
            if cursor.rowcount == 1:
                await self._log_event(
                    "item_moved", item_id, {"from": from_bucket.value, "to": to_bucket.value}
                )
                await self.conn.commit()
                return MoveResult.MOVED

            if await self._bucket_of(item_id) is to_bucket:
                return MoveResult.ALREADY_PRESENT
            return MoveResult.NOT_FOUND

    async def contains(self, bucket: Bucket, item_id: str) -> bool:
        return await self._bucket_of(item_id) is bucket

    async def locate(self, item_id: str) -> Bucket | None:
        return await self._bucket_of(item_id)

    async def snapshot(self, bucket: Bucket) -> dict[str, float]:
        cursor = await self.conn.execute(
            "SELECT id, modified_at FROM items WHERE bucket = ?", (bucket.value,)
        )
        rows = await cursor.fetchall()
        return {row["id"]: row["modified_at"] for row in rows}

    # ------------------------------------------------------------------
    # Blockers
    # ------------------------------------------------------------------

    async def save_blocker(self, record: BlockerRecord) -> None:
        await self.conn.execute(
            """
            INSERT INTO blockers
                (id, item_id, worker_id, severity, error, details, created_at, cleared_at,
                 escalated, resolution)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                cleared_at = excluded.cleared_at,
                escalated = excluded.escalated,
                resolution = excluded.resolution
            """,
            (
                record.id,
                record.item_id,
                record.worker_id,
                record.severity.value,
                record.error,
                record.details,
                record.created_at.isoformat(),
                record.cleared_at.isoformat() if record.cleared_at else None,
                int(record.escalated),
                record.resolution,
            ),
        )
        await self.conn.commit()

    async def load_blockers(self) -> list[BlockerRecord]:
        cursor = await self.conn.execute(
            """
            SELECT id, item_id, worker_id, severity, error, details, created_at, cleared_at,
                   escalated, resolution
            FROM blockers ORDER BY created_at
            """
        )
        rows = await cursor.fetchall()
        return [BlockerRecord.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    async def log_event(
        self, event_type: str, item_id: str | None, details: dict[str, Any] | None = None
    ) -> None:
        await self._log_event(event_type, item_id, details)
        await self.conn.commit()

    async def record_event(self, event: dict[str, Any]) -> None:
        details = {k: v for k, v in event.items() if k not in ("type", "item_id", "timestamp")}
        async with self._mu:
            await self.log_event(event["type"], event.get("item_id"), details)

    async def get_events(self, item_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        if item_id:
            cursor = await self.conn.execute(
                """
                SELECT id, event_type, item_id, details, created_at FROM event_log
                WHERE item_id = ? ORDER BY id DESC LIMIT ?
                """,
                (item_id, limit),
            )
        else:
            cursor = await self.conn.execute(
                """
                SELECT id, event_type, item_id, details, created_at FROM event_log
                ORDER BY id DESC LIMIT ?
                """,
                (limit,),
            )
        rows = await cursor.fetchall()
        result = []
        for row in rows:
            d = dict(row)
            d["details"] = json.loads(d["details"]) if d["details"] else None
            result.append(d)
        return result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _bucket_of(self, item_id: str) -> Bucket | None:
        cursor = await self.conn.execute("SELECT bucket FROM items WHERE id = ?", (item_id,))
        row = await cursor.fetchone()
        return Bucket(row["bucket"]) if row else None

    async def _log_event(
        self, event_type: str, item_id: str | None, details: dict[str, Any] | None
    ) -> None:
        await self.conn.execute(
            "INSERT INTO event_log (event_type, item_id, details) VALUES (?, ?, ?)",
            (event_type, item_id, json.dumps(details, default=str) if details else None),
        )
