from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from taskrelay.db.base import StateStore, StoreError
from taskrelay.models.blocker import BlockerRecord, Severity

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}


class BlockerNotFoundError(Exception):
    def __init__(self, item_id: str, detail: str = "no blocker recorded"):
        super().__init__(f"{item_id}: {detail}")
        self.item_id = item_id


class BlockerRegistry:
    """Structured failure records, persisted through the state store.

    The store is the source of truth: another process sharing it (the CLI
    next to a running daemon) may clear or escalate records, so every async
    read path reloads first. The synchronous views (:meth:`list`,
    :meth:`has_open`) answer from the last reload.

    Listings put the most severe blockers first; summary listings truncate
    long details, :meth:`describe` always returns them in full.
    """

    def __init__(self, store: StateStore, summary_limit: int = 200, recent_entries: int = 5):
        self.store = store
        self.summary_limit = summary_limit
        self.recent_entries = recent_entries
        self._records: dict[str, BlockerRecord] = {}
        self._mu = asyncio.Lock()

    async def load(self) -> int:
        """Load persisted records; returns how many are still open."""
        await self.refresh()
        open_count = sum(1 for r in self._records.values() if not r.cleared)
        logger.info("Loaded %d blocker records (%d open)", len(self._records), open_count)
        return open_count

    async def refresh(self) -> None:
        async with self._mu:
            await self._reload()

    async def record(self, record: BlockerRecord) -> BlockerRecord:
        async with self._mu:
            await self.store.save_blocker(record)
            self._records[record.id] = record
        logger.warning(
            "Blocker on %s (%s, worker %s): %s",
            record.item_id,
            record.severity.value,
            record.worker_id,
            record.error,
        )
        return record

    def list(
        self,
        severity: Severity | str | None = None,
        worker_id: str | None = None,
        include_cleared: bool = False,
    ) -> list[BlockerRecord]:
        wanted = Severity(severity) if severity is not None else None
        records = [
            r
            for r in self._records.values()
            if (include_cleared or not r.cleared)
            and (wanted is None or r.severity is wanted)
            and (worker_id is None or r.worker_id == worker_id)
        ]
        return sorted(records, key=lambda r: (_SEVERITY_RANK[r.severity], r.created_at, r.id))

    def summaries(
        self,
        severity: Severity | str | None = None,
        worker_id: str | None = None,
        include_cleared: bool = False,
    ) -> list[dict[str, Any]]:
        """Listing view; details longer than the summary limit are cut."""
        result = []
        for record in self.list(severity, worker_id, include_cleared):
            summary = record.model_dump(mode="json")
            details = record.details
            if details and len(details) > self.summary_limit:
                summary["details"] = (
                    details[: self.summary_limit]
                    + "...\n(use the per-item blocker view for full details)"
                )
                summary["truncated"] = True
            else:
                summary["truncated"] = False
            result.append(summary)
        return result

    def for_item(self, item_id: str) -> list[BlockerRecord]:
        return sorted(
            (r for r in self._records.values() if r.item_id == item_id),
            key=lambda r: (r.created_at, r.id),
        )

    def has_open(self, item_id: str) -> bool:
        return any(not r.cleared for r in self._records.values() if r.item_id == item_id)

    def has_any(self, item_id: str) -> bool:
        return any(r.item_id == item_id for r in self._records.values())

    async def describe(self, item_id: str) -> dict[str, Any]:
        """Full diagnostic for one item, including its recent log entries."""
        await self.refresh()
        history = self.for_item(item_id)
        if not history:
            raise BlockerNotFoundError(item_id)
        latest = history[-1]

        bucket = None
        title = None
        recent: list[dict[str, Any]] = []
        try:
            bucket = await self.store.locate(item_id)
            if bucket is not None:
                item = await self.store.read(bucket, item_id)
                title = item.title
                recent = [e.model_dump() for e in item.log_entries()[-self.recent_entries :]]
        except (StoreError, ValidationError) as exc:
            logger.warning("Could not read %s for blocker details: %s", item_id, exc)

        return {
            "item_id": item_id,
            "title": title,
            "bucket": bucket.value if bucket else None,
            "blocker": latest.model_dump(mode="json"),
            "open": not latest.cleared,
            "escalated": any(r.escalated and not r.cleared for r in history),
            "history": len(history),
            "recent_entries": recent,
        }

    async def escalate(self, item_id: str) -> list[BlockerRecord]:
        """Flag the item's open records as escalated.

        Returns only the records escalated by this call; records already
        escalated are left alone.
        """
        async with self._mu:
            await self._reload()
            open_records = [r for r in self.for_item(item_id) if not r.cleared]
            if not open_records:
                raise BlockerNotFoundError(item_id, "no open blocker")
            fresh = [r for r in open_records if not r.escalated]
            for record in fresh:
                record.escalated = True
                await self.store.save_blocker(record)
        if fresh:
            logger.warning("Escalated %d blocker(s) on %s", len(fresh), item_id)
        return fresh

    async def clear(self, item_id: str, resolution: str | None = None) -> list[BlockerRecord]:
        """Mark every open record for ``item_id`` as cleared."""
        async with self._mu:
            await self._reload()
            open_records = [r for r in self.for_item(item_id) if not r.cleared]
            if not open_records:
                raise BlockerNotFoundError(item_id, "no open blocker")
            now = datetime.now()
            for record in open_records:
                record.cleared_at = now
                record.resolution = resolution
                await self.store.save_blocker(record)
        logger.info("Cleared %d blocker(s) on %s", len(open_records), item_id)
        return open_records

    async def _reload(self) -> None:
        """Caller must hold _mu."""
        self._records = {r.id: r for r in await self.store.load_blockers()}
