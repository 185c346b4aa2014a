from __future__ import annotations

import asyncio
import time

from taskrelay.db.base import (
    ItemExistsError,
    ItemNotFoundError,
    MoveResult,
    StateStore,
    StoreInconsistencyError,
)
from taskrelay.db.document import parse_document, render_document
from taskrelay.models.blocker import BlockerRecord
from taskrelay.models.work_item import Bucket, WorkItem


class MemoryStore(StateStore):
    """In-process store holding rendered documents per bucket.

    Items are kept as rendered text so callers never share mutable objects
    with the store, and every read goes through the same codec as the
    durable adapters.
    """

    def __init__(self) -> None:
        self._buckets: dict[Bucket, dict[str, str]] = {b: {} for b in Bucket}
        self._modified: dict[str, float] = {}
        self._blockers: dict[str, str] = {}
        self._mu = asyncio.Lock()
        self._last_stamp = 0.0

    def _stamp(self) -> float:
        self._last_stamp = max(time.time(), self._last_stamp + 1e-6)
        return self._last_stamp

    def _holders(self, item_id: str) -> list[Bucket]:
        return [b for b, items in self._buckets.items() if item_id in items]

    async def list(self, bucket: Bucket) -> list[str]:
        async with self._mu:
            return sorted(self._buckets[bucket])

    async def read(self, bucket: Bucket, item_id: str) -> WorkItem:
        async with self._mu:
            text = self._buckets[bucket].get(item_id)
        if text is None:
            raise ItemNotFoundError(bucket, item_id)
        return parse_document(text, bucket)

    async def write(self, bucket: Bucket, item_id: str, item: WorkItem) -> None:
        text = render_document(item)
        async with self._mu:
            for existing in self._holders(item_id):
                if existing is not bucket:
                    raise ItemExistsError(item_id, existing, bucket)
            self._buckets[bucket][item_id] = text
            self._modified[item_id] = self._stamp()

    async def move_atomic(
        self, from_bucket: Bucket, to_bucket: Bucket, item_id: str
    ) -> MoveResult:
        async with self._mu:
            source = self._buckets[from_bucket]
            target = self._buckets[to_bucket]
            if from_bucket is to_bucket:
                return MoveResult.ALREADY_PRESENT if item_id in source else MoveResult.NOT_FOUND
            if item_id in source and item_id in target:
                raise StoreInconsistencyError(item_id, [from_bucket, to_bucket])
            if item_id in source:
                target[item_id] = source.pop(item_id)
                return MoveResult.MOVED
            if item_id in target:
                return MoveResult.ALREADY_PRESENT
            return MoveResult.NOT_FOUND

    async def contains(self, bucket: Bucket, item_id: str) -> bool:
        async with self._mu:
            return item_id in self._buckets[bucket]

    async def snapshot(self, bucket: Bucket) -> dict[str, float]:
        async with self._mu:
            return {item_id: self._modified[item_id] for item_id in self._buckets[bucket]}

    async def save_blocker(self, record: BlockerRecord) -> None:
        async with self._mu:
            self._blockers[record.id] = record.model_dump_json()

    async def load_blockers(self) -> list[BlockerRecord]:
        async with self._mu:
            raw = list(self._blockers.values())
        return [BlockerRecord.model_validate_json(text) for text in raw]

    def inject(self, bucket: Bucket, item_id: str, text: str) -> None:
        """Place raw document text into a bucket, bypassing every check."""
        self._buckets[bucket][item_id] = text
        self._modified[item_id] = self._stamp()
