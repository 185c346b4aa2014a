from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any

from taskrelay.models.blocker import BlockerRecord
from taskrelay.models.work_item import Bucket, WorkItem


class StoreError(Exception):
    """Base class for state store failures."""


class ItemNotFoundError(StoreError):
    def __init__(self, bucket: Bucket, item_id: str):
        super().__init__(f"{item_id} not found in {bucket.value}")
        self.bucket = bucket
        self.item_id = item_id


class ItemExistsError(StoreError):
    """Raised when writing an item into a bucket while it lives in another."""

    def __init__(self, item_id: str, existing: Bucket, target: Bucket):
        super().__init__(
            f"{item_id} already lives in {existing.value}; refusing to write it to {target.value}"
        )
        self.item_id = item_id
        self.existing = existing
        self.target = target


class DocumentError(StoreError, ValueError):
    """A stored document could not be parsed into a WorkItem."""


class StoreInconsistencyError(StoreError):
    """The store violated the one-item-one-bucket invariant."""

    def __init__(self, item_id: str, buckets: list[Bucket]):
        names = ", ".join(b.value for b in buckets) or "no bucket"
        super().__init__(f"{item_id} is visible in {names}")
        self.item_id = item_id
        self.buckets = buckets


class MoveResult(str, Enum):
    MOVED = "moved"
    ALREADY_PRESENT = "already_present"
    NOT_FOUND = "not_found"

    @property
    def succeeded(self) -> bool:
        return self is not MoveResult.NOT_FOUND


class StateStore(ABC):
    """Bucket-keyed durable storage for work items.

    Every adapter guarantees that an item id is present in at most one
    bucket, and that ``move_atomic`` never exposes it in two buckets or none.
    """

    async def initialize(self) -> None:
        """Prepare backing storage. Safe to call more than once."""

    async def close(self) -> None:
        """Release backing resources."""

    @abstractmethod
    async def list(self, bucket: Bucket) -> list[str]:
        """Return ids currently in ``bucket``, sorted."""

    @abstractmethod
    async def read(self, bucket: Bucket, item_id: str) -> WorkItem:
        """Read an item. Raises ItemNotFoundError or DocumentError."""

    @abstractmethod
    async def write(self, bucket: Bucket, item_id: str, item: WorkItem) -> None:
        """Create or replace ``item_id`` in ``bucket``."""

    @abstractmethod
    async def move_atomic(
        self, from_bucket: Bucket, to_bucket: Bucket, item_id: str
    ) -> MoveResult:
        """Move an item between buckets; repeating a finished move is a no-op."""

    @abstractmethod
    async def contains(self, bucket: Bucket, item_id: str) -> bool: ...

    @abstractmethod
    async def snapshot(self, bucket: Bucket) -> dict[str, float]:
        """Return ``{item_id: last-modified epoch seconds}`` for a bucket."""

    @abstractmethod
    async def save_blocker(self, record: BlockerRecord) -> None: ...

    @abstractmethod
    async def load_blockers(self) -> list[BlockerRecord]: ...

    async def record_event(self, event: dict[str, Any]) -> None:
        """Append a lifecycle event to the store's audit log, if it keeps one."""

    async def locate(self, item_id: str) -> Bucket | None:
        """Return the bucket currently holding ``item_id``."""
        found = [b for b in Bucket if await self.contains(b, item_id)]
        if len(found) > 1:
            raise StoreInconsistencyError(item_id, found)
        return found[0] if found else None
