from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator

if TYPE_CHECKING:
    from taskrelay.services.event_bus import EventBus

logger = logging.getLogger(__name__)


class ItemQuarantinedError(Exception):
    """Mutation refused: the item is halted pending manual repair."""

    def __init__(self, item_id: str, reason: str):
        super().__init__(f"{item_id} is quarantined: {reason}")
        self.item_id = item_id
        self.reason = reason


class ItemLockManager:
    """Per-item advisory locks with a quarantine list.

    Design:
    - One asyncio.Lock per item id, created on demand and dropped once no
      coroutine holds or waits for it.
    - No cross-item locking; items are assigned and settled independently.
    - A quarantined item refuses every further ``hold`` until an operator
      releases it.
    """

    def __init__(self, event_bus: EventBus | None = None):
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}
        self._quarantined: dict[str, dict[str, str]] = {}
        self._event_bus = event_bus

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def hold(self, item_id: str) -> AsyncIterator[None]:
        """Hold the item's lock for the duration of the block."""
        self._check(item_id)
        lock = self._locks.setdefault(item_id, asyncio.Lock())
        self._holders[item_id] = self._holders.get(item_id, 0) + 1
        try:
            async with lock:
                # Quarantine may have been set while this coroutine waited.
                self._check(item_id)
                yield
        finally:
            self._holders[item_id] -= 1
            if not self._holders[item_id]:
                del self._holders[item_id]
                self._locks.pop(item_id, None)

    def is_locked(self, item_id: str) -> bool:
        lock = self._locks.get(item_id)
        return lock is not None and lock.locked()

    async def quarantine(self, item_id: str, reason: str) -> None:
        """Halt all further mutation of ``item_id``."""
        self._quarantined[item_id] = {
            "reason": reason,
            "since": datetime.now().isoformat(),
        }
        logger.critical("Store inconsistency on %s, item quarantined: %s", item_id, reason)
        if self._event_bus is not None:
            await self._event_bus.publish(
                "store_inconsistency", {"item_id": item_id, "reason": reason}
            )

    def release_quarantine(self, item_id: str) -> bool:
        released = self._quarantined.pop(item_id, None) is not None
        if released:
            logger.info("Quarantine lifted on %s", item_id)
        else:
            logger.warning("Attempted to lift quarantine on %s, which is not quarantined", item_id)
        return released

    def is_quarantined(self, item_id: str) -> bool:
        return item_id in self._quarantined

    def get_quarantined(self) -> dict[str, dict[str, str]]:
        return {item_id: dict(info) for item_id, info in self._quarantined.items()}

    def lock_count(self) -> int:
        return len(self._locks)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check(self, item_id: str) -> None:
        info = self._quarantined.get(item_id)
        if info is not None:
            raise ItemQuarantinedError(item_id, info["reason"])
