from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from taskrelay.db.base import StoreError
from taskrelay.services.blocker_registry import BlockerNotFoundError
from taskrelay.services.lock_manager import ItemQuarantinedError
from taskrelay.services.orchestrator import Orchestrator


def register(mcp: FastMCP, orchestrator: Orchestrator) -> None:
    """Register blocker MCP tools."""

    registry = orchestrator.registry

    @mcp.tool()
    async def list_blockers(
        severity: str | None = None,
        worker_id: str | None = None,
        include_cleared: bool = False,
    ) -> dict:
        """List blockers, most severe first. Long details are truncated here.

        Use ``describe_blocker`` for the full diagnostic of one item.

        Args:
            severity: Only blockers of this severity (low, medium, high)
            worker_id: Only blockers raised while this worker held the task
            include_cleared: Also list blockers that were already cleared
        """
        await registry.refresh()
        try:
            blockers = registry.summaries(severity, worker_id, include_cleared)
        except ValueError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "count": len(blockers), "blockers": blockers}

    @mcp.tool()
    async def describe_blocker(item_id: str) -> dict:
        """Full, untruncated diagnostic for one blocked item.

        Includes the exact error and details, where the item is now and its
        most recent progress log entries.
        """
        try:
            return {"success": True, **(await registry.describe(item_id))}
        except BlockerNotFoundError as exc:
            return {"success": False, "error": str(exc)}

    @mcp.tool()
    async def clear_blocker(
        item_id: str, operator: str = "operator", resolution: str | None = None
    ) -> dict:
        """Mark an item's blockers resolved and return it to the backlog.

        Args:
            item_id: The blocked item
            operator: Who resolved it
            resolution: How it was resolved; kept on the blocker records
        """
        try:
            result = await orchestrator.clear_blocker(item_id, operator, resolution)
        except (BlockerNotFoundError, ItemQuarantinedError, StoreError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, **result}

    @mcp.tool()
    async def escalate_blocker(item_id: str, operator: str = "operator") -> dict:
        """Flag an item's open blockers as urgent and alert the operator channel."""
        try:
            result = await orchestrator.escalate_blocker(item_id, operator)
        except (BlockerNotFoundError, StoreError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, **result}
