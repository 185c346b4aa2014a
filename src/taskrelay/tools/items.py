from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from taskrelay.db.base import StoreError
from taskrelay.services.approval_gate import InvalidTransitionError
from taskrelay.services.lock_manager import ItemQuarantinedError
from taskrelay.services.orchestrator import Orchestrator

_GATE_ERRORS = (InvalidTransitionError, ItemQuarantinedError, StoreError)


def register(mcp: FastMCP, orchestrator: Orchestrator) -> None:
    """Register item lifecycle MCP tools."""

    @mcp.tool()
    async def approve_item(item_id: str, approver: str = "operator") -> dict:
        """Approve a task waiting in review, or a request under analysis.

        Approving a request generates its tasks immediately.

        Args:
            item_id: Id of the task or request
            approver: Name recorded in the item's progress log
        """
        try:
            result = await orchestrator.approve(item_id, approver)
        except _GATE_ERRORS as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, **result}

    @mcp.tool()
    async def reject_item(item_id: str, feedback: str, reviewer: str = "operator") -> dict:
        """Send a reviewed task back for rework, or reject a request.

        The feedback is appended to the item verbatim so the next attempt can
        address it.

        Args:
            item_id: Id of the task or request
            feedback: What needs to change
            reviewer: Name recorded in the item's progress log
        """
        try:
            result = await orchestrator.reject(item_id, feedback, reviewer)
        except _GATE_ERRORS as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, **result}

    @mcp.tool()
    async def get_item(item_id: str) -> dict:
        """Show one item: its bucket, header fields and full content."""
        try:
            bucket, item = await orchestrator.get_item(item_id)
        except StoreError as exc:
            return {"success": False, "error": str(exc)}
        data = item.model_dump(mode="json", exclude={"state"})
        data["dependencies"] = sorted(item.dependencies)
        return {"success": True, "bucket": bucket.value, "item": data}

    @mcp.tool()
    async def get_status() -> dict:
        """Bucket counts, completion, open blockers and worker load."""
        report = await orchestrator.status_report()
        return {"report": report.model_dump(mode="json"), "text": report.render()}

    @mcp.tool()
    async def list_workers() -> list[dict]:
        """List configured workers with their capabilities, load and status."""
        await orchestrator.registry.refresh()
        return orchestrator.worker_statuses()
