from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP

from taskrelay.services.orchestrator import Orchestrator
from taskrelay.tools import blockers as blocker_tools
from taskrelay.tools import items as item_tools
from taskrelay.utils.config import get_config
from taskrelay.utils.logger import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle: the orchestrator runs inside the server."""
    config = get_config()

    # --- Orchestrator ---
    orchestrator = Orchestrator.from_config(config)
    await orchestrator.start()

    # --- Register MCP tools ---
    item_tools.register(server, orchestrator)
    blocker_tools.register(server, orchestrator)

    # --- Register MCP resource ---
    @server.resource("taskrelay://status")
    async def get_status_text() -> str:
        report = await orchestrator.status_report()
        return report.render()

    logger.info("taskrelay MCP server ready (store: %s)", config.store)

    try:
        yield
    finally:
        await orchestrator.stop()
        await orchestrator.store.close()
        logger.info("taskrelay MCP server stopped")


def create_server() -> FastMCP:
    """Build and return the configured FastMCP server."""
    config = get_config()
    setup_logging(config.log_level)

    server = FastMCP("taskrelay", lifespan=lifespan)
    return server


# Module-level instance used by the CLI and ``python -m``
mcp = create_server()

if __name__ == "__main__":
    mcp.run()
