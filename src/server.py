#!/usr/bin/env python3
"""
MCP server with SSE transport exposing Papertrail log search
Following the working FastMCP pattern
"""

import asyncio
import json
import sys
from contextlib import asynccontextmanager
from typing import Optional, Union

import structlog
import uvicorn
from mcp.server import Server
from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.server import Context
from mcp.server.sse import SseServerTransport
from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Mount, Route

from src.config import Config, get_config
from src.logging_setup import configure_logging
from src.papertrail.client import PapertrailClient
from src.ratelimit.limiter import AdmissionController, sweep_periodically
from src.tools.search_logs import SearchLogsTool
from src.tools.sources import LogSourcesTool

logger = structlog.get_logger(__name__)


def _client_id(context: Optional[Context]) -> str:
    """Identify the calling MCP client for admission control."""
    if context is None:
        return "default"
    try:
        return context.client_id or "default"
    except (AttributeError, ValueError):
        return "default"


class PapertrailServer:
    """Wires configuration, the admission controller and the API client into FastMCP."""

    def __init__(self, config: Config):
        self.config = config
        self.rate_limiter = AdmissionController.from_config(config.rate_limit)
        self.client = PapertrailClient(
            config.papertrail,
            user_agent=f"{config.mcp.server_name}/{config.mcp.version}",
            default_deadline=config.mcp.search_deadline or None
        )
        self.search_tool = SearchLogsTool(self.client, self.rate_limiter)
        self.sources_tool = LogSourcesTool(self.client, self.rate_limiter)
        self.mcp = FastMCP(config.mcp.server_name)
        self._register_tools()

    def _register_tools(self) -> None:
        search_tool = self.search_tool
        sources_tool = self.sources_tool

        @self.mcp.tool()
        async def search_logs(
            query: str,
            minTime: Optional[Union[str, int]] = None,
            maxTime: Optional[Union[str, int]] = None,
            limit: int = 100,
            systemId: Optional[int] = None,
            groupId: Optional[int] = None,
            context: Context = None
        ) -> str:
            """Search Papertrail logs for specific terms and patterns.

            Args:
                query: Search query to find in logs (supports Papertrail search syntax)
                minTime: Minimum time for search (ISO 8601 or epoch seconds, defaults to 1 hour ago)
                maxTime: Maximum time for search (ISO 8601 or epoch seconds, defaults to now)
                limit: Maximum number of log events to return (default: 100, max: 1000)
                systemId: Filter logs to specific system ID
                groupId: Filter logs to specific group ID

            Returns:
                JSON search results with events, total, time range and summary, or a JSON error
            """
            arguments = {
                "query": query,
                "minTime": minTime,
                "maxTime": maxTime,
                "limit": limit,
                "systemId": systemId,
                "groupId": groupId
            }
            results = await search_tool.execute(arguments, _client_id(context))
            return results[0].text

        @self.mcp.tool()
        async def list_systems(context: Context = None) -> str:
            """List Papertrail systems (log senders) and their IDs for use as systemId."""
            results = await sources_tool.execute("list_systems", _client_id(context))
            return results[0].text

        @self.mcp.tool()
        async def list_groups(context: Context = None) -> str:
            """List Papertrail groups and their IDs for use as groupId."""
            results = await sources_tool.execute("list_groups", _client_id(context))
            return results[0].text

        @self.mcp.tool()
        async def rate_limit_status(context: Context = None) -> str:
            """Show the calling client's current rate limit usage and global totals."""
            return json.dumps({
                "client": self.rate_limiter.get_status(_client_id(context)),
                "global": self.rate_limiter.get_global_stats()
            }, indent=2)

    async def check_connectivity(self) -> bool:
        """Test Papertrail connectivity; failures are logged, never fatal."""
        logger.info("Testing Papertrail API connection")
        try:
            result = await self.client.test_connectivity()
        except Exception as e:
            logger.warning("Error testing Papertrail connection, log searches may fail", error=str(e))
            return False

        if result["success"]:
            logger.info("Connected to Papertrail API", endpoint=result["endpoint"])
            return True
        logger.warning("Failed to connect to Papertrail API, log searches may fail",
                       error=result["error"])
        return False

    @asynccontextmanager
    async def lifespan(self, app: Starlette):
        """Run the connectivity check and the idle-client sweeper for the app's lifetime."""
        await self.check_connectivity()

        stop = asyncio.Event()
        sweeper = asyncio.create_task(sweep_periodically(
            self.rate_limiter, stop, self.config.rate_limit.cleanup_interval
        ))
        try:
            yield
        finally:
            stop.set()
            await sweeper


def create_starlette_app(server: PapertrailServer, *, debug: bool = False) -> Starlette:
    sse = SseServerTransport("/messages/")
    mcp_server: Server = server.mcp._mcp_server

    async def handle_sse(request):
        async with sse.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1], mcp_server.create_initialization_options()
            )
        # Return empty response to avoid NoneType error
        return Response()

    return Starlette(
        debug=debug,
        routes=[
            Route("/", endpoint=handle_sse),
            Route("/sse", endpoint=handle_sse),
            Mount("/messages/", app=sse.handle_post_message),
        ],
        lifespan=server.lifespan
    )


def main():
    config = get_config()
    configure_logging(config.logging)

    port = config.server.port
    if len(sys.argv) > 1:
        port = int(sys.argv[1])

    server = PapertrailServer(config)
    starlette_app = create_starlette_app(server, debug=config.logging.level == "debug")

    logger.info("Starting Papertrail MCP server",
                name=config.mcp.server_name,
                version=config.mcp.version,
                host=config.server.host,
                port=port,
                tools=["search_logs", "list_systems", "list_groups", "rate_limit_status"])

    uvicorn.run(starlette_app, host=config.server.host, port=port)


if __name__ == "__main__":
    main()
