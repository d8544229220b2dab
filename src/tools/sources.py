"""Papertrail log source tools: systems and groups."""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Dict, List
import structlog
from mcp.types import Tool, TextContent

from ..errors import RateLimitExceeded, error_payload
from ..papertrail.client import PapertrailClient
from ..ratelimit.limiter import AdmissionController

logger = structlog.get_logger(__name__)


class LogSourcesTool:
    """Lists the systems and groups that searches can be filtered by."""

    def __init__(self, client: PapertrailClient, rate_limiter: AdmissionController):
        self.client = client
        self.rate_limiter = rate_limiter

    def get_tool_definitions(self) -> List[Tool]:
        """Get the MCP tool definitions for list_systems and list_groups."""
        empty_schema = {"type": "object", "properties": {}}
        return [
            Tool(
                name="list_systems",
                description="List Papertrail systems (log senders) and their IDs for use as systemId",
                inputSchema=empty_schema
            ),
            Tool(
                name="list_groups",
                description="List Papertrail groups and their IDs for use as groupId",
                inputSchema=empty_schema
            ),
        ]

    async def _list(self, tool_name: str, fetch: Callable[[], Awaitable[Dict[str, Any]]],
                    client_id: str) -> Dict[str, Any]:
        try:
            self.rate_limiter.enforce(client_id)
        except RateLimitExceeded as e:
            return error_payload(e, {"tool": tool_name, "client_id": client_id})

        result = await fetch()
        if not result["success"]:
            logger.warning("Log source listing failed", tool=tool_name, error=result["error"])
        return result

    async def systems(self, client_id: str = "default") -> Dict[str, Any]:
        return await self._list("list_systems", self.client.list_systems, client_id)

    async def groups(self, client_id: str = "default") -> Dict[str, Any]:
        return await self._list("list_groups", self.client.list_groups, client_id)

    async def execute(self, name: str, client_id: str = "default") -> List[TextContent]:
        """Execute list_systems or list_groups by tool name."""
        if name == "list_systems":
            response = await self.systems(client_id)
        elif name == "list_groups":
            response = await self.groups(client_id)
        else:
            raise ValueError(f"Unknown tool: {name}")
        return [TextContent(type="text", text=json.dumps(response, ensure_ascii=False, indent=2))]
