"""Papertrail log search tool - admission control, validation and structured results."""

from __future__ import annotations

import json
from typing import Dict, Any, List, Optional
import structlog
from mcp.types import Tool, TextContent

from ..errors import ApiConnectionFailure, error_payload, validate_arguments
from ..papertrail.client import PapertrailClient, SEARCH_ENDPOINT
from ..papertrail.utils import summarize_events, to_epoch_seconds
from ..ratelimit.limiter import AdmissionController

logger = structlog.get_logger(__name__)

INPUT_SCHEMA = {
    "type": "object",
    "properties": {
        "query": {
            "type": "string",
            "description": "Search query to find in logs (supports Papertrail search syntax)",
            "minLength": 1
        },
        "minTime": {
            "type": ["string", "integer"],
            "description": "Minimum time for search (ISO 8601 or epoch seconds, defaults to 1 hour ago)"
        },
        "maxTime": {
            "type": ["string", "integer"],
            "description": "Maximum time for search (ISO 8601 or epoch seconds, defaults to now)"
        },
        "limit": {
            "type": "integer",
            "description": "Maximum number of log events to return (default: 100, max: 1000)",
            "minimum": 1
        },
        "systemId": {
            "type": "integer",
            "description": "Filter logs to specific system ID"
        },
        "groupId": {
            "type": "integer",
            "description": "Filter logs to specific group ID"
        }
    },
    "required": ["query"]
}


class SearchLogsTool:
    """
    Papertrail search tool returning structured JSON data.
    Every call passes the caller through admission control first.
    """

    def __init__(self, client: PapertrailClient, rate_limiter: AdmissionController):
        """Initialize the search tool.

        Args:
            client: Papertrail API client
            rate_limiter: Per-caller admission controller
        """
        self.client = client
        self.rate_limiter = rate_limiter

    def get_tool_definition(self) -> Tool:
        """Get the MCP tool definition for search_logs."""
        return Tool(
            name="search_logs",
            description="Search Papertrail logs for specific terms and patterns",
            inputSchema=INPUT_SCHEMA
        )

    async def run(self, arguments: Dict[str, Any], client_id: str = "default") -> Dict[str, Any]:
        """Execute a search and return the result or error payload as a dict."""
        try:
            self.rate_limiter.enforce(client_id)
            validate_arguments(arguments, INPUT_SCHEMA)

            min_time = self._parse_time(arguments.get("minTime"), "minTime")
            max_time = self._parse_time(arguments.get("maxTime"), "maxTime")

            logger.info("Searching Papertrail logs", query=arguments["query"], client_id=client_id)

            result = await self.client.search_logs(
                arguments["query"],
                min_time=min_time,
                max_time=max_time,
                limit=arguments.get("limit"),
                system_id=arguments.get("systemId"),
                group_id=arguments.get("groupId")
            )

            if not result.success:
                raise result.error or ApiConnectionFailure(SEARCH_ENDPOINT, result.error_message)

            response = result.to_dict()
            response["summary"] = summarize_events(result.events)
            return response

        except Exception as e:
            return error_payload(e, {
                "tool": "search_logs",
                "query": arguments.get("query"),
                "client_id": client_id
            })

    async def execute(self, arguments: Dict[str, Any], client_id: str = "default") -> List[TextContent]:
        """Execute the search_logs tool and return structured JSON data."""
        response = await self.run(arguments, client_id)
        return [TextContent(
            type="text",
            text=json.dumps(response, ensure_ascii=False, indent=2)
        )]

    @staticmethod
    def _parse_time(value: Any, field: str) -> Optional[int]:
        if value is None or value == "":
            return None
        return to_epoch_seconds(value, field)
