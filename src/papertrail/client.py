"""Papertrail API client module."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import requests
import structlog

from ..config import PapertrailConfig
from ..errors import (
    ApiAuthenticationFailure,
    ApiConnectionFailure,
    ApiTimeout,
    InvalidInput,
    PapertrailMCPError,
)
from .utils import (
    DEFAULT_LOOKBACK_SECONDS,
    TimeValue,
    clamp_limit,
    parse_event,
    to_epoch_seconds,
)

logger = structlog.get_logger(__name__)

SEARCH_ENDPOINT = "/events/search.json"
SYSTEMS_ENDPOINT = "/systems.json"
GROUPS_ENDPOINT = "/groups.json"

# Credential failures will not clear up on retry.
NON_RETRYABLE_STATUSES = frozenset({401, 403})


@dataclass
class TimeRange:
    """Search bounds in whole epoch seconds."""
    min_time: int
    max_time: int

    def to_dict(self) -> Dict[str, int]:
        return {"min_time": self.min_time, "max_time": self.max_time}


@dataclass
class SearchRequest:
    """A fully resolved search: defaults applied, limit clamped."""
    query: str
    time_range: TimeRange
    limit: int
    system_id: Optional[int] = None
    group_id: Optional[int] = None
    defaults_applied: bool = False

    def to_params(self) -> Dict[str, Any]:
        """Query parameters for the search endpoint."""
        params = {
            "q": self.query,
            "min_time": self.time_range.min_time,
            "max_time": self.time_range.max_time,
            "limit": self.limit,
        }
        if self.system_id is not None:
            params["system_id"] = self.system_id
        if self.group_id is not None:
            params["group_id"] = self.group_id
        return params


@dataclass
class SearchResult:
    """Uniform envelope for a search outcome.

    On success ``events``/``total``/``time_range`` are complete; on failure
    ``error_message`` is set and ``events`` is empty.
    """
    success: bool
    query: str
    events: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    time_range: Optional[TimeRange] = None
    search_timestamp: Optional[str] = None
    limit: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    error: Optional[PapertrailMCPError] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "success": self.success,
            "query": self.query,
            "events": self.events,
            "total": self.total,
        }
        if self.success:
            result["time_range"] = self.time_range.to_dict() if self.time_range else None
            result["metadata"] = {
                "search_time": self.search_timestamp,
                "limit": self.limit,
                **self.metadata,
            }
        else:
            result["error"] = self.error_message
            if self.error is not None:
                result["code"] = self.error.code.value
        return result


class PapertrailClient:
    """Papertrail API client with retries and response normalization.

    Holds only static configuration, so one instance can serve concurrent
    searches; each call runs its blocking HTTP work in a worker thread.
    """

    def __init__(self, config: PapertrailConfig, user_agent: str = "papertrail-mcp/1.0.0",
                 default_deadline: Optional[float] = None,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 monotonic: Callable[[], float] = time.monotonic):
        """Initialize Papertrail client.

        Args:
            config: Papertrail configuration
            user_agent: User-Agent header value
            default_deadline: Seconds a call may take, retries included; None for no limit
            clock: Wall-clock source in epoch seconds
            sleep: Coroutine used for backoff delays
            monotonic: Monotonic clock used for deadline accounting
        """
        self.config = config
        self.user_agent = user_agent
        self.default_deadline = default_deadline
        self._clock = clock
        self._sleep = sleep
        self._monotonic = monotonic

    def _headers(self) -> Dict[str, str]:
        return {
            "X-Papertrail-Token": self.config.api_token,
            "Accept": "application/json",
            "User-Agent": self.user_agent,
        }

    def _send(self, url: str, params: Optional[Dict[str, Any]], timeout: float) -> requests.Response:
        return requests.get(url, params=params, headers=self._headers(), timeout=timeout)

    async def make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                           deadline: Optional[float] = None,
                           max_attempts: Optional[int] = None) -> Any:
        """Issue a GET with retries and exponential backoff.

        Waits 2^(attempt-1) seconds between attempts (1s, 2s, 4s, ...).

        Args:
            endpoint: Path below the configured base URL
            params: Query parameters
            deadline: Seconds the whole call may take; None for no limit
            max_attempts: Override for the configured retry budget

        Returns:
            Any: Decoded JSON body of the first successful response

        Raises:
            ApiAuthenticationFailure: On 401/403, without retrying
            ApiConnectionFailure: When every attempt failed
            ApiTimeout: When the deadline expires before the attempts finish
        """
        url = f"{self.config.base_url}{endpoint}"
        attempts = max_attempts or self.config.max_retries
        started = self._monotonic()
        last_error: Optional[str] = None
        last_status: Optional[int] = None

        for attempt in range(1, attempts + 1):
            timeout = self.config.timeout
            if deadline is not None:
                remaining = deadline - (self._monotonic() - started)
                if remaining <= 0:
                    raise ApiTimeout(endpoint, deadline, attempt - 1, last_error)
                timeout = min(timeout, remaining)

            logger.debug("Papertrail API request", endpoint=endpoint, attempt=attempt)
            try:
                response = await asyncio.to_thread(self._send, url, params, timeout)
            except requests.RequestException as e:
                last_status = None
                last_error = f"Request failed: {e}"
            else:
                last_status = response.status_code
                if 200 <= response.status_code < 300:
                    try:
                        return response.json()
                    except ValueError as e:
                        last_error = f"Invalid JSON in response: {e}"
                else:
                    last_error = f"Papertrail API error ({response.status_code}): {response.text}"
                    if response.status_code in NON_RETRYABLE_STATUSES:
                        logger.error("Papertrail API rejected credentials",
                                     endpoint=endpoint, status=response.status_code)
                        raise ApiAuthenticationFailure(endpoint, last_error,
                                                       response.status_code, attempt)

            logger.warning("Request attempt failed", endpoint=endpoint, attempt=attempt,
                           status=last_status, error=last_error)

            if attempt < attempts:
                delay = 2 ** (attempt - 1)
                if deadline is not None and (self._monotonic() - started) + delay >= deadline:
                    raise ApiTimeout(endpoint, deadline, attempt, last_error)
                await self._sleep(delay)

        raise ApiConnectionFailure(endpoint, last_error or "unknown error", last_status, attempts)

    def build_request(self, query: str, min_time: Optional[TimeValue] = None,
                      max_time: Optional[TimeValue] = None, limit: Optional[int] = None,
                      system_id: Optional[int] = None,
                      group_id: Optional[int] = None) -> SearchRequest:
        """Resolve search options into a SearchRequest.

        Missing bounds default to the last hour ending now; the limit is
        clamped to [1, 1000].

        Raises:
            InvalidInput: For an empty query or malformed/inverted time bounds
        """
        if not query or not isinstance(query, str) or not query.strip():
            raise InvalidInput("'query' must be a non-empty string")

        now = int(self._clock())
        defaults_applied = min_time is None or max_time is None
        resolved_max = now if max_time is None else to_epoch_seconds(max_time, "maxTime")
        resolved_min = (now - DEFAULT_LOOKBACK_SECONDS if min_time is None
                        else to_epoch_seconds(min_time, "minTime"))

        if resolved_min > resolved_max:
            raise InvalidInput("minTime must not be later than maxTime")

        return SearchRequest(
            query=query,
            time_range=TimeRange(min_time=resolved_min, max_time=resolved_max),
            limit=clamp_limit(limit),
            system_id=system_id,
            group_id=group_id,
            defaults_applied=defaults_applied,
        )

    async def search_logs(self, query: str, min_time: Optional[TimeValue] = None,
                          max_time: Optional[TimeValue] = None, limit: Optional[int] = None,
                          system_id: Optional[int] = None, group_id: Optional[int] = None,
                          deadline: Optional[float] = None) -> SearchResult:
        """Search Papertrail events.

        Remote failures are reported in the result, never raised.

        Raises:
            InvalidInput: For malformed local arguments (see build_request)
        """
        request = self.build_request(query, min_time=min_time, max_time=max_time, limit=limit,
                                     system_id=system_id, group_id=group_id)
        return await self.execute_search(request, deadline=deadline)

    async def execute_search(self, request: SearchRequest,
                             deadline: Optional[float] = None) -> SearchResult:
        """Run a resolved SearchRequest and normalize the response."""
        if deadline is None:
            deadline = self.default_deadline

        try:
            payload = await self.make_request(SEARCH_ENDPOINT, request.to_params(), deadline)
            events, total, metadata = self._normalize_search_payload(payload)
        except PapertrailMCPError as e:
            logger.error("Error searching Papertrail logs", query=request.query, error=e.message)
            return SearchResult(success=False, query=request.query,
                                error_message=e.message, error=e)

        logger.info("Papertrail search completed", query=request.query, total=total,
                    returned=len(events), defaults_applied=request.defaults_applied)
        return SearchResult(
            success=True,
            query=request.query,
            events=events,
            total=total,
            time_range=request.time_range,
            search_timestamp=datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            limit=request.limit,
            metadata=metadata,
        )

    def _normalize_search_payload(self, payload: Any) -> Tuple[List[Dict[str, Any]], int, Dict[str, Any]]:
        if not isinstance(payload, dict):
            raise ApiConnectionFailure(SEARCH_ENDPOINT,
                                       f"Unexpected response type: {type(payload).__name__}")

        raw_events = payload.get("events") or []
        if not isinstance(raw_events, list) or not all(isinstance(e, dict) for e in raw_events):
            raise ApiConnectionFailure(SEARCH_ENDPOINT,
                                       "Unexpected events payload: expected a list of objects")
        events = [parse_event(event) for event in raw_events]

        total = payload.get("total_hits", payload.get("total"))
        if not isinstance(total, int) or isinstance(total, bool):
            total = len(events)

        metadata = {
            key: payload[key]
            for key in ("min_id", "max_id", "reached_beginning", "reached_time_limit")
            if key in payload
        }
        return events, total, metadata

    async def list_systems(self, deadline: Optional[float] = None) -> Dict[str, Any]:
        """List the systems (log senders) visible to the token."""
        try:
            payload = await self.make_request(SYSTEMS_ENDPOINT, deadline=deadline)
        except PapertrailMCPError as e:
            logger.error("Error fetching Papertrail systems", error=e.message)
            return {"success": False, "error": e.message, "code": e.code.value, "systems": []}

        systems = [
            {
                "id": system.get("id"),
                "name": system.get("name"),
                "hostname": system.get("hostname"),
                "ip_address": system.get("ip_address"),
                "last_event_at": system.get("last_event_at"),
            }
            for system in (payload if isinstance(payload, list) else [])
        ]
        logger.info("Retrieved systems", count=len(systems))
        return {"success": True, "systems": systems}

    async def list_groups(self, deadline: Optional[float] = None) -> Dict[str, Any]:
        """List the groups visible to the token."""
        try:
            payload = await self.make_request(GROUPS_ENDPOINT, deadline=deadline)
        except PapertrailMCPError as e:
            logger.error("Error fetching Papertrail groups", error=e.message)
            return {"success": False, "error": e.message, "code": e.code.value, "groups": []}

        groups = [
            {
                "id": group.get("id"),
                "name": group.get("name"),
                "system_wildcard": group.get("system_wildcard"),
                "system_ids": [s.get("id") for s in group.get("systems") or []],
            }
            for group in (payload if isinstance(payload, list) else [])
        ]
        logger.info("Retrieved groups", count=len(groups))
        return {"success": True, "groups": groups}

    async def test_connectivity(self) -> Dict[str, Any]:
        """Check the API with one attempt per endpoint until one answers."""
        checks = [
            (SYSTEMS_ENDPOINT, None),
            (SEARCH_ENDPOINT, {"q": "*", "limit": 1}),
            (GROUPS_ENDPOINT, None),
        ]

        last_error = None
        for endpoint, params in checks:
            try:
                await self.make_request(endpoint, params, max_attempts=1)
            except ApiAuthenticationFailure as e:
                # Every endpoint shares the credential.
                last_error = e.message
                break
            except PapertrailMCPError as e:
                last_error = e.message
                logger.debug("Connectivity check failed", endpoint=endpoint, error=e.message)
                continue
            return {
                "success": True,
                "message": f"Successfully connected to Papertrail API on {endpoint}",
                "endpoint": endpoint,
            }

        return {
            "success": False,
            "error": last_error,
            "message": "Failed to connect to Papertrail API",
        }
