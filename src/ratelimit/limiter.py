"""Per-caller admission control: sliding window plus refillable burst tokens."""

from __future__ import annotations

import asyncio
import math
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional
import structlog

from ..errors import RateLimitExceeded

logger = structlog.get_logger(__name__)

WINDOW_SECONDS = 60
TOKEN_REFILL_SECONDS = 10
DEFAULT_IDLE_TIMEOUT = 300
DEFAULT_CLEANUP_INTERVAL = 60


class AdmissionReason(str, Enum):
    """Why a check was allowed or denied."""
    OK = "ok"
    BURST_EXHAUSTED = "burst_exhausted"
    WINDOW_EXHAUSTED = "window_exhausted"


@dataclass
class ClientState:
    """Request history and burst credit for one caller.

    Only touched while ``lock`` is held. ``removed`` is set once the entry has
    been dropped from its registry so late lock holders can retry.
    """
    burst_tokens: int
    request_timestamps: Deque[float] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    removed: bool = False

    def requests_since(self, cutoff: float) -> int:
        return sum(1 for ts in self.request_timestamps if ts > cutoff)


@dataclass(frozen=True)
class AdmissionDecision:
    """Outcome of a single admission check."""
    allowed: bool
    reason: AdmissionReason
    remaining: int
    reset_time: float
    retry_after_seconds: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "allowed": self.allowed,
            "reason": self.reason.value,
            "remaining": self.remaining,
            "reset_time": self.reset_time,
        }
        if self.retry_after_seconds is not None:
            result["retry_after"] = self.retry_after_seconds
        return result


class ClientRegistry:
    """Map of caller id to ClientState with per-entry locking.

    The map lock only guards membership and is never held while waiting on an
    entry lock, so callers with different ids never wait on each other.
    """

    def __init__(self, state_factory: Callable[[], ClientState]):
        self._state_factory = state_factory
        self._clients: Dict[str, ClientState] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._clients)

    def __contains__(self, client_id: str) -> bool:
        with self._lock:
            return client_id in self._clients

    @contextmanager
    def locked(self, client_id: str, create: bool = True) -> Iterator[Optional[ClientState]]:
        """Hold the caller's entry lock for the duration of the block.

        Yields None when the caller is unknown and ``create`` is False.
        """
        while True:
            with self._lock:
                state = self._clients.get(client_id)
                if state is None and create:
                    state = self._state_factory()
                    self._clients[client_id] = state

            if state is None:
                yield None
                return

            with state.lock:
                if state.removed:
                    # Dropped by a sweep or reset between lookup and lock.
                    continue
                yield state
                return

    def snapshot(self) -> List[tuple]:
        with self._lock:
            return list(self._clients.items())

    def remove(self, client_id: str, predicate: Optional[Callable[[ClientState], bool]] = None) -> bool:
        """Remove a caller while holding its entry lock.

        Returns True if an entry was removed.
        """
        with self._lock:
            state = self._clients.get(client_id)
        if state is None:
            return False

        with state.lock:
            if state.removed:
                return False
            if predicate is not None and not predicate(state):
                return False
            with self._lock:
                if self._clients.get(client_id) is state:
                    del self._clients[client_id]
            state.removed = True
            return True


class AdmissionController:
    """Answers whether a caller may make an outbound request right now.

    Each caller gets a sliding 60 second window capped at
    ``requests_per_minute`` and a pool of ``burst`` tokens. One token is
    consumed per admitted request; tokens come back at one per 10 seconds
    elapsed since the caller's newest request. The burst check runs before the
    window check.
    """

    def __init__(self, requests_per_minute: int = 60, burst: int = 10,
                 idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
                 clock: Callable[[], float] = time.time):
        """Initialize the controller.

        Args:
            requests_per_minute: Requests allowed per caller in any 60s window
            burst: Burst token capacity per caller
            idle_timeout: Seconds without requests before sweep() drops a caller
            clock: Wall-clock source in epoch seconds
        """
        if requests_per_minute < 1:
            raise ValueError("requests_per_minute must be at least 1")
        if burst < 1:
            raise ValueError("burst must be at least 1")

        self.requests_per_minute = requests_per_minute
        self.burst = burst
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._registry = ClientRegistry(lambda: ClientState(burst_tokens=self.burst))

    @classmethod
    def from_config(cls, config, clock: Callable[[], float] = time.time) -> "AdmissionController":
        """Build a controller from a RateLimitConfig."""
        return cls(
            requests_per_minute=config.requests_per_minute,
            burst=config.burst,
            idle_timeout=config.idle_timeout,
            clock=clock,
        )

    @property
    def limits(self) -> Dict[str, int]:
        return {"requests_per_minute": self.requests_per_minute, "burst": self.burst}

    def check_limit(self, client_id: str = "default") -> AdmissionDecision:
        """Check and record one request for a caller."""
        with self._registry.locked(client_id) as state:
            now = self._clock()
            window_start = now - WINDOW_SECONDS
            timestamps = state.request_timestamps

            while timestamps and timestamps[0] <= window_start:
                timestamps.popleft()

            if not timestamps:
                state.burst_tokens = self.burst
            else:
                tokens_to_add = int((now - timestamps[-1]) // TOKEN_REFILL_SECONDS)
                state.burst_tokens = min(self.burst, state.burst_tokens + tokens_to_add)

            if state.burst_tokens <= 0:
                logger.debug("Admission denied", client_id=client_id,
                             reason=AdmissionReason.BURST_EXHAUSTED.value)
                return AdmissionDecision(
                    allowed=False,
                    reason=AdmissionReason.BURST_EXHAUSTED,
                    remaining=0,
                    reset_time=now + TOKEN_REFILL_SECONDS,
                    retry_after_seconds=TOKEN_REFILL_SECONDS,
                )

            if len(timestamps) >= self.requests_per_minute:
                reset_time = timestamps[0] + WINDOW_SECONDS
                logger.debug("Admission denied", client_id=client_id,
                             reason=AdmissionReason.WINDOW_EXHAUSTED.value)
                return AdmissionDecision(
                    allowed=False,
                    reason=AdmissionReason.WINDOW_EXHAUSTED,
                    remaining=0,
                    reset_time=reset_time,
                    retry_after_seconds=max(0, math.ceil(reset_time - now)),
                )

            timestamps.append(now)
            state.burst_tokens -= 1

            return AdmissionDecision(
                allowed=True,
                reason=AdmissionReason.OK,
                remaining=max(0, min(self.requests_per_minute - len(timestamps),
                                     state.burst_tokens)),
                reset_time=window_start + WINDOW_SECONDS,
            )

    def enforce(self, client_id: str = "default") -> AdmissionDecision:
        """Run check_limit and raise if the caller is denied.

        Raises:
            RateLimitExceeded: carrying the retry hint from the denial
        """
        decision = self.check_limit(client_id)
        if not decision.allowed:
            logger.info("Rate limit exceeded", client_id=client_id,
                        reason=decision.reason.value,
                        retry_after=decision.retry_after_seconds)
            raise RateLimitExceeded(
                reason=decision.reason.value,
                retry_after_seconds=decision.retry_after_seconds,
                reset_time=decision.reset_time,
                remaining=decision.remaining,
            )
        return decision

    def get_status(self, client_id: str = "default") -> Dict[str, Any]:
        """Current window occupancy and token count for a caller, without mutating it."""
        now = self._clock()
        window_start = now - WINDOW_SECONDS

        with self._registry.locked(client_id, create=False) as state:
            if state is None:
                requests_in_window = 0
                burst_tokens = self.burst
            else:
                requests_in_window = state.requests_since(window_start)
                burst_tokens = state.burst_tokens

        return {
            "requests_in_window": requests_in_window,
            "burst_tokens": burst_tokens,
            "window_start": window_start,
            "limits": self.limits,
        }

    def get_global_stats(self) -> Dict[str, Any]:
        """Aggregate counts across every tracked caller."""
        now = self._clock()
        window_start = now - WINDOW_SECONDS

        active_clients = 0
        total_requests = 0
        tracked = 0
        for _, state in self._registry.snapshot():
            with state.lock:
                if state.removed:
                    continue
                tracked += 1
                in_window = state.requests_since(window_start)
            if in_window > 0:
                active_clients += 1
                total_requests += in_window

        return {
            "active_clients": active_clients,
            "total_requests_in_window": total_requests,
            "total_tracked_clients": tracked,
            "window_start": window_start,
            "limits": self.limits,
        }

    def reset_client(self, client_id: str) -> bool:
        """Forget a caller's state. Returns whether an entry existed."""
        removed = self._registry.remove(client_id)
        if removed:
            logger.info("Rate limit state reset", client_id=client_id)
        return removed

    def sweep(self) -> List[str]:
        """Drop callers with no request newer than ``idle_timeout`` seconds.

        Returns the ids that were removed.
        """
        cutoff = self._clock() - self.idle_timeout
        removed = [
            client_id
            for client_id, _ in self._registry.snapshot()
            if self._registry.remove(client_id, lambda s: s.requests_since(cutoff) == 0)
        ]
        if removed:
            logger.debug("Swept idle rate limit clients", count=len(removed))
        return removed


async def sweep_periodically(controller: AdmissionController, stop: asyncio.Event,
                             interval: float = DEFAULT_CLEANUP_INTERVAL) -> None:
    """Call controller.sweep() every ``interval`` seconds until ``stop`` is set."""
    logger.info("Starting rate limit sweeper", interval=interval)
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            try:
                controller.sweep()
            except Exception:
                logger.exception("Rate limit sweep failed")
    logger.info("Rate limit sweeper stopped")
