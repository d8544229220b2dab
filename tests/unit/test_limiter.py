"""Unit tests for the per-caller admission controller."""

import asyncio
import threading
import pytest
from unittest.mock import Mock

from src.config import RateLimitConfig
from src.errors import RateLimitExceeded
from src.ratelimit.limiter import (
    AdmissionController,
    AdmissionReason,
    ClientRegistry,
    ClientState,
    sweep_periodically,
)


class FakeClock:
    """Settable wall clock in epoch seconds."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestCheckLimit:
    """Test admission decisions."""

    def test_first_request_allowed(self, clock):
        """Test a caller's first request gets full credit."""
        limiter = AdmissionController(requests_per_minute=60, burst=10, clock=clock)

        decision = limiter.check_limit("client-a")

        assert decision.allowed
        assert decision.reason == AdmissionReason.OK
        assert decision.remaining == 9
        assert decision.reset_time == clock.now
        assert decision.retry_after_seconds is None

    def test_burst_exhausted(self, clock):
        """Test burst + 1 requests inside ten seconds."""
        limiter = AdmissionController(requests_per_minute=60, burst=5, clock=clock)

        decisions = []
        for _ in range(6):
            decisions.append(limiter.check_limit("client-a"))
            clock.advance(1)

        assert all(d.allowed for d in decisions[:5])
        denied = decisions[5]
        assert not denied.allowed
        assert denied.reason == AdmissionReason.BURST_EXHAUSTED
        assert denied.remaining == 0
        assert denied.retry_after_seconds == 10
        assert denied.reset_time == pytest.approx(clock.now - 1 + 10)

    def test_window_exhausted(self, clock):
        """Test the window limit with spare burst credit."""
        limiter = AdmissionController(requests_per_minute=2, burst=5, clock=clock)
        first_at = clock.now

        first = limiter.check_limit("client-a")
        clock.advance(1)
        second = limiter.check_limit("client-a")
        clock.advance(1)
        third = limiter.check_limit("client-a")

        assert first.allowed
        assert second.allowed
        assert not third.allowed
        assert third.reason == AdmissionReason.WINDOW_EXHAUSTED
        assert third.remaining == 0
        assert third.reset_time == pytest.approx(first_at + 60)
        assert third.retry_after_seconds == 58

    def test_burst_checked_before_window(self, clock):
        """Test burst denial wins when both limits are exhausted."""
        limiter = AdmissionController(requests_per_minute=2, burst=2, clock=clock)

        limiter.check_limit("client-a")
        limiter.check_limit("client-a")
        decision = limiter.check_limit("client-a")

        assert decision.reason == AdmissionReason.BURST_EXHAUSTED

    def test_spaced_requests_never_exhaust_burst(self, clock):
        """Test requests ten seconds apart keep tokens topped up."""
        limiter = AdmissionController(requests_per_minute=1000, burst=3, clock=clock)

        for _ in range(30):
            decision = limiter.check_limit("client-a")
            assert decision.allowed
            assert limiter.get_status("client-a")["burst_tokens"] == 2
            clock.advance(10)

    def test_tokens_refill_over_time(self, clock):
        """Test one token returns per ten idle seconds."""
        limiter = AdmissionController(requests_per_minute=60, burst=2, clock=clock)

        limiter.check_limit("client-a")
        limiter.check_limit("client-a")
        assert not limiter.check_limit("client-a").allowed

        clock.advance(10)
        assert limiter.check_limit("client-a").allowed

    def test_window_slides(self, clock):
        """Test requests older than sixty seconds stop counting."""
        limiter = AdmissionController(requests_per_minute=1, burst=5, clock=clock)

        assert limiter.check_limit("client-a").allowed
        clock.advance(30)
        assert not limiter.check_limit("client-a").allowed
        clock.advance(30)
        assert limiter.check_limit("client-a").allowed

    def test_remaining_is_min_of_window_and_burst(self, clock):
        """Test remaining reflects the tighter of the two limits."""
        limiter = AdmissionController(requests_per_minute=3, burst=10, clock=clock)

        assert limiter.check_limit("client-a").remaining == 2
        assert limiter.check_limit("client-a").remaining == 1

    def test_callers_are_independent(self, clock):
        """Test one caller's usage does not affect another."""
        limiter = AdmissionController(requests_per_minute=1, burst=1, clock=clock)

        assert limiter.check_limit("client-a").allowed
        assert not limiter.check_limit("client-a").allowed
        assert limiter.check_limit("client-b").allowed

    def test_rejects_invalid_limits(self):
        with pytest.raises(ValueError):
            AdmissionController(requests_per_minute=0)
        with pytest.raises(ValueError):
            AdmissionController(burst=0)

    def test_from_config(self, clock):
        limiter = AdmissionController.from_config(
            RateLimitConfig(requests_per_minute=7, burst=3, idle_timeout=120), clock=clock
        )

        assert limiter.requests_per_minute == 7
        assert limiter.burst == 3
        assert limiter.idle_timeout == 120

    def test_decision_to_dict(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=1, clock=clock)

        allowed = limiter.check_limit("client-a").to_dict()
        denied = limiter.check_limit("client-a").to_dict()

        assert allowed["reason"] == "ok"
        assert "retry_after" not in allowed
        assert denied["reason"] == "burst_exhausted"
        assert denied["retry_after"] == 10


class TestEnforce:
    """Test the raising wrapper around check_limit."""

    def test_enforce_raises_when_denied(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=1, clock=clock)
        limiter.enforce("client-a")

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.enforce("client-a")

        assert exc_info.value.reason == "burst_exhausted"
        assert exc_info.value.retry_after_seconds == 10
        assert exc_info.value.remaining == 0

    def test_enforce_returns_decision_when_allowed(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=2, clock=clock)

        decision = limiter.enforce("client-a")

        assert decision.allowed


class TestStatusAndStats:
    """Test the read-only views."""

    def test_status_for_unknown_client(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=10, clock=clock)

        status = limiter.get_status("nobody")

        assert status["requests_in_window"] == 0
        assert status["burst_tokens"] == 10
        assert status["window_start"] == clock.now - 60
        assert status["limits"] == {"requests_per_minute": 60, "burst": 10}
        assert "nobody" not in limiter._registry

    def test_status_does_not_mutate(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=10, clock=clock)
        limiter.check_limit("client-a")
        limiter.check_limit("client-a")

        clock.advance(61)
        status = limiter.get_status("client-a")

        assert status["requests_in_window"] == 0
        assert status["burst_tokens"] == 8
        state = limiter._registry._clients["client-a"]
        assert len(state.request_timestamps) == 2

    def test_global_stats(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=10, clock=clock)
        limiter.check_limit("client-a")
        limiter.check_limit("client-a")
        limiter.check_limit("client-b")
        clock.advance(61)
        limiter.check_limit("client-c")

        stats = limiter.get_global_stats()

        assert stats["active_clients"] == 1
        assert stats["total_requests_in_window"] == 1
        assert stats["total_tracked_clients"] == 3

    def test_reset_client(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=1, clock=clock)
        limiter.check_limit("client-a")

        assert limiter.reset_client("client-a") is True
        assert limiter.reset_client("client-a") is False
        assert limiter.check_limit("client-a").allowed


class TestSweep:
    """Test idle client cleanup."""

    def test_sweep_removes_idle_clients(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=5, clock=clock)
        limiter.check_limit("idle")
        clock.advance(200)
        limiter.check_limit("active")
        clock.advance(101)

        removed = limiter.sweep()

        assert removed == ["idle"]
        assert "idle" not in limiter._registry
        assert "active" in limiter._registry

    def test_swept_client_starts_fresh(self, clock):
        """Test a purged caller behaves like a first-time caller."""
        limiter = AdmissionController(requests_per_minute=60, burst=3, clock=clock)
        for _ in range(3):
            limiter.check_limit("client-a")
        clock.advance(301)
        limiter.sweep()

        decision = limiter.check_limit("client-a")

        assert decision.allowed
        assert decision.remaining == 2
        assert limiter.get_status("client-a")["requests_in_window"] == 1

    def test_sweep_keeps_recent_clients(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=5, clock=clock)
        limiter.check_limit("client-a")
        clock.advance(299)

        assert limiter.sweep() == []

    @pytest.mark.asyncio
    async def test_sweep_periodically(self, clock):
        limiter = AdmissionController(requests_per_minute=60, burst=5, clock=clock)
        limiter.check_limit("client-a")
        clock.advance(301)

        stop = asyncio.Event()
        task = asyncio.create_task(sweep_periodically(limiter, stop, interval=0.01))
        for _ in range(100):
            if "client-a" not in limiter._registry:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert "client-a" not in limiter._registry

    @pytest.mark.asyncio
    async def test_sweep_periodically_survives_failed_sweep(self):
        """Test a sweep that raises does not stop later sweeps."""
        limiter = Mock()
        limiter.sweep.side_effect = [RuntimeError("boom"), [], []]

        stop = asyncio.Event()
        task = asyncio.create_task(sweep_periodically(limiter, stop, interval=0.01))
        for _ in range(100):
            if limiter.sweep.call_count >= 2:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert limiter.sweep.call_count >= 2
        assert task.exception() is None


class TestConcurrency:
    """Test per-caller serialization under threads."""

    def test_concurrent_checks_respect_limit(self):
        limiter = AdmissionController(requests_per_minute=1000, burst=5)
        barrier = threading.Barrier(20)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            decision = limiter.check_limit("shared")
            with results_lock:
                results.append(decision.allowed)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 5

    def test_other_callers_not_blocked_by_held_entry(self):
        registry = ClientRegistry(lambda: ClientState(burst_tokens=1))

        with registry.locked("busy") as busy:
            assert busy is not None
            done = threading.Event()

            def other():
                with registry.locked("other") as state:
                    assert state is not None
                done.set()

            thread = threading.Thread(target=other)
            thread.start()
            assert done.wait(timeout=2)
            thread.join()

    def test_removed_entry_is_recreated(self):
        registry = ClientRegistry(lambda: ClientState(burst_tokens=1))
        with registry.locked("client-a") as state:
            original = state

        assert registry.remove("client-a") is True
        assert original.removed

        with registry.locked("client-a") as state:
            assert state is not original
            assert not state.removed
