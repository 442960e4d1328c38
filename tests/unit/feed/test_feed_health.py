"""
Unit tests for HealthMonitor.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from bitmex_feed.config import HealthConfig
from bitmex_feed.health import FeedTracker, HealthMonitor
from bitmex_feed.types import FeedStale


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestFeedTracker:
    """Tests for FeedTracker."""

    def test_record_message(self) -> None:
        """Test recording a message updates state."""
        tracker = FeedTracker(symbol="XBTUSD")
        assert tracker.silent_for(10.0) is None

        tracker.stale_reported = True
        tracker.record_message(5.0)

        assert tracker.message_count == 1
        assert tracker.silent_for(10.0) == 5.0
        assert not tracker.stale_reported


class TestHealthMonitor:
    """Tests for HealthMonitor."""

    @pytest.fixture
    def clock(self) -> FakeClock:
        return FakeClock()

    @pytest.fixture
    def on_stale(self) -> AsyncMock:
        return AsyncMock()

    @pytest.fixture
    def monitor(self, clock: FakeClock, on_stale: AsyncMock) -> HealthMonitor:
        return HealthMonitor(
            HealthConfig(staleness_threshold_s=30.0, check_interval_s=0.01),
            on_stale=on_stale,
            clock=clock,
        )

    @pytest.mark.asyncio
    async def test_fresh_feed_not_stale(
        self, monitor: HealthMonitor, clock: FakeClock, on_stale: AsyncMock
    ) -> None:
        monitor.record_message("XBTUSD")
        clock.now += 10

        assert await monitor.check() == []
        on_stale.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_reported_once(
        self, monitor: HealthMonitor, clock: FakeClock, on_stale: AsyncMock
    ) -> None:
        """Test that a stale symbol is reported once per quiet period."""
        monitor.record_message("XBTUSD")
        clock.now += 31

        reported = await monitor.check()
        assert reported == [FeedStale(symbol="XBTUSD", silent_for_s=31.0)]
        assert await monitor.check() == []
        on_stale.assert_awaited_once_with(reported[0])
        assert monitor.stale_symbols() == ["XBTUSD"]

    @pytest.mark.asyncio
    async def test_message_clears_stale(
        self, monitor: HealthMonitor, clock: FakeClock, on_stale: AsyncMock
    ) -> None:
        """Test that a new message re-arms stale reporting."""
        monitor.record_message("XBTUSD")
        clock.now += 31
        await monitor.check()

        monitor.record_message("XBTUSD")
        assert monitor.stale_symbols() == []
        clock.now += 31

        assert len(await monitor.check()) == 1
        assert on_stale.await_count == 2

    @pytest.mark.asyncio
    async def test_unseen_symbols_ignored(self, monitor: HealthMonitor, clock: FakeClock) -> None:
        clock.now += 1000
        assert await monitor.check() == []

    @pytest.mark.asyncio
    async def test_callback_error_contained(
        self, monitor: HealthMonitor, clock: FakeClock, on_stale: AsyncMock
    ) -> None:
        on_stale.side_effect = RuntimeError("boom")
        monitor.record_message("XBTUSD")
        clock.now += 31

        assert len(await monitor.check()) == 1

    @pytest.mark.asyncio
    async def test_monitor_loop(
        self, monitor: HealthMonitor, clock: FakeClock, on_stale: AsyncMock
    ) -> None:
        """Test that the background loop calls check periodically."""
        monitor.record_message("XBTUSD")
        clock.now += 31

        await monitor.start()
        for _ in range(100):
            if on_stale.await_count:
                break
            await asyncio.sleep(0.01)
        await monitor.stop()

        on_stale.assert_awaited_once()
