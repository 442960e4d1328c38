"""
Feed staleness monitor.

Tracks the last book/trade notification per symbol and reports a FeedStale
once when a symbol goes quiet for longer than the threshold (for example
during a reconnect gap). The flag clears on the next message.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from bitmex_feed.config import HealthConfig
from bitmex_feed.types import FeedStale

logger = logging.getLogger(__name__)


@dataclass
class FeedTracker:
    """Tracking state for one symbol."""

    symbol: str
    last_message_at: Optional[float] = None  # clock time
    message_count: int = 0
    stale_reported: bool = False

    def record_message(self, now: float) -> None:
        self.last_message_at = now
        self.message_count += 1
        self.stale_reported = False

    def silent_for(self, now: float) -> Optional[float]:
        if self.last_message_at is None:
            return None
        return now - self.last_message_at


class HealthMonitor:
    """
    Periodic staleness check over all symbols seen so far.

    Symbols that never produced a message are not reported.
    """

    def __init__(
        self,
        config: HealthConfig,
        on_stale: Callable[[FeedStale], Awaitable[None]],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._on_stale = on_stale
        self._clock = clock
        self._feeds: dict[str, FeedTracker] = {}
        self._monitor_task: Optional[asyncio.Task[None]] = None

    @property
    def feeds(self) -> dict[str, FeedTracker]:
        return self._feeds

    def record_message(self, symbol: str) -> None:
        tracker = self._feeds.get(symbol)
        if tracker is None:
            tracker = FeedTracker(symbol=symbol)
            self._feeds[symbol] = tracker
        tracker.record_message(self._clock())

    def stale_symbols(self) -> list[str]:
        now = self._clock()
        threshold = self._config.staleness_threshold_s
        return [
            t.symbol
            for t in self._feeds.values()
            if (silent := t.silent_for(now)) is not None and silent > threshold
        ]

    async def check(self) -> list[FeedStale]:
        """Report symbols that became stale since the last check."""
        now = self._clock()
        reported: list[FeedStale] = []
        for tracker in self._feeds.values():
            silent = tracker.silent_for(now)
            if silent is None or tracker.stale_reported:
                continue
            if silent > self._config.staleness_threshold_s:
                tracker.stale_reported = True
                stale = FeedStale(symbol=tracker.symbol, silent_for_s=silent)
                logger.warning(f"Feed became stale: {tracker.symbol} ({silent:.1f}s)")
                reported.append(stale)
                try:
                    await self._on_stale(stale)
                except Exception as e:
                    logger.error(f"Stale feed callback error: {e}")
        return reported

    async def start(self) -> None:
        if self._monitor_task is not None:
            logger.warning("Health monitor already running")
            return
        self._monitor_task = asyncio.create_task(self._monitor_loop(), name="health_monitor")
        logger.info("Health monitor started")

    async def stop(self) -> None:
        if self._monitor_task:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
            logger.info("Health monitor stopped")

    async def _monitor_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self._config.check_interval_s)
                await self.check()
        except asyncio.CancelledError:
            logger.debug("Health monitor loop cancelled")
            raise
