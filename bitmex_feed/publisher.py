"""
Notification publisher.

Handlers enqueue typed notifications (BookUpdate, Trade, FeedStale) on a
bounded asyncio.Queue; a single dispatch loop drains it and calls every
registered observer in registration order. Order of delivery equals order
of publication.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from bitmex_feed.config import PublisherConfig
from bitmex_feed.types import (
    BookUpdate,
    FeedStale,
    Notification,
    OrderBookSnapshot,
    Trade,
    TradeEvent,
)

logger = logging.getLogger(__name__)


class FeedObserver:
    """Subscriber interface. Override the callbacks you need."""

    async def on_book_update(self, snapshot: OrderBookSnapshot) -> None:
        pass

    async def on_trade(self, trade: TradeEvent) -> None:
        pass

    async def on_stale(self, stale: FeedStale) -> None:
        pass


@dataclass
class PublisherStats:
    enqueued: int = 0
    delivered: int = 0
    dropped: int = 0
    observer_errors: int = 0
    max_queue_depth: int = 0


class NotificationPublisher:
    """
    Bounded notification queue with a single consumer loop.

    When the queue is full the policy decides what happens. "block" (the
    default) makes the producer wait for room, so nothing is lost and a slow
    observer slows the stream down. "oldest" evicts the head of the queue and
    "newest" rejects the incoming notification; both can lose Trade events
    and are counted in `stats.dropped`.
    """

    def __init__(self, config: Optional[PublisherConfig] = None) -> None:
        self._config = config or PublisherConfig()
        self._queue: asyncio.Queue[Optional[Notification]] = asyncio.Queue(
            maxsize=self._config.max_queue_size
        )
        self._observers: list[FeedObserver] = []
        self._task: Optional[asyncio.Task[None]] = None
        self._stats = PublisherStats()

    @property
    def stats(self) -> PublisherStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_observer(self, observer: FeedObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: FeedObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    # --- Producer side ---

    async def publish(self, notification: Notification) -> bool:
        """Enqueue a notification. Returns False if it was dropped."""
        if self._config.drop_policy == "block":
            await self._queue.put(notification)
            self._record_enqueue()
            return True

        if self._queue.full():
            if self._config.drop_policy == "newest":
                self._stats.dropped += 1
                logger.warning(f"Queue full, dropping {type(notification).__name__}")
                return False
            self._evict_oldest()

        self._queue.put_nowait(notification)
        self._record_enqueue()
        return True

    def _record_enqueue(self) -> None:
        self._stats.enqueued += 1
        self._stats.max_queue_depth = max(self._stats.max_queue_depth, self._queue.qsize())

    def _evict_oldest(self) -> None:
        try:
            evicted = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return
        self._queue.task_done()
        if evicted is not None:
            self._stats.dropped += 1
            logger.warning(f"Queue full, evicted {type(evicted).__name__}")

    async def publish_book(self, snapshot: OrderBookSnapshot) -> None:
        await self.publish(BookUpdate(snapshot))

    async def publish_trade(self, trade: TradeEvent) -> None:
        await self.publish(Trade(trade))

    async def publish_stale(self, stale: FeedStale) -> None:
        await self.publish(stale)

    # --- Consumer side ---

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._dispatch_loop(), name="notification_dispatch")

    async def stop(self) -> None:
        """Deliver what is queued, then stop the dispatch loop."""
        if not self.is_running:
            return
        # The loop is draining, so this cannot block for long
        await self._queue.put(None)
        assert self._task is not None
        await self._task
        self._task = None

    async def wait_until_idle(self) -> None:
        """Wait until every enqueued notification has been delivered."""
        await self._queue.join()

    async def _dispatch_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                await self._deliver(item)
            finally:
                self._queue.task_done()

    async def _deliver(self, item: Notification) -> None:
        for observer in list(self._observers):
            try:
                if isinstance(item, BookUpdate):
                    await observer.on_book_update(item.snapshot)
                elif isinstance(item, Trade):
                    await observer.on_trade(item.event)
                elif isinstance(item, FeedStale):
                    await observer.on_stale(item)
            except Exception as e:
                self._stats.observer_errors += 1
                logger.error(
                    f"Observer {type(observer).__name__} failed on {type(item).__name__}: {e}",
                    exc_info=True,
                )
        self._stats.delivered += 1
