"""
Feed client - top-level orchestration.

Wires the streaming components together:
- SessionManager for the WebSocket lifecycle and subscriptions
- MessageDispatcher for frame classification and routing
- OrderBookEngine + table handlers for book reconstruction
- TradeRelay for trade prints
- NotificationPublisher for delivery to observers
- HealthMonitor for staleness detection
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from types import TracebackType
from typing import Any, Optional

from bitmex_feed.book import OrderBookEngine, PartialPatchHandler, SnapshotReplaceHandler
from bitmex_feed.config import FeedConfig
from bitmex_feed.dispatcher import MessageDispatcher
from bitmex_feed.errors import FeedError
from bitmex_feed.health import HealthMonitor
from bitmex_feed.publisher import FeedObserver, NotificationPublisher
from bitmex_feed.session import SessionManager, TransportFactory
from bitmex_feed.trades import TradeRelay
from bitmex_feed.types import (
    ClientState,
    ConnectionHealth,
    OrderBookSnapshot,
    Table,
    TradeEvent,
)

logger = logging.getLogger(__name__)


class BitmexFeedClient:
    """
    Streaming market-data client for BitMEX.

    State Machine:
        [STOPPED] --start()--> [STARTING] --success--> [RUNNING]
                                    |                       |
                                [FAILED]              [STOPPING] --> [STOPPED]

    Usage:
        class Printer(FeedObserver):
            async def on_trade(self, trade: TradeEvent) -> None:
                print(trade)

        client = BitmexFeedClient(FeedConfig())
        client.add_observer(Printer())
        async with client:
            await client.request_snapshot("XBTUSD")
            ...
    """

    def __init__(
        self,
        config: Optional[FeedConfig] = None,
        transport_factory: Optional[TransportFactory] = None,
        name: str = "bitmex_feed",
    ) -> None:
        self._config = config or FeedConfig()
        self._name = name

        self._state = ClientState.STOPPED
        self._started_at: Optional[datetime] = None

        assert self._config.connection is not None
        self._engine = OrderBookEngine()
        self._publisher = NotificationPublisher(self._config.publisher)
        self._health = HealthMonitor(self._config.health, on_stale=self._publisher.publish_stale)

        self._session = SessionManager(
            self._config.connection,
            self._config.subscription,
            transport_factory=transport_factory,
            name=f"{name}_session",
        )
        self._dispatcher = MessageDispatcher(
            on_welcome=self._session.on_welcome,
            on_protocol_error=self._session.on_protocol_error,
        )
        self._session.set_frame_handler(self._dispatcher.dispatch)

        self._snapshot_handler = SnapshotReplaceHandler(self._engine, on_event=self._on_book)
        self._partial_handler = PartialPatchHandler(self._engine, on_event=self._on_book)
        self._trade_relay = TradeRelay(on_event=self._on_trade)

        self._dispatcher.register_handler(Table.ORDER_BOOK_10.value, self._snapshot_handler.handle)
        self._dispatcher.register_handler(Table.ORDER_BOOK_25.value, self._partial_handler.handle)
        self._dispatcher.register_handler(Table.TRADE.value, self._trade_relay.handle)

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ClientState.RUNNING

    @property
    def config(self) -> FeedConfig:
        return self._config

    @property
    def session(self) -> SessionManager:
        return self._session

    @property
    def dispatcher(self) -> MessageDispatcher:
        return self._dispatcher

    @property
    def publisher(self) -> NotificationPublisher:
        return self._publisher

    def add_observer(self, observer: FeedObserver) -> None:
        self._publisher.add_observer(observer)

    def remove_observer(self, observer: FeedObserver) -> None:
        self._publisher.remove_observer(observer)

    # --- Lifecycle ---

    async def start(self) -> None:
        """
        Start delivery and connect.

        Raises:
            FeedError: If startup fails
        """
        if self._state not in (ClientState.STOPPED, ClientState.FAILED):
            logger.warning(f"[{self._name}] Cannot start from state: {self._state.value}")
            return

        logger.info(f"[{self._name}] Starting feed client...")
        self._state = ClientState.STARTING

        try:
            await self._publisher.start()
            if self._config.health.enabled:
                await self._health.start()
            await self._session.connect()
        except Exception as e:
            self._state = ClientState.FAILED
            logger.error(f"[{self._name}] Failed to start: {e}")
            await self._cleanup()
            raise FeedError(
                f"Failed to start feed client: {e}",
                component="BitmexFeedClient",
            ) from e

        self._state = ClientState.RUNNING
        self._started_at = datetime.now(timezone.utc)
        logger.info(f"[{self._name}] Feed client started")

    async def stop(self) -> None:
        """Shut the session down and drain pending notifications."""
        if self._state in (ClientState.STOPPED, ClientState.STOPPING):
            return

        logger.info(f"[{self._name}] Stopping feed client...")
        self._state = ClientState.STOPPING
        await self._cleanup()
        self._state = ClientState.STOPPED
        logger.info(f"[{self._name}] Feed client stopped")

    async def _cleanup(self) -> None:
        try:
            await self._session.shutdown()
        except Exception as e:
            logger.warning(f"[{self._name}] Error closing session: {e}")

        try:
            await self._health.stop()
        except Exception as e:
            logger.warning(f"[{self._name}] Error stopping health monitor: {e}")

        try:
            await self._publisher.stop()
        except Exception as e:
            logger.warning(f"[{self._name}] Error stopping publisher: {e}")

    async def __aenter__(self) -> BitmexFeedClient:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        await self.stop()

    # --- Requests ---

    async def request_snapshot(self, symbol: str) -> None:
        """Request an orderBook25 snapshot for symbol (queued until welcomed)."""
        await self._session.request_snapshot(symbol)

    def get_book(self, symbol: str) -> Optional[OrderBookSnapshot]:
        """Copy of the current book for symbol, or None if never seen."""
        return self._engine.get_snapshot(symbol)

    # --- Handler callbacks ---

    async def _on_book(self, snapshot: OrderBookSnapshot) -> None:
        self._health.record_message(snapshot.symbol)
        await self._publisher.publish_book(snapshot)

    async def _on_trade(self, trade: TradeEvent) -> None:
        self._health.record_message(trade.symbol)
        await self._publisher.publish_trade(trade)

    # --- Introspection ---

    def get_health(self) -> ConnectionHealth:
        return self._session.get_health()

    def get_stats(self) -> dict[str, Any]:
        dispatcher = self._dispatcher.stats
        publisher = self._publisher.stats
        return {
            "state": self._state.value,
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "connection": self._session.state.value,
            "books": self._engine.store.symbols(),
            "dispatcher": {
                "total_frames": dispatcher.total_frames,
                "routed_frames": dispatcher.routed_frames,
                "ignored_frames": dispatcher.ignored_frames,
                "decode_errors": dispatcher.decode_errors,
                "by_table": dict(dispatcher.by_table),
            },
            "handlers": {
                h.name: {
                    "processed": h.stats.frames_processed,
                    "skipped": h.stats.frames_skipped,
                    "errors": h.stats.decode_errors,
                }
                for h in (self._snapshot_handler, self._partial_handler, self._trade_relay)
            },
            "publisher": {
                "enqueued": publisher.enqueued,
                "delivered": publisher.delivered,
                "dropped": publisher.dropped,
            },
            "stale_symbols": self._health.stale_symbols(),
        }
