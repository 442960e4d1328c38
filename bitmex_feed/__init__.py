"""
BitMEX Streaming Market Data Client.

This package maintains a WebSocket session to the BitMEX realtime API,
reconstructs order books from the orderBook10 and orderBook25 tables, and
relays trade prints to registered observers. A small REST client covers
instrument lists and trade history.

Components:
- BitmexFeedClient: Top-level orchestration and lifecycle management
- SessionManager: WebSocket lifecycle, reconnection, snapshot-request queue
- MessageDispatcher: Frame classification and routing to table handlers
- OrderBookEngine: Snapshot replace (orderBook10) and partial patch (orderBook25)
- TradeRelay: Trade table handler
- NotificationPublisher: Ordered, bounded delivery to observers
- HealthMonitor: Per-symbol staleness detection
- BitmexRestClient: Instrument and trade history downloads

Usage:
    from bitmex_feed import BitmexFeedClient, FeedConfig, SubscriptionConfig

    config = FeedConfig(subscription=SubscriptionConfig(symbols=("XBTUSD",)))
    async with BitmexFeedClient(config) as client:
        client.add_observer(observer)
        ...
"""

from bitmex_feed.book import BookStore, OrderBookEngine
from bitmex_feed.client import BitmexFeedClient
from bitmex_feed.config import (
    ConnectionConfig,
    FeedConfig,
    HealthConfig,
    PublisherConfig,
    RestConfig,
    SubscriptionConfig,
    Venue,
    load_config,
)
from bitmex_feed.dispatcher import MessageDispatcher
from bitmex_feed.errors import (
    ConfigurationError,
    DecodeError,
    FeedError,
    ProtocolError,
    RestError,
    TransportError,
)
from bitmex_feed.publisher import FeedObserver, NotificationPublisher
from bitmex_feed.rest import BitmexRestClient, Instrument, TradeRecord
from bitmex_feed.session import SessionManager
from bitmex_feed.trades import TradeRelay
from bitmex_feed.types import (
    ClientState,
    ConnectionHealth,
    ConnectionState,
    FeedStale,
    OrderBookSnapshot,
    PriceLevel,
    TradeEvent,
)

__all__ = [
    # Main entry point
    "BitmexFeedClient",
    "FeedConfig",
    "load_config",
    # Components
    "SessionManager",
    "MessageDispatcher",
    "OrderBookEngine",
    "BookStore",
    "TradeRelay",
    "NotificationPublisher",
    "FeedObserver",
    "BitmexRestClient",
    # Config
    "ConnectionConfig",
    "SubscriptionConfig",
    "PublisherConfig",
    "HealthConfig",
    "RestConfig",
    "Venue",
    # Types
    "ClientState",
    "ConnectionState",
    "ConnectionHealth",
    "OrderBookSnapshot",
    "PriceLevel",
    "TradeEvent",
    "FeedStale",
    "Instrument",
    "TradeRecord",
    # Errors
    "FeedError",
    "DecodeError",
    "TransportError",
    "ProtocolError",
    "ConfigurationError",
    "RestError",
]
