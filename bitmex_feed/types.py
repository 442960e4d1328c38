"""
Shared types, enums, and data structures for the feed client.

Records handed to subscribers are frozen dataclasses; mutable book state
stays inside the order book engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union


class ClientState(str, Enum):
    """State machine for BitmexFeedClient."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class ConnectionState(str, Enum):
    """State machine for the streaming session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class FrameKind(str, Enum):
    """Classification of an inbound text frame."""

    WELCOME = "welcome"
    DATA = "data"
    ERROR = "error"
    OTHER = "other"


class Table(str, Enum):
    """BitMEX realtime tables handled by the client."""

    ORDER_BOOK_10 = "orderBook10"
    ORDER_BOOK_25 = "orderBook25"
    TRADE = "trade"


class Action(str, Enum):
    """Data envelope actions."""

    PARTIAL = "partial"
    UPDATE = "update"
    INSERT = "insert"
    DELETE = "delete"


# --- Market data ---


@dataclass(frozen=True, slots=True)
class PriceLevel:
    """Single depth rank. None means the field was never set by the feed."""

    price: Optional[Decimal] = None
    quantity: Optional[int] = None

    @property
    def is_set(self) -> bool:
        return self.price is not None and self.quantity is not None


@dataclass(frozen=True, slots=True)
class OrderBookSnapshot:
    """Order book copy handed to subscribers, indexed by level (0 = best)."""

    symbol: str
    bids: tuple[PriceLevel, ...] = ()
    asks: tuple[PriceLevel, ...] = ()
    timestamp: Optional[datetime] = None

    @property
    def best_bid(self) -> Optional[Decimal]:
        """Level-0 bid price, or None if empty/unset."""
        return self.bids[0].price if self.bids else None

    @property
    def best_ask(self) -> Optional[Decimal]:
        """Level-0 ask price, or None if empty/unset."""
        return self.asks[0].price if self.asks else None

    @property
    def mid_price(self) -> Optional[Decimal]:
        """Mid price, or None if either level-0 price is missing."""
        bid, ask = self.best_bid, self.best_ask
        if bid is None or ask is None:
            return None
        return (bid + ask) / 2

    @property
    def spread(self) -> Optional[Decimal]:
        """Absolute spread, or None if either level-0 price is missing."""
        bid, ask = self.best_bid, self.best_ask
        if bid is None or ask is None:
            return None
        return ask - bid


@dataclass(frozen=True, slots=True)
class TradeEvent:
    """One exchange print."""

    symbol: str
    price: Decimal
    size: Decimal
    timestamp: datetime
    side: Optional[str] = None
    trade_id: Optional[str] = None


@dataclass(frozen=True, slots=True)
class DataEnvelope:
    """Decoded data frame; lives only for the handling of one frame."""

    table: str
    action: str
    data: list[Any]
    recv_ts: int  # Local receive timestamp (Unix ms)


# --- Notifications ---


@dataclass(frozen=True, slots=True)
class BookUpdate:
    snapshot: OrderBookSnapshot


@dataclass(frozen=True, slots=True)
class Trade:
    event: TradeEvent


@dataclass(frozen=True, slots=True)
class FeedStale:
    """No book or trade traffic for a symbol for longer than the threshold."""

    symbol: str
    silent_for_s: float


Notification = Union[BookUpdate, Trade, FeedStale]


# --- Health / metrics ---


@dataclass
class SessionMetrics:
    """Counters for the streaming session."""

    connects: int = 0
    reconnects: int = 0
    welcomes: int = 0
    frames_received: int = 0
    frames_sent: int = 0
    errors: int = 0
    connected_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class ConnectionHealth:
    """Health snapshot for the streaming session."""

    state: ConnectionState
    url: str
    connected_since: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    reconnect_count: int = 0
    message_count: int = 0
    error_count: int = 0
    last_error: Optional[str] = None
    pending_snapshots: list[str] = field(default_factory=list)

    @property
    def is_healthy(self) -> bool:
        return self.state == ConnectionState.OPEN

    @property
    def seconds_since_message(self) -> Optional[float]:
        """Seconds since last message, or None if no messages yet."""
        if self.last_message_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.last_message_at).total_seconds()
