"""
Order book reconstruction.

Two algorithms, selected by table:

- orderBook10: Top-N snapshot replace. Each frame carries one record with
  the full bid/ask arrays; prior state for the symbol is discarded.
- orderBook25: Indexed partial patch. Each frame carries per-level records
  with optional bidPrice/bidSize/askPrice/askSize fields that are merged
  into a per-symbol array which only ever grows.

Levels are kept in the order asserted by the feed (0 = best); the engine
never re-sorts by price.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterator, Optional

from bitmex_feed.decoding import (
    require_record,
    require_str,
    to_decimal,
    to_int,
    to_timestamp,
)
from bitmex_feed.errors import DecodeError
from bitmex_feed.handlers import TableHandler
from bitmex_feed.types import Action, DataEnvelope, OrderBookSnapshot, PriceLevel

logger = logging.getLogger(__name__)

# Deepest level index + 1 published on the orderBook25 table
ORDER_BOOK_25_DEPTH = 25


# --- State ---


def _grow(levels: list[PriceLevel], level: int) -> None:
    """Extend levels with unset entries so that index `level` exists."""
    while len(levels) <= level:
        levels.append(PriceLevel())


@dataclass
class BookState:
    """Mutable per-symbol book. Only the engine holds a reference to it."""

    symbol: str
    bids: list[PriceLevel] = field(default_factory=list)
    asks: list[PriceLevel] = field(default_factory=list)
    timestamp: Optional[datetime] = None
    update_count: int = 0

    def patch_bid(
        self, level: int, price: Optional[Decimal], quantity: Optional[int]
    ) -> None:
        _grow(self.bids, level)
        self.bids[level] = _merge(self.bids[level], price, quantity)

    def patch_ask(
        self, level: int, price: Optional[Decimal], quantity: Optional[int]
    ) -> None:
        _grow(self.asks, level)
        self.asks[level] = _merge(self.asks[level], price, quantity)

    def to_snapshot(self) -> OrderBookSnapshot:
        return OrderBookSnapshot(
            symbol=self.symbol,
            bids=tuple(self.bids),
            asks=tuple(self.asks),
            timestamp=self.timestamp,
        )


def _merge(
    current: PriceLevel, price: Optional[Decimal], quantity: Optional[int]
) -> PriceLevel:
    # Absent fields keep the existing value
    if price is not None:
        current = replace(current, price=price)
    if quantity is not None:
        current = replace(current, quantity=quantity)
    return current


class BookStore:
    """Mapping from symbol to BookState, owned by one engine instance."""

    def __init__(self) -> None:
        self._books: dict[str, BookState] = {}

    def get(self, symbol: str) -> Optional[BookState]:
        return self._books.get(symbol)

    def get_or_create(self, symbol: str) -> BookState:
        state = self._books.get(symbol)
        if state is None:
            state = BookState(symbol=symbol)
            self._books[symbol] = state
            logger.debug(f"Created book state for {symbol}")
        return state

    def replace(self, state: BookState) -> None:
        self._books[state.symbol] = state

    def symbols(self) -> list[str]:
        return list(self._books)

    def clear(self) -> None:
        self._books.clear()

    def __contains__(self, symbol: object) -> bool:
        return symbol in self._books

    def __len__(self) -> int:
        return len(self._books)

    def __iter__(self) -> Iterator[str]:
        return iter(self._books)


# --- Record decoding ---


@dataclass(frozen=True, slots=True)
class LevelPatch:
    """One decoded orderBook25 record."""

    symbol: str
    level: int
    bid_price: Optional[Decimal] = None
    bid_size: Optional[int] = None
    ask_price: Optional[Decimal] = None
    ask_size: Optional[int] = None
    timestamp: Optional[datetime] = None

    @property
    def has_bid(self) -> bool:
        return self.bid_price is not None or self.bid_size is not None

    @property
    def has_ask(self) -> bool:
        return self.ask_price is not None or self.ask_size is not None


def _optional(record: dict[str, Any], key: str, convert: Callable[[Any, str], Any]) -> Any:
    value = record.get(key)
    if value is None:
        return None
    return convert(value, key)


def decode_level_patch(raw: Any) -> LevelPatch:
    """
    Decode an orderBook25 record.

    {"symbol": "XBTUSD", "level": 2, "bidSize": 10, "bidPrice": 9000,
     "askSize": null, "askPrice": null, "timestamp": "2017-01-01T00:00:00.000Z"}
    """
    record = require_record(raw, "orderBook25")
    level = record.get("level")
    # bool is an int subclass; strings and floats are not valid indexes
    if not isinstance(level, int) or isinstance(level, bool):
        raise DecodeError(
            f"Invalid 'level' in orderBook25 record: {level!r}",
            expected_type="orderBook25",
        )
    if not 0 <= level < ORDER_BOOK_25_DEPTH:
        raise DecodeError(
            f"Level out of range 0..{ORDER_BOOK_25_DEPTH - 1}: {level}",
            expected_type="orderBook25",
        )

    return LevelPatch(
        symbol=require_str(record, "symbol", "orderBook25"),
        level=level,
        bid_price=_optional(record, "bidPrice", to_decimal),
        bid_size=_optional(record, "bidSize", to_int),
        ask_price=_optional(record, "askPrice", to_decimal),
        ask_size=_optional(record, "askSize", to_int),
        timestamp=to_timestamp(record.get("timestamp")),
    )


def decode_price_levels(raw: Any, side: str) -> list[PriceLevel]:
    """Decode an array of [price, size] pairs."""
    if not isinstance(raw, list):
        raise DecodeError(f"'{side}' must be an array", expected_type="orderBook10")

    levels: list[PriceLevel] = []
    for pair in raw:
        if not isinstance(pair, (list, tuple)) or len(pair) < 2:
            raise DecodeError(
                f"Invalid {side} level: {pair!r}",
                expected_type="orderBook10",
            )
        levels.append(
            PriceLevel(
                price=to_decimal(pair[0], f"{side}_price"),
                quantity=to_int(pair[1], f"{side}_size"),
            )
        )
    return levels


# --- Engine ---


class OrderBookEngine:
    """
    Applies orderBook10 and orderBook25 frames to a BookStore.

    Every public method returns immutable snapshots; BookState objects never
    leave the engine.
    """

    def __init__(self, store: Optional[BookStore] = None) -> None:
        self._store = store if store is not None else BookStore()

    @property
    def store(self) -> BookStore:
        return self._store

    def get_snapshot(self, symbol: str) -> Optional[OrderBookSnapshot]:
        state = self._store.get(symbol)
        return state.to_snapshot() if state is not None else None

    def apply_snapshot(self, envelope: DataEnvelope) -> OrderBookSnapshot:
        """Top-N snapshot replace for one orderBook10 frame."""
        if len(envelope.data) != 1:
            raise DecodeError(
                f"orderBook10 frame must carry exactly one record, got {len(envelope.data)}",
                expected_type="orderBook10",
            )
        record = require_record(envelope.data[0], "orderBook10")

        state = BookState(
            symbol=require_str(record, "symbol", "orderBook10"),
            bids=decode_price_levels(record.get("bids"), "bids"),
            asks=decode_price_levels(record.get("asks"), "asks"),
            timestamp=to_timestamp(record.get("timestamp")),
            update_count=1,
        )
        self._store.replace(state)
        return state.to_snapshot()

    def apply_partial(self, envelope: DataEnvelope) -> list[OrderBookSnapshot]:
        """
        Indexed partial patch for one orderBook25 frame.

        Returns one snapshot per symbol touched by the frame, in first-seen
        order. Actions other than "partial" are validated and then ignored.
        """
        # Decode the whole batch before touching any state
        patches = [decode_level_patch(raw) for raw in envelope.data]

        if envelope.action != Action.PARTIAL.value:
            logger.debug(
                f"Ignoring orderBook25 '{envelope.action}' frame ({len(patches)} records)"
            )
            return []

        touched: dict[str, BookState] = {}
        for patch in patches:
            state = touched.get(patch.symbol)
            if state is None:
                state = self._store.get_or_create(patch.symbol)
                touched[patch.symbol] = state

            if patch.has_bid:
                state.patch_bid(patch.level, patch.bid_price, patch.bid_size)
            if patch.has_ask:
                state.patch_ask(patch.level, patch.ask_price, patch.ask_size)
            if patch.timestamp is not None:
                state.timestamp = patch.timestamp

        snapshots = []
        for state in touched.values():
            state.update_count += 1
            snapshots.append(state.to_snapshot())
        return snapshots


# --- Table handlers ---


class SnapshotReplaceHandler(TableHandler[OrderBookSnapshot]):
    """Handler for the orderBook10 table."""

    def __init__(
        self,
        engine: OrderBookEngine,
        on_event: Callable[[OrderBookSnapshot], Awaitable[None]],
    ) -> None:
        super().__init__(on_event, name="SnapshotReplaceHandler")
        self._engine = engine

    def _process(self, envelope: DataEnvelope) -> list[OrderBookSnapshot]:
        return [self._engine.apply_snapshot(envelope)]

    def _get_symbol(self, event: OrderBookSnapshot) -> Optional[str]:
        return event.symbol


class PartialPatchHandler(TableHandler[OrderBookSnapshot]):
    """Handler for the orderBook25 table."""

    def __init__(
        self,
        engine: OrderBookEngine,
        on_event: Callable[[OrderBookSnapshot], Awaitable[None]],
    ) -> None:
        super().__init__(on_event, name="PartialPatchHandler")
        self._engine = engine

    def _process(self, envelope: DataEnvelope) -> list[OrderBookSnapshot]:
        return self._engine.apply_partial(envelope)

    def _get_symbol(self, event: OrderBookSnapshot) -> Optional[str]:
        return event.symbol
