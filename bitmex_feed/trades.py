"""Trade relay: one TradeEvent per exchange print, in received order."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

from bitmex_feed.decoding import require_record, require_str, to_decimal, to_timestamp
from bitmex_feed.errors import DecodeError
from bitmex_feed.handlers import TableHandler
from bitmex_feed.types import DataEnvelope, TradeEvent


def decode_trade(raw: Any) -> TradeEvent:
    """
    Decode a trade record.

    BitMEX trade format:
    {
        "timestamp": "2017-01-01T00:00:00.000Z",
        "symbol": "XBTUSD",
        "side": "Buy",
        "size": 100,
        "price": 9000.5,
        "trdMatchID": "..."
    }
    """
    record = require_record(raw, "trade")
    timestamp = to_timestamp(record.get("timestamp"))
    if timestamp is None:
        raise DecodeError("Missing 'timestamp' in trade record", expected_type="trade")

    side = record.get("side")
    trade_id = record.get("trdMatchID")
    return TradeEvent(
        symbol=require_str(record, "symbol", "trade"),
        price=to_decimal(record.get("price"), "price"),
        size=to_decimal(record.get("size"), "size"),
        timestamp=timestamp,
        side=side if isinstance(side, str) else None,
        trade_id=trade_id if isinstance(trade_id, str) else None,
    )


class TradeRelay(TableHandler[TradeEvent]):
    """
    Handler for the trade table.

    No aggregation and no de-duplication: duplicate prints from the feed
    pass through as distinct events.
    """

    def __init__(self, on_event: Callable[[TradeEvent], Awaitable[None]]) -> None:
        super().__init__(on_event, name="TradeRelay")

    def _process(self, envelope: DataEnvelope) -> list[TradeEvent]:
        return [decode_trade(raw) for raw in envelope.data]

    def _get_symbol(self, event: TradeEvent) -> Optional[str]:
        return event.symbol
