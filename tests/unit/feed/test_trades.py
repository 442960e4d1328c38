"""
Unit tests for the trade relay.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from bitmex_feed.errors import DecodeError
from bitmex_feed.trades import TradeRelay, decode_trade
from bitmex_feed.types import DataEnvelope, TradeEvent


def trade(price: float, size: int = 100, **extra: Any) -> dict[str, Any]:
    return {
        "timestamp": "2017-01-01T00:00:00.000Z",
        "symbol": "XBTUSD",
        "side": "Buy",
        "size": size,
        "price": price,
        **extra,
    }


def trade_envelope(*records: dict[str, Any], action: str = "insert") -> DataEnvelope:
    return DataEnvelope(table="trade", action=action, data=list(records), recv_ts=0)


class TestDecodeTrade:
    """Tests for decode_trade."""

    def test_decode(self) -> None:
        event = decode_trade(trade(9000.5, trdMatchID="abc"))

        assert event == TradeEvent(
            symbol="XBTUSD",
            price=Decimal("9000.5"),
            size=Decimal("100"),
            timestamp=datetime(2017, 1, 1, tzinfo=timezone.utc),
            side="Buy",
            trade_id="abc",
        )

    def test_optional_fields(self) -> None:
        record = trade(1.0)
        del record["side"]
        event = decode_trade(record)

        assert event.side is None
        assert event.trade_id is None

    def test_missing_timestamp(self) -> None:
        record = trade(1.0)
        del record["timestamp"]
        with pytest.raises(DecodeError):
            decode_trade(record)

    def test_missing_price(self) -> None:
        record = trade(1.0)
        del record["price"]
        with pytest.raises(DecodeError):
            decode_trade(record)


class TestTradeRelay:
    """Tests for TradeRelay."""

    @pytest.fixture
    def received(self) -> list[TradeEvent]:
        return []

    @pytest.fixture
    def relay(self, received: list[TradeEvent]) -> TradeRelay:
        async def on_event(event: TradeEvent) -> None:
            received.append(event)

        return TradeRelay(on_event)

    @pytest.mark.asyncio
    async def test_order_preserved(self, relay: TradeRelay, received: list[TradeEvent]) -> None:
        """Test that events are emitted in record order."""
        await relay.handle(trade_envelope(trade(1.0), trade(2.0), trade(3.0)))

        assert [e.price for e in received] == [Decimal("1.0"), Decimal("2.0"), Decimal("3.0")]
        assert relay.stats.events_emitted == 3

    @pytest.mark.asyncio
    async def test_duplicates_pass_through(
        self, relay: TradeRelay, received: list[TradeEvent]
    ) -> None:
        """Test that identical prints are not de-duplicated."""
        record = trade(9000.0, trdMatchID="same")
        await relay.handle(trade_envelope(record, record))

        assert len(received) == 2
        assert received[0] == received[1]

    @pytest.mark.asyncio
    async def test_partial_action_relayed(
        self, relay: TradeRelay, received: list[TradeEvent]
    ) -> None:
        await relay.handle(trade_envelope(trade(1.0), action="partial"))
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_bad_record_emits_nothing(
        self, relay: TradeRelay, received: list[TradeEvent]
    ) -> None:
        """Test that one malformed record drops the whole frame."""
        await relay.handle(trade_envelope(trade(1.0), {"symbol": "XBTUSD"}))

        assert received == []
        assert relay.stats.decode_errors == 1

    @pytest.mark.asyncio
    async def test_empty_frame_skipped(self, relay: TradeRelay) -> None:
        await relay.handle(trade_envelope())
        assert relay.stats.frames_skipped == 1

    @pytest.mark.asyncio
    async def test_out_of_range_timestamp_counted(
        self, relay: TradeRelay, received: list[TradeEvent]
    ) -> None:
        """Test that an unrepresentable epoch is a decode error, not a crash."""
        await relay.handle(trade_envelope(trade(1.0) | {"timestamp": 10**20}))

        assert received == []
        assert relay.stats.decode_errors == 1
