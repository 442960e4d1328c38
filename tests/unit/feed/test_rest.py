"""
Unit tests for BitmexRestClient.
"""

from datetime import datetime, timezone
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from bitmex_feed import rest
from bitmex_feed.config import RestConfig
from bitmex_feed.errors import RestError
from bitmex_feed.rest import BitmexRestClient


def response(status: int, payload: Any = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    return resp


INSTRUMENTS = [
    {"symbol": "XBTUSD", "rootSymbol": "XBT", "state": "Open", "typ": "FFWCSX"},
    {
        "symbol": "XBTZ17",
        "rootSymbol": "XBT",
        "state": "Open",
        "expiry": "2017-12-29T12:00:00.000Z",
    },
    {
        "symbol": "XBTH18",
        "rootSymbol": "XBT",
        "state": "Open",
        "expiry": "2018-03-30T12:00:00.000Z",
    },
    {"symbol": "ETHUSD", "rootSymbol": "ETH", "state": "Open", "tickSize": 0.05},
    {"symbol": "XBTU17", "rootSymbol": "XBT", "state": "Settled"},
]


class TestBitmexRestClient:
    """Tests for BitmexRestClient."""

    @pytest.fixture
    def session(self) -> MagicMock:
        session = MagicMock()
        session.headers = {}
        return session

    @pytest.fixture
    def client(self, session: MagicMock) -> BitmexRestClient:
        return BitmexRestClient(RestConfig(retries=3), session=session)

    @pytest.fixture(autouse=True)
    def no_sleep(self, monkeypatch: pytest.MonkeyPatch) -> list[float]:
        delays: list[float] = []
        monkeypatch.setattr(rest.time, "sleep", delays.append)
        return delays

    def test_user_agent(self, client: BitmexRestClient, session: MagicMock) -> None:
        assert session.headers["User-Agent"] == "bitmex-feed/0.1"

    def test_instruments_sorted(self, client: BitmexRestClient, session: MagicMock) -> None:
        """Test ordering by state, root symbol, then expiry descending."""
        session.get.return_value = response(200, INSTRUMENTS)

        result = client.instruments()

        assert [i.symbol for i in result] == ["ETHUSD", "XBTH18", "XBTZ17", "XBTUSD", "XBTU17"]
        assert result[0].tick_size is not None
        url = session.get.call_args.args[0]
        assert url == "https://www.bitmex.com/api/v1/instrument"

    def test_instruments_filtered_by_state(
        self, client: BitmexRestClient, session: MagicMock
    ) -> None:
        session.get.return_value = response(200, INSTRUMENTS)

        result = client.instruments(state="Settled")

        assert [i.symbol for i in result] == ["XBTU17"]

    def test_trades_params(self, client: BitmexRestClient, session: MagicMock) -> None:
        session.get.return_value = response(200, [])
        start = datetime(2017, 1, 1, tzinfo=timezone.utc)
        end = datetime(2017, 1, 2, 12, 30, tzinfo=timezone.utc)

        client.trades("XBTUSD", count=100, start=start, end=end)

        params = session.get.call_args.kwargs["params"]
        assert params == {
            "symbol": "XBTUSD",
            "count": 100,
            "startTime": "2017-01-01T00:00:00.000Z",
            "endTime": "2017-01-02T12:30:00.000Z",
        }

    @pytest.mark.parametrize(
        "end",
        [
            datetime(1899, 12, 30, tzinfo=timezone.utc),
            datetime(2016, 12, 31, tzinfo=timezone.utc),
        ],
    )
    def test_trades_end_time_omitted(
        self, client: BitmexRestClient, session: MagicMock, end: datetime
    ) -> None:
        """Test that placeholder or inverted end times are not sent."""
        session.get.return_value = response(200, [])

        client.trades("XBTUSD", start=datetime(2017, 1, 1, tzinfo=timezone.utc), end=end)

        assert "endTime" not in session.get.call_args.kwargs["params"]

    def test_trades_newest_first(self, client: BitmexRestClient, session: MagicMock) -> None:
        session.get.return_value = response(
            200,
            [
                {"timestamp": "2017-01-01T00:00:01.000Z", "symbol": "XBTUSD", "size": 1, "price": 1},
                {"timestamp": "2017-01-01T00:00:03.000Z", "symbol": "XBTUSD", "size": 3, "price": 3},
                {"timestamp": "2017-01-01T00:00:02.000Z", "symbol": "XBTUSD", "size": 2, "price": 2},
            ],
        )

        result = client.trades("XBTUSD")

        assert [int(r.size) for r in result] == [3, 2, 1]

    def test_retry_then_success(
        self, client: BitmexRestClient, session: MagicMock, no_sleep: list[float]
    ) -> None:
        """Test that 429 and 5xx are retried with a growing delay."""
        session.get.side_effect = [
            response(429),
            response(503),
            response(200, []),
        ]

        assert client.trades("XBTUSD") == []
        assert session.get.call_count == 3
        assert no_sleep == [1.0, 1.5]

    def test_network_error_retried(self, client: BitmexRestClient, session: MagicMock) -> None:
        session.get.side_effect = [requests.ConnectionError("reset"), response(200, [])]

        assert client.instruments() == []

    def test_gives_up(self, client: BitmexRestClient, session: MagicMock) -> None:
        session.get.return_value = response(502)

        with pytest.raises(RestError, match="failed after 3 attempts") as exc_info:
            client.instruments()

        assert exc_info.value.status == 502

    def test_client_error_not_retried(self, client: BitmexRestClient, session: MagicMock) -> None:
        session.get.return_value = response(404)

        with pytest.raises(RestError):
            client.trades("NOPE")

        assert session.get.call_count == 1

    def test_non_list_payload(self, client: BitmexRestClient, session: MagicMock) -> None:
        session.get.return_value = response(200, {"error": "x"})

        with pytest.raises(RestError, match="Expected a JSON array"):
            client.instruments()

    def test_invalid_json(self, client: BitmexRestClient, session: MagicMock) -> None:
        resp = response(200)
        resp.json.side_effect = ValueError("Expecting value")
        session.get.return_value = resp

        with pytest.raises(RestError, match="Invalid JSON"):
            client.instruments()

    def test_invalid_record(self, client: BitmexRestClient, session: MagicMock) -> None:
        session.get.return_value = response(200, [{"symbol": "XBTUSD"}])

        with pytest.raises(RestError, match="Invalid TradeRecord"):
            client.trades("XBTUSD")

    def test_borrowed_session_not_closed(
        self, client: BitmexRestClient, session: MagicMock
    ) -> None:
        with client:
            pass
        session.close.assert_not_called()
