"""
Unit tests for AiohttpTransport with a mocked aiohttp session.
"""

from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from bitmex_feed.config import ConnectionConfig
from bitmex_feed.errors import TransportError
from bitmex_feed.transport import AiohttpTransport


class FakeWebSocket:
    """Async-iterable stand-in for ClientWebSocketResponse."""

    def __init__(self, messages: list[Any]) -> None:
        self._messages = list(messages)
        self.closed = False
        self.close_code = 1000
        self.send_str = AsyncMock()
        self.close = AsyncMock(side_effect=self._close)

    async def _close(self) -> None:
        self.closed = True

    def exception(self) -> Exception:
        return RuntimeError("protocol violation")

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> Any:
        if not self._messages:
            raise StopAsyncIteration
        return self._messages.pop(0)


def message(kind: aiohttp.WSMsgType, data: Any = None) -> MagicMock:
    msg = MagicMock()
    msg.type = kind
    msg.data = data
    return msg


def mock_session(ws: Any = None, error: Exception | None = None) -> MagicMock:
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    session.ws_connect = AsyncMock(return_value=ws, side_effect=error)
    return session


class TestAiohttpTransport:
    """Tests for AiohttpTransport."""

    @pytest.fixture
    def listener(self) -> MagicMock:
        listener = MagicMock()
        listener.on_opened = AsyncMock()
        listener.on_message = AsyncMock()
        listener.on_error = AsyncMock()
        listener.on_closed = AsyncMock()
        return listener

    @pytest.fixture
    def config(self) -> ConnectionConfig:
        return ConnectionConfig(url="wss://example.invalid/realtime", heartbeat_s=15.0)

    @pytest.mark.asyncio
    async def test_send_when_not_connected(
        self, listener: MagicMock, config: ConnectionConfig
    ) -> None:
        transport = AiohttpTransport(listener, config)

        with pytest.raises(TransportError, match="not connected"):
            await transport.send("x")

    @pytest.mark.asyncio
    async def test_open_failure(self, listener: MagicMock, config: ConnectionConfig) -> None:
        """Test that connect errors become TransportError and close the session."""
        session = mock_session(error=aiohttp.ClientConnectionError("refused"))

        with patch("bitmex_feed.transport.aiohttp.ClientSession", return_value=session):
            transport = AiohttpTransport(listener, config)
            with pytest.raises(TransportError, match="Failed to connect"):
                await transport.open()

        session.close.assert_awaited_once()
        listener.on_opened.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_messages_then_server_close(
        self, listener: MagicMock, config: ConnectionConfig
    ) -> None:
        """Test text delivery, binary skip, and on_closed at end of stream."""
        ws = FakeWebSocket(
            [
                message(aiohttp.WSMsgType.TEXT, '{"a":1}'),
                message(aiohttp.WSMsgType.BINARY, b"\x00"),
                message(aiohttp.WSMsgType.TEXT, '{"b":2}'),
            ]
        )
        session = mock_session(ws=ws)

        with patch("bitmex_feed.transport.aiohttp.ClientSession", return_value=session):
            transport = AiohttpTransport(listener, config)
            await transport.open()
            assert transport._receive_task is not None
            await transport._receive_task

        session.ws_connect.assert_awaited_once_with(config.url, heartbeat=15.0)
        listener.on_opened.assert_awaited_once()
        assert [c.args[0] for c in listener.on_message.await_args_list] == ['{"a":1}', '{"b":2}']
        listener.on_closed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_error_message(self, listener: MagicMock, config: ConnectionConfig) -> None:
        ws = FakeWebSocket([message(aiohttp.WSMsgType.ERROR)])
        session = mock_session(ws=ws)

        with patch("bitmex_feed.transport.aiohttp.ClientSession", return_value=session):
            transport = AiohttpTransport(listener, config)
            await transport.open()
            assert transport._receive_task is not None
            await transport._receive_task

        listener.on_error.assert_awaited_once()
        assert isinstance(listener.on_error.await_args.args[0], TransportError)
        listener.on_closed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_send_and_local_close(
        self, listener: MagicMock, config: ConnectionConfig
    ) -> None:
        """Test that a local close does not report on_closed."""
        ws = FakeWebSocket([])
        session = mock_session(ws=ws)

        with patch("bitmex_feed.transport.aiohttp.ClientSession", return_value=session):
            transport = AiohttpTransport(listener, config)
            await transport.open()
            await transport.send('{"op":"ping"}')
            await transport.close()

        ws.send_str.assert_awaited_once_with('{"op":"ping"}')
        ws.close.assert_awaited_once()
        session.close.assert_awaited_once()
        listener.on_closed.assert_not_awaited()
        assert not transport.is_connected
