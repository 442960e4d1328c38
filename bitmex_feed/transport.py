"""
Stream transport: a connected, message-oriented duplex channel.

The session only sees the StreamTransport protocol. AiohttpTransport is the
production implementation; WebSocket framing and the keep-alive ping are
left to aiohttp (heartbeat=...).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol

import aiohttp

from bitmex_feed.config import ConnectionConfig
from bitmex_feed.errors import TransportError

logger = logging.getLogger(__name__)


class TransportListener(Protocol):
    """Receiver of transport events."""

    async def on_opened(self) -> None: ...

    async def on_message(self, text: str) -> None: ...

    async def on_error(self, error: Exception) -> None: ...

    async def on_closed(self) -> None: ...


class StreamTransport(Protocol):
    """Duplex channel used by the session."""

    async def open(self) -> None:
        """Connect. Raises TransportError if the connection cannot be made."""
        ...

    async def send(self, text: str) -> None:
        """Send one text frame. Raises TransportError if not connected."""
        ...

    async def close(self) -> None: ...


class AiohttpTransport:
    """
    WebSocket transport on top of aiohttp.

    Events are delivered to the listener from a single receive task, so
    frames are handled strictly one after another. A close() initiated
    locally does not emit on_closed.
    """

    def __init__(
        self,
        listener: TransportListener,
        config: ConnectionConfig,
        name: str = "transport",
    ) -> None:
        self._listener = listener
        self._config = config
        self._name = name

        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._closing = False

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def open(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._config.connect_timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)

        logger.info(f"[{self._name}] Connecting to {self._config.url}")
        try:
            self._ws = await self._session.ws_connect(
                self._config.url,
                heartbeat=self._config.heartbeat_s,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._close_session()
            raise TransportError(
                f"Failed to connect: {e}",
                url=self._config.url,
                component="AiohttpTransport",
            ) from e

        logger.info(f"[{self._name}] Connected")
        await self._listener.on_opened()
        self._receive_task = asyncio.create_task(
            self._receive_loop(), name=f"{self._name}_receive"
        )

    async def _receive_loop(self) -> None:
        ws = self._ws
        if ws is None:
            return

        try:
            # aiohttp ends the iteration on CLOSE/CLOSING/CLOSED
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        await self._listener.on_message(msg.data)
                    except Exception as e:
                        logger.error(f"[{self._name}] Message handling error: {e}", exc_info=True)

                elif msg.type == aiohttp.WSMsgType.BINARY:
                    logger.debug(f"[{self._name}] Received binary message (ignored)")

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    cause = ws.exception()
                    logger.error(f"[{self._name}] WebSocket error: {cause}")
                    await self._listener.on_error(
                        TransportError(
                            f"WebSocket error: {cause}",
                            url=self._config.url,
                            component="AiohttpTransport",
                        )
                    )
                    return

        except asyncio.CancelledError:
            logger.debug(f"[{self._name}] Receive loop cancelled")
            raise
        except Exception as e:
            logger.error(f"[{self._name}] Receive loop error: {e}")
            if not self._closing:
                await self._listener.on_error(
                    TransportError(
                        f"Receive loop failed: {e}",
                        url=self._config.url,
                        component="AiohttpTransport",
                    )
                )
            return

        if not self._closing:
            logger.info(f"[{self._name}] Server closed connection (code={ws.close_code})")
            await self._listener.on_closed()

    async def send(self, text: str) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError(
                "Cannot send, websocket is not connected",
                url=self._config.url,
                component="AiohttpTransport",
            )
        try:
            await self._ws.send_str(text)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as e:
            raise TransportError(
                f"Send failed: {e}",
                url=self._config.url,
                component="AiohttpTransport",
            ) from e

    async def close(self) -> None:
        self._closing = True

        task = self._receive_task
        self._receive_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        self._ws = None

        await self._close_session()
        logger.info(f"[{self._name}] Closed")

    async def _close_session(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
