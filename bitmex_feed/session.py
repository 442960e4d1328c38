"""
Streaming session manager.

Owns the transport lifecycle, the connection state machine, reconnection
and the pending snapshot-request queue.

State machine:
    [DISCONNECTED] --connect()--> [CONNECTING] --opened--> [OPEN]
          ^                            |                      |
          |                         failed             error/close/shutdown
          |                            v                      v
          +------------------------------------------- [CLOSING]

Reconnection:
- Triggered by transport errors, exchange error frames, and (when
  ConnectionConfig.reconnect_on_close is set) unexpected closes
- At most one reconnect task is in flight; further triggers are dropped
- Exponential backoff with jitter, optionally capped in attempts
- shutdown() cancels the reconnect task and suppresses new ones
"""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import orjson

from bitmex_feed.config import ConnectionConfig, SubscriptionConfig
from bitmex_feed.errors import ProtocolError, TransportError
from bitmex_feed.transport import AiohttpTransport, StreamTransport, TransportListener
from bitmex_feed.types import ConnectionHealth, ConnectionState, SessionMetrics

logger = logging.getLogger(__name__)

TransportFactory = Callable[[TransportListener], StreamTransport]

_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.OPEN, ConnectionState.CLOSING, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.OPEN: frozenset({ConnectionState.CLOSING, ConnectionState.DISCONNECTED}),
    ConnectionState.CLOSING: frozenset(
        {ConnectionState.DISCONNECTED, ConnectionState.CONNECTING}
    ),
}


def subscribe_frame(channels: tuple[str, ...]) -> str:
    return orjson.dumps({"op": "subscribe", "args": list(channels)}).decode()


def snapshot_request_frame(symbol: str) -> str:
    return orjson.dumps({"op": "getSymbol", "args": [symbol]}).decode()


class _BoundListener:
    """Forwards events of one transport generation; stale events are dropped."""

    def __init__(self, session: SessionManager, generation: int) -> None:
        self._session = session
        self._generation = generation

    def _current(self, event: str) -> bool:
        if self._generation != self._session._generation:
            logger.debug(f"Dropping {event} from stale transport #{self._generation}")
            return False
        return True

    async def on_opened(self) -> None:
        if self._current("opened"):
            await self._session.on_opened()

    async def on_message(self, text: str) -> None:
        if self._current("message"):
            await self._session.on_message(text)

    async def on_error(self, error: Exception) -> None:
        if self._current("error"):
            await self._session.on_error(error)

    async def on_closed(self) -> None:
        if self._current("closed"):
            await self._session.on_closed()


class SessionManager:
    """
    Manages the streaming session.

    Usage:
        session = SessionManager(ConnectionConfig(), SubscriptionConfig())
        session.set_frame_handler(dispatcher.dispatch)
        await session.connect()
        await session.request_snapshot("XBTUSD")
        ...
        await session.shutdown()
    """

    def __init__(
        self,
        config: ConnectionConfig,
        subscription: SubscriptionConfig,
        transport_factory: Optional[TransportFactory] = None,
        on_frame: Optional[Callable[[str], Awaitable[None]]] = None,
        name: str = "session",
    ) -> None:
        self._config = config
        self._subscription = subscription
        self._transport_factory = transport_factory or self._default_transport
        self._on_frame = on_frame
        self._name = name

        self._state = ConnectionState.DISCONNECTED
        self._transport: Optional[StreamTransport] = None
        self._generation = 0
        self._welcomed = False

        # Ordered and de-duplicated
        self._pending: dict[str, None] = dict.fromkeys(subscription.symbols)
        self._lock = asyncio.Lock()

        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._reconnect_attempt = 0
        self._shutdown = False

        self._metrics = SessionMetrics()

    def _default_transport(self, listener: TransportListener) -> StreamTransport:
        return AiohttpTransport(listener, self._config, name=f"{self._name}_ws")

    # --- Properties ---

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        """Open and welcomed: domain traffic can be sent."""
        return self._state == ConnectionState.OPEN and self._welcomed

    @property
    def pending_snapshots(self) -> list[str]:
        return list(self._pending)

    @property
    def metrics(self) -> SessionMetrics:
        return self._metrics

    @property
    def reconnect_in_flight(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def set_frame_handler(self, on_frame: Callable[[str], Awaitable[None]]) -> None:
        self._on_frame = on_frame

    def _transition(self, new_state: ConnectionState) -> bool:
        old_state = self._state
        if old_state == new_state:
            return True
        if new_state not in _TRANSITIONS[old_state]:
            logger.warning(
                f"[{self._name}] Invalid transition {old_state.value} -> {new_state.value}"
            )
            return False
        self._state = new_state
        logger.debug(f"[{self._name}] State: {old_state.value} -> {new_state.value}")
        return True

    # --- Lifecycle ---

    async def connect(self) -> None:
        """
        Open a new transport.

        Failures are not raised; they go through the reconnect path.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.warning(f"[{self._name}] Already connected or connecting")
            return

        self._shutdown = False
        # An explicit connect supersedes a reconnect waiting out its backoff
        await self._cancel_reconnect()
        self._reconnect_attempt = 0
        try:
            await self._open_transport()
        except TransportError as e:
            await self.on_error(e)

    async def _open_transport(self) -> None:
        await self._teardown_transport()
        if not self._transition(ConnectionState.CONNECTING):
            raise TransportError(
                f"Cannot connect from state {self._state.value}",
                component="SessionManager",
            )

        self._generation += 1
        self._welcomed = False
        transport = self._transport_factory(_BoundListener(self, self._generation))
        self._transport = transport
        self._metrics.connects += 1

        try:
            await transport.open()
        except TransportError:
            if self._transport is transport:
                self._transport = None
            self._transition(ConnectionState.DISCONNECTED)
            raise

    async def _teardown_transport(self) -> None:
        transport = self._transport
        if transport is None:
            return

        # Events from the old instance are ignored from here on
        self._generation += 1
        self._transport = None
        self._welcomed = False
        if self._state != ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.CLOSING)
        try:
            await transport.close()
        except Exception as e:
            logger.warning(f"[{self._name}] Error closing transport: {e}")
        self._transition(ConnectionState.DISCONNECTED)

    async def shutdown(self) -> None:
        """Close the session; no reconnect is attempted afterwards."""
        logger.info(f"[{self._name}] Shutting down")
        self._shutdown = True
        await self._cancel_reconnect()
        await self._teardown_transport()
        self._transition(ConnectionState.DISCONNECTED)

    async def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # --- Transport events ---

    async def on_opened(self) -> None:
        self._transition(ConnectionState.OPEN)
        self._metrics.connected_at = datetime.now(timezone.utc)
        logger.info(f"[{self._name}] Websocket opened, waiting for welcome")

    async def on_message(self, text: str) -> None:
        self._metrics.frames_received += 1
        self._metrics.last_message_at = datetime.now(timezone.utc)
        if self._on_frame is not None:
            await self._on_frame(text)

    async def on_error(self, error: Exception) -> None:
        self._metrics.errors += 1
        self._metrics.last_error = str(error)
        logger.error(f"[{self._name}] Websocket error: {error}")
        self._schedule_reconnect(reason="error")

    async def on_closed(self) -> None:
        logger.info(f"[{self._name}] Websocket closed")
        self._welcomed = False
        self._transition(ConnectionState.DISCONNECTED)
        if self._config.reconnect_on_close:
            self._schedule_reconnect(reason="closed")

    async def on_protocol_error(self, error: ProtocolError) -> None:
        self._metrics.errors += 1
        self._metrics.last_error = str(error)
        logger.error(f"[{self._name}] Exchange error: {error}")
        self._schedule_reconnect(reason="protocol error")

    # --- Subscriptions ---

    async def on_welcome(self) -> None:
        """Subscribe to the configured channels and flush queued snapshot requests."""
        async with self._lock:
            self._welcomed = True
            self._reconnect_attempt = 0
            self._metrics.welcomes += 1

            try:
                frame = subscribe_frame(self._subscription.channels)
                logger.info(f"[{self._name}] Send subscription request: {frame}")
                await self._send(frame)

                while self._pending:
                    symbol = next(iter(self._pending))
                    await self._send(snapshot_request_frame(symbol))
                    del self._pending[symbol]
            except TransportError as e:
                # Unsent symbols stay queued for the next welcome
                await self.on_error(e)

    async def request_snapshot(self, symbol: str) -> None:
        """Send a getSymbol request now, or queue it until the next welcome."""
        async with self._lock:
            if self.is_ready:
                try:
                    await self._send(snapshot_request_frame(symbol))
                    return
                except TransportError as e:
                    self._pending.setdefault(symbol, None)
                    await self.on_error(e)
                    return

            if symbol not in self._pending:
                logger.debug(f"[{self._name}] Queued snapshot request for {symbol}")
            self._pending.setdefault(symbol, None)

    async def _send(self, text: str) -> None:
        if self._transport is None:
            raise TransportError("No transport", component="SessionManager")
        logger.debug(f"[{self._name}] Send: {text}")
        await self._transport.send(text)
        self._metrics.frames_sent += 1

    # --- Reconnection ---

    def _schedule_reconnect(self, reason: str) -> None:
        if self._shutdown:
            logger.debug(f"[{self._name}] Shutdown requested, not reconnecting ({reason})")
            return
        if self.reconnect_in_flight:
            logger.debug(f"[{self._name}] Reconnect already in flight ({reason})")
            return

        logger.info(f"[{self._name}] Scheduling reconnect ({reason})")
        self._metrics.reconnects += 1
        self._reconnect_task = asyncio.create_task(
            self._reconnect_loop(), name=f"{self._name}_reconnect"
        )

    async def _reconnect_loop(self) -> None:
        await self._teardown_transport()

        limit = self._config.max_reconnect_attempts
        while not self._shutdown:
            self._reconnect_attempt += 1
            if limit is not None and self._reconnect_attempt > limit:
                logger.error(
                    f"[{self._name}] Giving up after {limit} reconnect attempts"
                )
                return

            delay = self._calculate_backoff_delay()
            logger.warning(
                f"[{self._name}] Reconnecting in {delay:.2f}s "
                f"(attempt {self._reconnect_attempt})"
            )
            await asyncio.sleep(delay)
            if self._shutdown:
                return

            try:
                await self._open_transport()
                return
            except TransportError as e:
                self._metrics.errors += 1
                self._metrics.last_error = str(e)
                logger.warning(f"[{self._name}] Reconnect attempt failed: {e}")

    def _calculate_backoff_delay(self) -> float:
        """Calculate exponential backoff delay with jitter."""
        base_delay = self._config.base_reconnect_delay_s
        max_delay = self._config.max_reconnect_delay_s
        jitter = self._config.reconnect_jitter

        exponent = min(max(0, self._reconnect_attempt - 1), 32)
        delay = base_delay * (2**exponent)
        delay = min(delay, max_delay)

        jitter_range = delay * jitter
        delay += random.uniform(-jitter_range, jitter_range)

        return float(max(0.0, delay))

    def get_health(self) -> ConnectionHealth:
        return ConnectionHealth(
            state=self._state,
            url=self._config.url,
            connected_since=self._metrics.connected_at,
            last_message_at=self._metrics.last_message_at,
            reconnect_count=self._metrics.reconnects,
            message_count=self._metrics.frames_received,
            error_count=self._metrics.errors,
            last_error=self._metrics.last_error,
            pending_snapshots=self.pending_snapshots,
        )
