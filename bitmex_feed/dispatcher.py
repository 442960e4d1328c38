"""
Message dispatcher.

Classifies each inbound text frame and routes data frames to table
handlers. Classification order (first match wins):

1. Welcome ("info": "Welcome to the BitMEX Realtime API.") -> on_welcome
2. Data ({"table": ..., "action": ..., "data": [...]}) -> handler by table
3. Error ({"error": ...}) -> on_protocol_error
4. Anything else (subscription acks, ...) -> ignored

Nothing raised while handling a frame escapes dispatch().
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from bitmex_feed.decoding import classify_frame, decode_envelope, decode_frame
from bitmex_feed.errors import DecodeError, ProtocolError
from bitmex_feed.types import DataEnvelope, FrameKind

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[DataEnvelope], Awaitable[None]]


@dataclass
class DispatcherStats:
    """Statistics for frame dispatching."""

    total_frames: int = 0
    routed_frames: int = 0
    ignored_frames: int = 0
    decode_errors: int = 0
    handler_errors: int = 0
    by_kind: dict[str, int] = field(default_factory=dict)
    by_table: dict[str, int] = field(default_factory=dict)


class MessageDispatcher:
    """
    Routes inbound frames.

    Handlers are registered per table name; frames for tables without a
    handler are dropped, so new tables on the feed are harmless.
    """

    def __init__(
        self,
        on_welcome: Callable[[], Awaitable[None]],
        on_protocol_error: Callable[[ProtocolError], Awaitable[None]],
    ) -> None:
        self._on_welcome = on_welcome
        self._on_protocol_error = on_protocol_error
        self._handlers: dict[str, EnvelopeHandler] = {}
        self._stats = DispatcherStats()

    @property
    def stats(self) -> DispatcherStats:
        return self._stats

    def register_handler(self, table: str, handler: EnvelopeHandler) -> None:
        """Register the handler for a table. A later registration replaces it."""
        if table in self._handlers:
            logger.warning(f"Replacing handler for table {table}")
        self._handlers[table] = handler
        logger.debug(f"Registered handler for {table}")

    def get_handler(self, table: str) -> Optional[EnvelopeHandler]:
        return self._handlers.get(table)

    async def dispatch(self, text: str, recv_ts: Optional[int] = None) -> None:
        """Handle one text frame."""
        self._stats.total_frames += 1
        if recv_ts is None:
            recv_ts = int(time.time() * 1000)

        try:
            payload = decode_frame(text)
            kind = classify_frame(payload)
            self._stats.by_kind[kind.value] = self._stats.by_kind.get(kind.value, 0) + 1

            if kind == FrameKind.WELCOME:
                logger.info(f"Welcome received: {payload.get('info')}")
                await self._on_welcome()
            elif kind == FrameKind.DATA:
                await self._route(decode_envelope(payload, recv_ts))
            elif kind == FrameKind.ERROR:
                await self._on_protocol_error(self._protocol_error(payload))
            else:
                self._stats.ignored_frames += 1
                logger.debug(f"Ignoring frame with keys {list(payload.keys())[:5]}")

        except DecodeError as e:
            self._stats.decode_errors += 1
            logger.warning(f"Failed to decode frame: {e}")
        except Exception as e:
            self._stats.handler_errors += 1
            logger.error(f"Frame handling error: {e}", exc_info=True)

    async def _route(self, envelope: DataEnvelope) -> None:
        table = envelope.table
        self._stats.by_table[table] = self._stats.by_table.get(table, 0) + 1

        handler = self._handlers.get(table)
        if handler is None:
            self._stats.ignored_frames += 1
            logger.debug(f"No handler for table: {table}")
            return

        self._stats.routed_frames += 1
        await handler(envelope)

    @staticmethod
    def _protocol_error(payload: dict[str, Any]) -> ProtocolError:
        status = payload.get("status")
        return ProtocolError(
            f"Exchange error: {payload.get('error')}",
            status=status if isinstance(status, int) else None,
            request=payload.get("request"),
            component="MessageDispatcher",
        )

    def clear_handlers(self) -> None:
        self._handlers.clear()

    def reset_stats(self) -> None:
        self._stats = DispatcherStats()
