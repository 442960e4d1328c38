"""
Base class for table handlers.

A handler receives the DataEnvelope of one table, turns it into zero or
more normalized events, and passes each one to its callback.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from bitmex_feed.errors import DecodeError
from bitmex_feed.types import DataEnvelope

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class HandlerStats:
    """Statistics for a table handler."""

    frames_received: int = 0
    frames_processed: int = 0
    frames_skipped: int = 0
    events_emitted: int = 0
    decode_errors: int = 0
    by_symbol: dict[str, int] = field(default_factory=dict)


class TableHandler(ABC, Generic[T]):
    """
    Abstract base class for table handlers.

    Each handler:
    1. Receives the DataEnvelope from the dispatcher
    2. Decodes the table records and applies them
    3. Calls the registered callback once per resulting event, in order
    """

    def __init__(
        self,
        on_event: Callable[[T], Awaitable[None]],
        name: str = "handler",
    ) -> None:
        self._on_event = on_event
        self._name = name
        self._stats = HandlerStats()

    @property
    def name(self) -> str:
        return self._name

    @property
    def stats(self) -> HandlerStats:
        return self._stats

    async def handle(self, envelope: DataEnvelope) -> None:
        """Handle one data frame. Decode errors are logged, never raised."""
        self._stats.frames_received += 1

        try:
            events = self._process(envelope)
            if not events:
                self._stats.frames_skipped += 1
                return

            self._stats.frames_processed += 1
            for event in events:
                symbol = self._get_symbol(event)
                if symbol:
                    self._stats.by_symbol[symbol] = self._stats.by_symbol.get(symbol, 0) + 1
                self._stats.events_emitted += 1
                await self._on_event(event)

        except DecodeError as e:
            self._stats.decode_errors += 1
            logger.warning(f"[{self._name}] Decode error: {e}")
        except Exception as e:
            self._stats.decode_errors += 1
            logger.error(f"[{self._name}] Unexpected error: {e}", exc_info=True)

    @abstractmethod
    def _process(self, envelope: DataEnvelope) -> list[T]:
        """Turn the envelope into events. An empty list skips the frame."""
        ...

    @abstractmethod
    def _get_symbol(self, event: T) -> Optional[str]:
        """Extract symbol from event for statistics."""
        ...

    def reset_stats(self) -> None:
        self._stats = HandlerStats()
