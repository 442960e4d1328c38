"""
Configuration types for the feed client.

Provides immutable, validated configuration dataclasses for the streaming
components, a pydantic model for the REST client, and TOML loading.
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from bitmex_feed.errors import ConfigurationError


class Venue(str, Enum):
    """Supported BitMEX environments."""

    BITMEX = "bitmex"
    BITMEX_TESTNET = "bitmex_testnet"


BITMEX_WS_ENDPOINTS: dict[Venue, str] = {
    Venue.BITMEX: "wss://www.bitmex.com/realtime?heartbeat=true",
    Venue.BITMEX_TESTNET: "wss://testnet.bitmex.com/realtime?heartbeat=true",
}

BITMEX_REST_ENDPOINTS: dict[Venue, str] = {
    Venue.BITMEX: "https://www.bitmex.com/api/v1",
    Venue.BITMEX_TESTNET: "https://testnet.bitmex.com/api/v1",
}

DEFAULT_CHANNELS: tuple[str, ...] = ("trade", "orderBook10")


@dataclass(frozen=True)
class ConnectionConfig:
    """Configuration for the WebSocket session."""

    url: str = BITMEX_WS_ENDPOINTS[Venue.BITMEX]

    connect_timeout_s: float = 30.0
    heartbeat_s: float = 30.0  # aiohttp sends pings at this cadence

    # Reconnection
    max_reconnect_attempts: Optional[int] = None  # None = retry forever
    base_reconnect_delay_s: float = 1.0
    max_reconnect_delay_s: float = 60.0
    reconnect_jitter: float = 0.3  # +/-30%
    reconnect_on_close: bool = True

    def __post_init__(self) -> None:
        if not self.url:
            raise ConfigurationError("url must not be empty", field="url")
        if self.connect_timeout_s <= 0:
            raise ConfigurationError(
                "connect_timeout_s must be positive",
                field="connect_timeout_s",
                value=self.connect_timeout_s,
            )
        if self.heartbeat_s <= 0:
            raise ConfigurationError(
                "heartbeat_s must be positive",
                field="heartbeat_s",
                value=self.heartbeat_s,
            )
        if self.max_reconnect_attempts is not None and self.max_reconnect_attempts < 0:
            raise ConfigurationError(
                "max_reconnect_attempts must be non-negative",
                field="max_reconnect_attempts",
                value=self.max_reconnect_attempts,
            )
        if self.base_reconnect_delay_s < 0:
            raise ConfigurationError(
                "base_reconnect_delay_s must be non-negative",
                field="base_reconnect_delay_s",
                value=self.base_reconnect_delay_s,
            )
        if self.max_reconnect_delay_s < self.base_reconnect_delay_s:
            raise ConfigurationError(
                "max_reconnect_delay_s must be >= base_reconnect_delay_s",
                field="max_reconnect_delay_s",
                value=self.max_reconnect_delay_s,
            )
        if not (0 <= self.reconnect_jitter <= 1):
            raise ConfigurationError(
                "reconnect_jitter must be between 0 and 1",
                field="reconnect_jitter",
                value=self.reconnect_jitter,
            )


@dataclass(frozen=True)
class SubscriptionConfig:
    """What to subscribe to on every welcome."""

    channels: tuple[str, ...] = DEFAULT_CHANNELS
    symbols: tuple[str, ...] = ()  # snapshot requests queued at start

    def __post_init__(self) -> None:
        if not self.channels:
            raise ConfigurationError(
                "At least one channel must be configured",
                field="channels",
            )
        if any(not s for s in self.symbols):
            raise ConfigurationError(
                "symbols must be non-empty strings",
                field="symbols",
                value=self.symbols,
            )


@dataclass(frozen=True)
class PublisherConfig:
    """Configuration for notification delivery."""

    max_queue_size: int = 10_000
    drop_policy: Literal["block", "oldest", "newest"] = "block"

    def __post_init__(self) -> None:
        if self.max_queue_size <= 0:
            raise ConfigurationError(
                "max_queue_size must be positive",
                field="max_queue_size",
                value=self.max_queue_size,
            )
        if self.drop_policy not in ("block", "oldest", "newest"):
            raise ConfigurationError(
                "drop_policy must be 'block', 'oldest' or 'newest'",
                field="drop_policy",
                value=self.drop_policy,
            )


@dataclass(frozen=True)
class HealthConfig:
    """Configuration for staleness detection."""

    enabled: bool = True
    staleness_threshold_s: float = 60.0
    check_interval_s: float = 5.0

    def __post_init__(self) -> None:
        if self.staleness_threshold_s <= 0:
            raise ConfigurationError(
                "staleness_threshold_s must be positive",
                field="staleness_threshold_s",
                value=self.staleness_threshold_s,
            )
        if self.check_interval_s <= 0:
            raise ConfigurationError(
                "check_interval_s must be positive",
                field="check_interval_s",
                value=self.check_interval_s,
            )


@dataclass(frozen=True)
class FeedConfig:
    """
    Immutable top-level configuration for the feed client.

    Example:
        config = FeedConfig(
            venue=Venue.BITMEX_TESTNET,
            subscription=SubscriptionConfig(symbols=("XBTUSD",)),
        )
    """

    venue: Venue = Venue.BITMEX
    connection: Optional[ConnectionConfig] = None
    subscription: SubscriptionConfig = field(default_factory=SubscriptionConfig)
    publisher: PublisherConfig = field(default_factory=PublisherConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    def __post_init__(self) -> None:
        # Default the connection endpoint from the venue
        if self.connection is None:
            object.__setattr__(
                self,
                "connection",
                ConnectionConfig(url=BITMEX_WS_ENDPOINTS[self.venue]),
            )

    @property
    def rest_url(self) -> str:
        return BITMEX_REST_ENDPOINTS[self.venue]


class RestConfig(BaseModel):
    base_url: str = BITMEX_REST_ENDPOINTS[Venue.BITMEX]
    timeout: float = Field(default=30.0, gt=0)
    retries: int = Field(default=3, ge=1)
    user_agent: str = "bitmex-feed/0.1"


# --- TOML loading ---


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigurationError(f"[{name}] must be a table", field=name)
    return section


def config_from_dict(data: dict[str, Any]) -> FeedConfig:
    """Build a FeedConfig from a parsed TOML document."""
    try:
        venue = Venue(data.get("venue", Venue.BITMEX.value))
    except ValueError as e:
        raise ConfigurationError(
            "Unknown venue", field="venue", value=data.get("venue")
        ) from e

    conn_data = _section(data, "connection")
    sub_data = _section(data, "subscription")
    pub_data = _section(data, "publisher")
    health_data = _section(data, "health")

    try:
        connection = ConnectionConfig(
            url=conn_data.get("url", BITMEX_WS_ENDPOINTS[venue]),
            **{k: v for k, v in conn_data.items() if k != "url"},
        )
        subscription = SubscriptionConfig(
            channels=tuple(sub_data.get("channels", DEFAULT_CHANNELS)),
            symbols=tuple(sub_data.get("symbols", ())),
        )
        publisher = PublisherConfig(**pub_data)
        health = HealthConfig(**health_data)
    except TypeError as e:
        # Unknown keys in a section
        raise ConfigurationError(f"Invalid config key: {e}") from e

    return FeedConfig(
        venue=venue,
        connection=connection,
        subscription=subscription,
        publisher=publisher,
        health=health,
    )


def load_config(path: Path | str) -> FeedConfig:
    """Load a FeedConfig from a TOML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with path.open("rb") as f:
        data = tomllib.load(f)
    return config_from_dict(data)
