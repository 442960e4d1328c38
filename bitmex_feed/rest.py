"""
REST reference and history downloads.

Plain request/response calls against the BitMEX REST API:
- GET /instrument: instrument list, optionally filtered by state
- GET /trade: trade history for a symbol

Retryable statuses (429, 5xx) and network errors are retried with a short
bounded delay; everything else raises RestError.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import requests
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bitmex_feed.config import RestConfig
from bitmex_feed.errors import RestError

logger = logging.getLogger(__name__)

# Spreadsheet front-ends pass 1899-12-30 as an "empty" date
_MIN_VALID_YEAR = 2000


class Instrument(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    symbol: str
    root_symbol: Optional[str] = Field(default=None, alias="rootSymbol")
    state: Optional[str] = None
    typ: Optional[str] = None
    listing: Optional[datetime] = None
    expiry: Optional[datetime] = None
    underlying: Optional[str] = None
    quote_currency: Optional[str] = Field(default=None, alias="quoteCurrency")
    settl_currency: Optional[str] = Field(default=None, alias="settlCurrency")
    tick_size: Optional[Decimal] = Field(default=None, alias="tickSize")
    multiplier: Optional[int] = None
    is_inverse: Optional[bool] = Field(default=None, alias="isInverse")
    is_quanto: Optional[bool] = Field(default=None, alias="isQuanto")
    init_margin: Optional[Decimal] = Field(default=None, alias="initMargin")
    maint_margin: Optional[Decimal] = Field(default=None, alias="maintMargin")
    prev_close_price: Optional[Decimal] = Field(default=None, alias="prevClosePrice")
    last_price: Optional[Decimal] = Field(default=None, alias="lastPrice")
    high_price: Optional[Decimal] = Field(default=None, alias="highPrice")
    low_price: Optional[Decimal] = Field(default=None, alias="lowPrice")
    vwap: Optional[Decimal] = None
    volume: Optional[Decimal] = None
    open_interest: Optional[Decimal] = Field(default=None, alias="openInterest")


class TradeRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    timestamp: datetime
    symbol: str
    side: Optional[str] = None
    size: Decimal
    price: Decimal
    tick_direction: Optional[str] = Field(default=None, alias="tickDirection")


def _iso_millis(ts: datetime) -> str:
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def _sort_instruments(instruments: list[Instrument]) -> list[Instrument]:
    """Order by state, then root symbol, then expiry descending (perpetuals last)."""
    floor = datetime.min.replace(tzinfo=timezone.utc)

    def expiry_key(i: Instrument) -> datetime:
        if i.expiry is None:
            return floor
        return i.expiry if i.expiry.tzinfo else i.expiry.replace(tzinfo=timezone.utc)

    ordered = sorted(instruments, key=expiry_key, reverse=True)
    return sorted(ordered, key=lambda i: (i.state or "", i.root_symbol or ""))


class BitmexRestClient:
    """
    Synchronous REST client.

    Usage:
        with BitmexRestClient(RestConfig()) as rest:
            open_instruments = rest.instruments(state="Open")
            prints = rest.trades("XBTUSD", count=100)
    """

    def __init__(
        self,
        config: Optional[RestConfig] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._cfg = config or RestConfig()
        self._owns_session = session is None
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = self._cfg.user_agent

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def __enter__(self) -> BitmexRestClient:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # --- Endpoints ---

    def instruments(self, state: Optional[str] = None) -> list[Instrument]:
        """Download the instrument list; keep only `state` if given."""
        rows = self._get_json("/instrument", params={})
        instruments = [self._validate(Instrument, row) for row in rows]
        if state is not None:
            instruments = [i for i in instruments if i.state == state]
        return _sort_instruments(instruments)

    def trades(
        self,
        symbol: str,
        count: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[TradeRecord]:
        """Download trade history, newest first."""
        params: dict[str, Any] = {"symbol": symbol}
        if count is not None and count >= 0:
            params["count"] = count
        if start is not None:
            params["startTime"] = _iso_millis(start)
        if (
            end is not None
            and end.year > _MIN_VALID_YEAR
            and (start is None or end >= start)
        ):
            params["endTime"] = _iso_millis(end)

        rows = self._get_json("/trade", params=params)
        records = [self._validate(TradeRecord, row) for row in rows]
        return sorted(records, key=lambda r: r.timestamp, reverse=True)

    # --- HTTP ---

    def _get_json(self, path: str, params: dict[str, Any]) -> list[Any]:
        url = f"{self._cfg.base_url.rstrip('/')}{path}"
        attempts = max(1, self._cfg.retries)
        delay = 1.0
        last_status: Optional[int] = None

        for attempt in range(attempts):
            try:
                response = self._session.get(url, params=params, timeout=self._cfg.timeout)
                last_status = response.status_code
                if last_status == 200:
                    payload = response.json()
                    if not isinstance(payload, list):
                        raise RestError(
                            "Expected a JSON array",
                            url=url,
                            status=last_status,
                            component="BitmexRestClient",
                        )
                    logger.info(f"GET {last_status} {url} rows={len(payload)}")
                    return payload

                retryable = last_status == 429 or 500 <= last_status < 600
                if not retryable:
                    raise RestError(
                        f"GET {url} failed with status {last_status}",
                        url=url,
                        status=last_status,
                        component="BitmexRestClient",
                    )
                logger.warning(f"GET {last_status} {url} (attempt {attempt + 1}/{attempts})")
            except ValueError as ex:
                # Body was not JSON
                raise RestError(
                    f"Invalid JSON from {url}: {ex}",
                    url=url,
                    status=last_status,
                    component="BitmexRestClient",
                ) from ex
            except requests.RequestException as ex:
                last_status = None
                logger.warning(f"GET {url} failed: {type(ex).__name__}: {ex}")

            if attempt < attempts - 1:
                time.sleep(delay)
                delay = min(2.0, delay * 1.5)

        raise RestError(
            f"GET {url} failed after {attempts} attempts",
            url=url,
            status=last_status,
            component="BitmexRestClient",
        )

    @staticmethod
    def _validate(model: type[BaseModel], row: Any) -> Any:
        try:
            return model.model_validate(row)
        except ValidationError as e:
            raise RestError(
                f"Invalid {model.__name__} record: {e.error_count()} errors",
                component="BitmexRestClient",
                details={"errors": e.errors(include_url=False)[:3]},
            ) from e
