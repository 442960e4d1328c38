"""
Frame and field decoding.

Text frames are parsed with orjson; typed values are produced by explicit
converters that raise DecodeError instead of letting TypeError/ValueError
leak out of a handler.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import orjson

from bitmex_feed.errors import DecodeError
from bitmex_feed.types import DataEnvelope, FrameKind

WELCOME_MARKER = "Welcome"


def _to_finite_decimal(value: Any, field_name: str, expected_type: str) -> Decimal:
    # bool is an int subclass; a true/false quantity is a shape error
    if value is None or isinstance(value, bool):
        raise DecodeError(
            f"Invalid {expected_type} value for {field_name}: {value!r}",
            expected_type=expected_type,
        )
    try:
        number = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise DecodeError(
            f"Invalid {expected_type} value for {field_name}: {value!r}",
            expected_type=expected_type,
        ) from e
    if not number.is_finite():
        raise DecodeError(
            f"Non-finite {expected_type} value for {field_name}: {value!r}",
            expected_type=expected_type,
        )
    return number


def to_decimal(value: Any, field_name: str) -> Decimal:
    """Convert a wire number (or numeric string) to Decimal."""
    return _to_finite_decimal(value, field_name, "decimal")


def to_int(value: Any, field_name: str) -> int:
    """Convert a wire number to int, truncating any fractional part."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return int(_to_finite_decimal(value, field_name, "int"))


def to_timestamp(value: Any, field_name: str = "timestamp") -> Optional[datetime]:
    """
    Parse a BitMEX timestamp.

    Accepts ISO-8601 strings ("2016-12-01T18:06:32.000Z") and epoch
    milliseconds. Missing values give None.
    """
    if value is None:
        return None
    if isinstance(value, str):
        try:
            ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise DecodeError(
                f"Invalid timestamp for {field_name}: {value!r}",
                expected_type="timestamp",
            ) from e
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts
    millis = to_int(value, field_name)
    try:
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise DecodeError(
            f"Timestamp out of range for {field_name}: {value!r}",
            expected_type="timestamp",
        ) from e


def require_str(record: dict[str, Any], key: str, expected_type: str) -> str:
    value = record.get(key)
    if not isinstance(value, str) or not value:
        raise DecodeError(
            f"Missing or invalid '{key}' in {expected_type} record",
            expected_type=expected_type,
        )
    return value


def require_record(record: Any, expected_type: str) -> dict[str, Any]:
    if not isinstance(record, dict):
        raise DecodeError(
            f"{expected_type} record must be an object, got {type(record).__name__}",
            expected_type=expected_type,
        )
    return record


def decode_frame(text: str | bytes) -> dict[str, Any]:
    """Parse one text frame into a JSON object."""
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError as e:
        raise DecodeError(
            f"Invalid JSON frame: {e}",
            raw_data=text if isinstance(text, str) else text.decode("utf-8", "replace"),
            expected_type="json",
        ) from e
    if not isinstance(payload, dict):
        raise DecodeError(
            f"Frame must be a JSON object, got {type(payload).__name__}",
            expected_type="object",
        )
    return payload


def classify_frame(payload: dict[str, Any]) -> FrameKind:
    """Classify a decoded frame; first match wins."""
    info = payload.get("info")
    if isinstance(info, str) and WELCOME_MARKER in info:
        return FrameKind.WELCOME
    if "table" in payload and "data" in payload:
        return FrameKind.DATA
    if "error" in payload:
        return FrameKind.ERROR
    return FrameKind.OTHER


def decode_envelope(payload: dict[str, Any], recv_ts: int) -> DataEnvelope:
    """Build the generic data envelope shared by all tables."""
    table = require_str(payload, "table", "envelope")
    action = require_str(payload, "action", "envelope")
    data = payload.get("data")
    if not isinstance(data, list):
        raise DecodeError(
            f"'data' must be an array in {table} frame",
            expected_type="envelope",
        )
    return DataEnvelope(table=table, action=action, data=data, recv_ts=recv_ts)
