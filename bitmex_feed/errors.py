"""
Exceptions raised by the feed client.

How each one is handled:
- DecodeError: the frame is counted and skipped, the stream continues
- TransportError: the session schedules a reconnect
- ProtocolError: the exchange sent an error frame; the session reconnects
- ConfigurationError: raised while building config objects
- RestError: a REST download failed after retries
"""

from __future__ import annotations

from typing import Any, Optional


def _context(**fields: Any) -> dict[str, Any]:
    """Keep only the fields that carry a value."""
    return {k: v for k, v in fields.items() if v is not None}


class FeedError(Exception):
    """Root of the hierarchy; `details` is rendered after the message."""

    def __init__(
        self,
        message: str,
        *,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.component = component
        self.details: dict[str, Any] = dict(details) if details else {}

    def __str__(self) -> str:
        text = super().__str__()
        if self.component:
            text += f" [component={self.component}]"
        if self.details:
            text += f" [details={self.details}]"
        return text


class DecodeError(FeedError):
    """A frame or record does not have the expected shape."""

    def __init__(
        self,
        message: str,
        *,
        raw_data: Optional[str] = None,
        expected_type: Optional[str] = None,
        component: Optional[str] = None,
    ) -> None:
        # Frames can be large, so the raw text is kept only as an attribute
        self.raw_data = raw_data
        self.expected_type = expected_type
        super().__init__(
            message,
            component=component,
            details=_context(expected_type=expected_type),
        )


class TransportError(FeedError):
    """The WebSocket could not connect, failed to send, or dropped."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        reconnect_attempt: Optional[int] = None,
        component: Optional[str] = None,
    ) -> None:
        self.url = url
        self.reconnect_attempt = reconnect_attempt
        super().__init__(
            message,
            component=component,
            details=_context(url=url, reconnect_attempt=reconnect_attempt),
        )


class ProtocolError(FeedError):
    """Error frame reported by the exchange, e.g. {"status": 400, "error": ...}."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        request: Optional[Any] = None,
        component: Optional[str] = None,
    ) -> None:
        self.status = status
        self.request = request
        super().__init__(
            message,
            component=component,
            details=_context(status=status, request=request),
        )


class ConfigurationError(FeedError):
    """A configuration value failed validation."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Optional[Any] = None,
    ) -> None:
        self.field = field
        self.value = value
        super().__init__(
            message,
            details=_context(field=field, value=None if value is None else str(value)),
        )


class RestError(FeedError):
    """A REST request failed or returned an unusable body."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status: Optional[int] = None,
        component: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.url = url
        self.status = status
        super().__init__(
            message,
            component=component,
            details={**_context(url=url, status=status), **(details or {})},
        )
