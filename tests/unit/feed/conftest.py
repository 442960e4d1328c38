"""Shared fixtures for the feed tests: an in-memory transport."""

from typing import Optional

import pytest

from bitmex_feed.errors import TransportError
from bitmex_feed.transport import TransportListener


class FakeTransport:
    """StreamTransport that records sent frames and lets tests inject events."""

    def __init__(
        self,
        listener: TransportListener,
        fail_open: bool = False,
        fail_send_on: Optional[str] = None,
    ) -> None:
        self.listener = listener
        self.fail_open = fail_open
        self.fail_send_on = fail_send_on
        self.sent: list[str] = []
        self.opened = False
        self.closed = False

    async def open(self) -> None:
        if self.fail_open:
            raise TransportError("connection refused", url="wss://fake")
        self.opened = True
        await self.listener.on_opened()

    async def send(self, text: str) -> None:
        if self.closed:
            raise TransportError("not connected")
        if self.fail_send_on is not None and self.fail_send_on in text:
            raise TransportError("send failed")
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True

    # --- Server side ---

    async def receive(self, text: str) -> None:
        await self.listener.on_message(text)

    async def drop(self, error: Optional[Exception] = None) -> None:
        await self.listener.on_error(error or TransportError("connection reset"))

    async def server_close(self) -> None:
        await self.listener.on_closed()


class FakeTransportFactory:
    """Creates FakeTransports; `fail_opens` lists per-connection open failures."""

    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []
        self.fail_opens: list[bool] = []
        self.fail_send_on: Optional[str] = None

    def __call__(self, listener: TransportListener) -> FakeTransport:
        fail = self.fail_opens.pop(0) if self.fail_opens else False
        transport = FakeTransport(listener, fail_open=fail, fail_send_on=self.fail_send_on)
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]


@pytest.fixture
def transport_factory() -> FakeTransportFactory:
    return FakeTransportFactory()
