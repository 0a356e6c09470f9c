"""Pytest configuration and shared fixtures."""

import asyncio
import json
from typing import Callable, List, Union

import pytest
from websockets.exceptions import ConnectionClosed

from engine.config.loader import FeedConfig
from schemas.market_data import Trade


class FakeConnection:
    """In-memory stand-in for a feed WebSocket connection.

    Replays ``messages`` in order (exceptions are raised instead of
    returned). Once exhausted it either reports a remote close or, with
    ``hang=True``, waits until close() is called.
    """

    def __init__(self, messages: List[Union[str, bytes, Exception]], hang: bool = False):
        self._messages = list(messages)
        self._hang = hang
        self._closed_event = asyncio.Event()
        self.closed = False
        self.recv_calls = 0

    async def recv(self):
        self.recv_calls += 1
        if self.closed:
            raise ConnectionClosed(None, None)
        if self._messages:
            item = self._messages.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self._hang:
            await self._closed_event.wait()
        raise ConnectionClosed(None, None)

    async def close(self):
        self.closed = True
        self._closed_event.set()


class FakeConnector:
    """Hands out prepared connections; raises OSError once they run out."""

    def __init__(self, connections: List[Union[FakeConnection, Exception]]):
        self._connections = list(connections)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if not self._connections:
            raise OSError("connection refused")
        item = self._connections.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def make_trade() -> Callable[..., Trade]:
    """Factory for trades; ``buy=True`` means buyer-initiated."""

    def _make(price: float = 10.0, quantity: float = 1.0, timestamp: int = 1700000000000,
              buy: bool = True) -> Trade:
        return Trade(price=price, quantity=quantity, timestamp=timestamp, is_buyer_maker=not buy)

    return _make


@pytest.fixture
def feed_message() -> Callable[..., str]:
    """Binance-style trade stream message."""

    def _message(price="10.00", quantity="1.0", timestamp: int = 1700000000000,
                 is_buyer_maker: bool = False) -> str:
        return json.dumps({
            "e": "trade",
            "E": timestamp + 5,
            "s": "BTCUSDT",
            "t": 12345,
            "p": str(price),
            "q": str(quantity),
            "T": timestamp,
            "m": is_buyer_maker,
            "M": True,
        })

    return _message


@pytest.fixture
def fake_connection():
    return FakeConnection


@pytest.fixture
def fake_connector():
    return FakeConnector


@pytest.fixture
def feed_config() -> FeedConfig:
    return FeedConfig(url="wss://feed.test/ws/btcusdt@trade", symbol="BTCUSDT")


@pytest.fixture
def no_sleep():
    """Sleep replacement recording requested delays."""
    delays: List[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays
    return _sleep


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def until():
    return wait_until


def reference_bars(trades: List[Trade], threshold: float) -> List[tuple]:
    """Straight-line reimplementation of the bar rule, for comparisons."""
    buy = sell = 0.0
    out = []
    for t in trades:
        if t.is_buyer_maker:
            sell += t.price * t.quantity
        else:
            buy += t.price * t.quantity
        if abs(buy - sell) >= threshold:
            out.append((t.timestamp, abs(buy - sell)))
            buy = sell = 0.0
    return out


@pytest.fixture
def reference():
    return reference_bars
