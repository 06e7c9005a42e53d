"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import pytest

_CLOSE = object()


class FakeSocket:
    """In-memory stand-in for a websockets client connection.

    Frames pushed with `feed()` are yielded by async iteration; `close()`
    (from either side) ends the iteration.
    """

    def __init__(self) -> None:
        self.inbound: asyncio.Queue[Any] = asyncio.Queue()
        self.sent: list[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        if self.closed:
            raise OSError("socket is closed")
        self.sent.append(message)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(_CLOSE)

    def feed(self, frame: str | bytes | dict[str, Any]) -> None:
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        self.inbound.put_nowait(frame)

    def sent_envelopes(self) -> list[dict[str, Any]]:
        return [json.loads(frame) for frame in self.sent]

    def __aiter__(self) -> FakeSocket:
        return self

    async def __anext__(self) -> str | bytes:
        item = await self.inbound.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Connector returning scripted outcomes in order.

    Each outcome is a FakeSocket to hand out or an exception to raise.
    Once the script runs out, connecting blocks until cancelled.
    """

    def __init__(self, *outcomes: FakeSocket | BaseException) -> None:
        self.outcomes = list(outcomes)
        self.urls: list[str] = []

    async def __call__(self, url: str) -> FakeSocket:
        self.urls.append(url)
        if not self.outcomes:
            await asyncio.Event().wait()
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeSleep:
    """Records requested delays and returns without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until `predicate()` holds, failing the test after `timeout`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def fake_socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def socket_factory() -> type[FakeSocket]:
    return FakeSocket


@pytest.fixture
def connector_factory() -> type[FakeConnector]:
    return FakeConnector


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def eventually() -> Callable[..., Any]:
    return wait_until
