"""Pytest configuration and fixtures for canton_client_core tests."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

API_URL = "https://ledger.example.com"


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: Any = None,
    text_data: str | None = None,
    headers: dict[str, str] | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call (also serialized for text())
        text_data: Data to return from text() call
        headers: Response headers

    Returns:
        Configured AsyncMock response usable as an async context manager
    """
    response = AsyncMock()
    response.status = status
    response.headers = dict(headers or {})

    if json_data is not None:
        response.json.return_value = json_data
        response.text.return_value = json.dumps(json_data)
    else:
        response.text.return_value = ""
    if text_data is not None:
        response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response


def token_response(token: str = "token-1", expires_in: float | None = 3600) -> AsyncMock:
    """Mock OAuth token endpoint response."""
    body: dict[str, Any] = {"access_token": token, "token_type": "Bearer"}
    if expires_in is not None:
        body["expires_in"] = expires_in
    return create_mock_response(status=200, json_data=body)


_END = object()


class FakeConnection:
    """In-memory stand-in for a websockets ClientConnection.

    Frames queued with :meth:`feed` are yielded by async iteration in order.
    """

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self._queue: asyncio.Queue[Any] = asyncio.Queue()

    def feed(self, frame: str | bytes) -> None:
        self._queue.put_nowait(frame)

    def feed_json(self, payload: Any) -> None:
        self.feed(json.dumps(payload))

    def end(self, code: int = 1000, reason: str = "") -> None:
        """Simulate the server closing the stream."""
        self.close_code = code
        self.close_reason = reason
        self._queue.put_nowait(_END)

    def fail(self, error: BaseException) -> None:
        self._queue.put_nowait(error)

    def sent_json(self) -> list[Any]:
        return [json.loads(frame) for frame in self.sent]

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.close_code is None:
            self.close_code = 1000
            self.close_reason = ""
        self._queue.put_nowait(_END)

    def __aiter__(self) -> FakeConnection:
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def fake_connection() -> FakeConnection:
    return FakeConnection()


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)
