"""Tests for LedgerWsClient WebSocket wrapper."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from canton_client_core.errors import LedgerClientError, TransportError
from canton_client_core.ws_client import (
    LedgerWsClient,
    LedgerWsMessage,
    LedgerWsMessageType,
)

WS_URL = "wss://ledger.example.com/v2/updates"


class AsyncIteratorMock:
    """Helper class to create a proper async iterator mock."""

    def __init__(
        self,
        items: list,
        *,
        raise_on_iter: Exception | None = None,
        close_code: int | None = None,
        close_reason: str | None = None,
    ):
        self._items = items
        self._index = 0
        self._raise_on_iter = raise_on_iter
        self.close_code = close_code
        self.close_reason = close_reason
        self.close = AsyncMock()
        self.send = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._index >= len(self._items):
            if self._raise_on_iter is not None:
                raise self._raise_on_iter
            raise StopAsyncIteration
        item = self._items[self._index]
        self._index += 1
        return item


async def connected_client(mock_ws) -> LedgerWsClient:
    with patch(
        "canton_client_core.ws_client.connect_websocket",
        return_value=mock_ws,
    ):
        client = LedgerWsClient()
        await client.connect(WS_URL)
    return client


class TestLedgerWsMessage:
    """Tests for LedgerWsMessage dataclass."""

    def test_message_is_frozen(self):
        msg = LedgerWsMessage(type=LedgerWsMessageType.TEXT, data="test")
        with pytest.raises(AttributeError):
            msg.data = "modified"  # type: ignore[misc]


class TestLedgerWsClientConnect:
    """Tests for LedgerWsClient.connect()."""

    async def test_connect_success(self):
        """Test successful WebSocket connection."""
        mock_ws = AsyncMock()

        with patch(
            "canton_client_core.ws_client.connect_websocket",
            return_value=mock_ws,
        ) as mock_connect:
            client = LedgerWsClient()
            await client.connect(
                WS_URL,
                headers={"Authorization": "Bearer t"},
                subprotocols=["daml.ws.auth"],
            )

            mock_connect.assert_called_once_with(
                WS_URL,
                headers={"Authorization": "Bearer t"},
                subprotocols=["daml.ws.auth"],
                ping_interval=20,
                timeout=15.0,
            )
            assert client.connected

    async def test_connect_twice_rejected(self):
        """A client owns at most one connection."""
        client = await connected_client(AsyncMock())
        with pytest.raises(LedgerClientError, match="already connected"):
            await client.connect(WS_URL)

    async def test_connect_propagates_errors(self):
        """Test that connection errors are propagated."""
        with patch(
            "canton_client_core.ws_client.connect_websocket",
            side_effect=TransportError("Connection failed"),
        ):
            client = LedgerWsClient()
            with pytest.raises(TransportError, match="Connection failed"):
                await client.connect(WS_URL)
            assert not client.connected


class TestLedgerWsClientSend:
    """Tests for close() and send_json()."""

    async def test_close_connected(self):
        mock_ws = AsyncMock()
        client = await connected_client(mock_ws)
        await client.close()
        mock_ws.close.assert_called_once()

    async def test_close_not_connected(self):
        """Test closing when not connected (no error)."""
        await LedgerWsClient().close()

    async def test_send_json_success(self):
        mock_ws = AsyncMock()
        client = await connected_client(mock_ws)

        await client.send_json({"userId": "alice", "parties": ["alice::1"]})

        mock_ws.send.assert_called_once_with('{"userId": "alice", "parties": ["alice::1"]}')

    async def test_send_json_not_connected(self):
        with pytest.raises(TransportError, match="not connected"):
            await LedgerWsClient().send_json({"type": "test"})

    async def test_send_json_on_closed_connection(self):
        mock_ws = AsyncMock()
        mock_ws.send.side_effect = ConnectionClosedError(Close(1011, "boom"), None)
        client = await connected_client(mock_ws)

        with pytest.raises(TransportError, match="closed while sending"):
            await client.send_json({})


class TestLedgerWsClientIteration:
    """Tests for LedgerWsClient async iteration."""

    def test_iter_not_connected(self):
        with pytest.raises(TransportError, match="not connected"):
            LedgerWsClient().__aiter__()

    async def test_text_then_graceful_close(self):
        mock_ws = AsyncIteratorMock(["one", "two"], close_code=1000, close_reason="done")
        client = await connected_client(mock_ws)

        messages = [msg async for msg in client]

        assert [m.type for m in messages] == [
            LedgerWsMessageType.TEXT,
            LedgerWsMessageType.TEXT,
            LedgerWsMessageType.CLOSED,
        ]
        assert messages[0].data == "one"
        assert messages[2].data == (1000, "done")

    async def test_skips_binary_messages(self):
        mock_ws = AsyncIteratorMock(["text1", b"\x00\x01\x02", "text2"])
        client = await connected_client(mock_ws)

        messages = [msg async for msg in client]

        text = [m.data for m in messages if m.type is LedgerWsMessageType.TEXT]
        assert text == ["text1", "text2"]

    async def test_connection_closed_ok(self):
        mock_ws = AsyncIteratorMock(
            [],
            raise_on_iter=ConnectionClosedOK(Close(1000, "bye"), Close(1000, "bye")),
            close_code=1000,
            close_reason="bye",
        )
        client = await connected_client(mock_ws)

        messages = [msg async for msg in client]

        assert len(messages) == 1
        assert messages[0].type is LedgerWsMessageType.CLOSED
        assert messages[0].data == (1000, "bye")

    async def test_connection_closed_error(self):
        error = ConnectionClosedError(Close(1011, "internal error"), None)
        client = await connected_client(AsyncIteratorMock(["a"], raise_on_iter=error))

        messages = [msg async for msg in client]

        assert messages[0].type is LedgerWsMessageType.TEXT
        assert messages[1].type is LedgerWsMessageType.ERROR
        assert messages[1].data is error

    async def test_unexpected_error(self):
        client = await connected_client(
            AsyncIteratorMock([], raise_on_iter=RuntimeError("Unexpected"))
        )

        messages = [msg async for msg in client]

        assert len(messages) == 1
        assert messages[0].type is LedgerWsMessageType.ERROR
        assert isinstance(messages[0].data, RuntimeError)


class TestDecodeJson:
    """Tests for LedgerWsClient.decode_json()."""

    def test_decode_text(self):
        msg = LedgerWsMessage(LedgerWsMessageType.TEXT, json.dumps({"update": {}}))
        assert LedgerWsClient.decode_json(msg) == {"update": {}}

    def test_decode_invalid_json(self):
        with pytest.raises(ValueError):
            LedgerWsClient.decode_json(LedgerWsMessage(LedgerWsMessageType.TEXT, "{nope"))

    def test_decode_non_text(self):
        with pytest.raises(LedgerClientError):
            LedgerWsClient.decode_json(LedgerWsMessage(LedgerWsMessageType.CLOSED))
