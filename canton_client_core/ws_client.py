"""WebSocket client wrapper for ledger streaming endpoints."""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from websockets.asyncio.client import ClientConnection
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from .errors import LedgerClientError, TransportError
from .ws import connect_websocket

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class LedgerWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class LedgerWsMessage:
    """Normalized WebSocket message payload.

    ``data`` is the frame text for TEXT, ``(code, reason)`` for CLOSED and the
    underlying exception for ERROR.
    """

    type: LedgerWsMessageType
    data: Any = None


class LedgerWsClient:
    """Wrapper around the websockets library for ledger streams."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        subprotocols: Sequence[str] | None = None,
        ping_interval: float | None = 20,
        timeout: float = 15.0,
    ) -> None:
        """Connect to the stream endpoint."""
        if self._ws is not None:
            raise LedgerClientError("WebSocket is already connected")
        self._ws = await connect_websocket(
            url,
            headers=headers,
            subprotocols=subprotocols,
            ping_interval=ping_interval,
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_json(self, payload: Any) -> None:
        """Send a JSON payload as a text frame."""
        if self._ws is None:
            raise TransportError("WebSocket is not connected")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as err:
            raise TransportError("WebSocket closed while sending") from err

    def __aiter__(self) -> AsyncIterator[LedgerWsMessage]:
        if self._ws is None:
            raise TransportError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[LedgerWsMessage]:
        if self._ws is None:
            raise TransportError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                if isinstance(msg, bytes):
                    continue
                yield LedgerWsMessage(LedgerWsMessageType.TEXT, msg)
        except ConnectionClosedOK:
            yield LedgerWsMessage(LedgerWsMessageType.CLOSED, self._close_info())
        except ConnectionClosed as err:
            yield LedgerWsMessage(LedgerWsMessageType.ERROR, err)
        except Exception as err:
            yield LedgerWsMessage(LedgerWsMessageType.ERROR, err)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield LedgerWsMessage(LedgerWsMessageType.CLOSED, self._close_info())

    def _close_info(self) -> tuple[int | None, str]:
        code = getattr(self._ws, "close_code", None)
        reason = getattr(self._ws, "close_reason", None)
        return (code if isinstance(code, int) else None, reason if isinstance(reason, str) else "")

    @staticmethod
    def decode_json(message: LedgerWsMessage) -> Any:
        """Decode a TEXT message payload into JSON."""
        if message.type is not LedgerWsMessageType.TEXT:
            raise LedgerClientError("Only TEXT messages can be decoded")
        if not isinstance(message.data, str):
            raise LedgerClientError("Message data is not a string")
        return json.loads(message.data)
