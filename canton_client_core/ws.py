"""WebSocket helpers for ledger streaming endpoints."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence
from urllib.parse import urlencode, urlsplit

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    InvalidHandshake,
    InvalidURI,
    WebSocketException,
)
from websockets.typing import Subprotocol

from .errors import (
    HandshakeError,
    RequestTimeout,
    TransportError,
)
from .transport import redact_url


def to_ws_url(api_url: str, path: str, query: Mapping[str, str] | None = None) -> str:
    """Build a ws(s) URL from an http(s) API base URL and a path.

    Bare hosts are treated as https.
    """
    base = api_url.rstrip("/")
    if not base.startswith(("http://", "https://", "ws://", "wss://")):
        base = f"https://{base}"
    if base.startswith("https://"):
        base = "wss://" + base[len("https://") :]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://") :]
    url = f"{base}{path}"
    if query:
        separator = "&" if urlsplit(url).query else "?"
        url = f"{url}{separator}{urlencode(query)}"
    return url


async def connect_websocket(
    url: str,
    *,
    headers: Mapping[str, str] | None = None,
    subprotocols: Sequence[str] | None = None,
    ping_interval: float | None = 20,
    timeout: float = 15.0,
) -> ClientConnection:
    """Connect to a WebSocket endpoint.

    Args:
        url: Full ws:// or wss:// URL
        headers: Extra handshake headers (e.g. Authorization)
        subprotocols: Offered subprotocols
        ping_interval: Interval for ping frames
        timeout: Connection timeout
    """
    safe_url = redact_url(url)
    try:
        return await asyncio.wait_for(
            websockets.connect(
                url,
                additional_headers=dict(headers) if headers else None,
                subprotocols=[Subprotocol(p) for p in subprotocols] if subprotocols else None,
                ping_interval=ping_interval,
                close_timeout=5,
                max_size=None,
            ),
            timeout=timeout,
        )
    except TimeoutError as err:
        raise RequestTimeout(f"WebSocket connection to {safe_url} timed out") from err
    except (InvalidHandshake, InvalidURI) as err:
        raise HandshakeError(f"WebSocket handshake with {safe_url} failed: {err}") from err
    except (OSError, WebSocketException) as err:
        raise TransportError(f"WebSocket connection to {safe_url} failed: {err}") from err
