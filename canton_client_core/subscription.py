"""Runtime state machine for one streaming WebSocket subscription.

States::

    CONNECTING --open ok--> OPEN --close()--> CLOSING --> CLOSED
    CONNECTING --failure--> CLOSED
    OPEN --peer close / fatal error--> CLOSED

Each inbound frame is decoded and validated before delivery. A frame that
fails validation is reported through ``on_error`` and the stream stays open.
``on_close`` fires exactly once, whichever side ends the stream.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

from websockets.exceptions import ConnectionClosed

from .errors import (
    LedgerClientError,
    SubscriptionError,
    TransportError,
    ValidationError,
)
from .schema import Schema
from .transport import redact_url
from .ws_client import LedgerWsClient, LedgerWsMessage, LedgerWsMessageType

_LOGGER = logging.getLogger(__name__)

M = TypeVar("M")

DEFAULT_CLOSE_TIMEOUT = 5.0


class SubscriptionState(Enum):
    """Lifecycle of a subscription."""

    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class SubscriptionHandlers(Generic[M]):
    """Callbacks for a subscription. Each may be a plain or async callable.

    Attributes:
        on_message: Receives each validated message, in arrival order
        on_error: Receives :class:`SubscriptionError` for bad frames, server
            error frames and fatal connection failures
        on_close: Receives ``(code, reason)`` once when the stream ends
        on_open: Called once after the stream request has been sent
    """

    on_message: Callable[[M], Any]
    on_error: Callable[[SubscriptionError], Any] | None = None
    on_close: Callable[[int | None, str], Any] | None = None
    on_open: Callable[[], Any] | None = None


class Subscription(Generic[M]):
    """Handle for one active stream.

    Usage:
        sub = await client.subscribe("subscribe_to_updates", params, handlers)
        ...
        await sub.close()
    """

    def __init__(
        self,
        name: str,
        message_schema: Schema[M],
        handlers: SubscriptionHandlers[M],
        *,
        error_schema: Schema[Any] | None = None,
        close_timeout: float = DEFAULT_CLOSE_TIMEOUT,
    ) -> None:
        self.name = name
        self._message_schema = message_schema
        self._error_schema = error_schema
        self._handlers = handlers
        self._close_timeout = close_timeout

        self._state = SubscriptionState.CONNECTING
        self._ws: LedgerWsClient | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._close_notified = False
        self._closed_event = asyncio.Event()
        self._close_code: int | None = None
        self._close_reason = ""

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is SubscriptionState.OPEN

    @property
    def close_code(self) -> int | None:
        return self._close_code

    @property
    def close_reason(self) -> str:
        return self._close_reason

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def open(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        subprotocols: Sequence[str] | None = None,
        initial_message: Any = None,
        timeout: float = 15.0,
    ) -> None:
        """Connect, send the stream request and start delivering messages.

        Raises:
            SubscriptionError: If this subscription was already opened
            TransportError: If the connection or the initial send fails
        """
        if self._state is not SubscriptionState.CONNECTING or self._ws is not None:
            raise SubscriptionError(
                f"[{self.name}] Subscription cannot be reopened; subscribe again"
            )

        _LOGGER.info("[%s] Connecting to %s", self.name, redact_url(url))
        ws = LedgerWsClient()
        try:
            await ws.connect(url, headers=headers, subprotocols=subprotocols, timeout=timeout)
            self._ws = ws
            if initial_message is not None:
                await ws.send_json(initial_message)
        except LedgerClientError as err:
            _LOGGER.warning("[%s] Subscription failed to open: %s", self.name, err)
            if ws.connected:
                await self._close_quietly(ws)
            self._ws = None
            self._state = SubscriptionState.CLOSED
            self._closed_event.set()
            raise

        self._state = SubscriptionState.OPEN
        _LOGGER.info("[%s] Subscription open", self.name)
        self._listen_task = asyncio.create_task(self._listen(ws))
        if self._handlers.on_open is not None:
            await self._invoke("on_open", self._handlers.on_open)

    async def send_json(self, payload: Any) -> None:
        """Send a follow-up JSON frame on an open stream."""
        if self._state is not SubscriptionState.OPEN or self._ws is None:
            raise SubscriptionError(f"[{self.name}] Subscription is not open")
        await self._ws.send_json(payload)

    async def close(self) -> None:
        """Close the stream. Calling this on a closing or closed stream is a no-op."""
        if self._state in (SubscriptionState.CLOSING, SubscriptionState.CLOSED):
            return
        if self._state is SubscriptionState.CONNECTING:
            await self._finish(None, "closed before open")
            return

        _LOGGER.info("[%s] Closing subscription", self.name)
        self._state = SubscriptionState.CLOSING

        if self._ws is not None:
            await self._close_quietly(self._ws)

        task = self._listen_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            # Let an in-progress handler finish; it is never cancelled here.
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self._close_timeout)
            except TimeoutError:
                _LOGGER.warning("[%s] Listener did not stop within close timeout", self.name)

        await self._finish(1000, "closed by client")

    async def wait_closed(self) -> None:
        """Wait until the subscription reaches CLOSED."""
        await self._closed_event.wait()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _listen(self, ws: LedgerWsClient) -> None:
        try:
            await self._read(ws)
        except Exception as err:
            await self._fail(err)

    async def _read(self, ws: LedgerWsClient) -> None:
        async for message in ws:
            if self._state is not SubscriptionState.OPEN:
                break
            if message.type is LedgerWsMessageType.TEXT:
                await self._dispatch(message)
            elif message.type is LedgerWsMessageType.CLOSED:
                code, reason = message.data or (None, "")
                _LOGGER.info("[%s] Stream closed by server (%s)", self.name, code)
                await self._finish(code, reason)
                return
            else:
                await self._fail(message.data)
                return

        if self._state is SubscriptionState.OPEN:
            await self._finish(None, "")

    async def _dispatch(self, message: LedgerWsMessage) -> None:
        try:
            payload = LedgerWsClient.decode_json(message)
        except (ValueError, RecursionError) as err:
            await self._report(
                SubscriptionError(
                    f"[{self.name}] Received a frame that is not valid JSON",
                    cause=err,
                    payload=message.data,
                )
            )
            return

        try:
            parsed = self._message_schema.parse(payload)
        except RecursionError as err:
            await self._report(
                SubscriptionError(
                    f"[{self.name}] Message is nested too deeply to validate",
                    cause=err,
                )
            )
            return
        except ValidationError as err:
            if self._error_schema is not None and self._error_schema.is_valid(payload):
                await self._report(
                    SubscriptionError(
                        f"[{self.name}] Server reported an error", payload=payload
                    )
                )
            else:
                await self._report(
                    SubscriptionError(
                        f"[{self.name}] Message failed validation: {err}",
                        cause=err,
                        payload=payload,
                    )
                )
            return

        try:
            result = self._handlers.on_message(parsed)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            await self._report(
                SubscriptionError(
                    f"[{self.name}] Message handler raised: {err}",
                    cause=err,
                    payload=parsed,
                )
            )

    async def _fail(self, cause: Any) -> None:
        code: int | None = None
        reason = ""
        if isinstance(cause, ConnectionClosed) and cause.rcvd is not None:
            code, reason = cause.rcvd.code, cause.rcvd.reason
        _LOGGER.error("[%s] Stream failed: %s", self.name, cause)
        await self._report(
            SubscriptionError(
                f"[{self.name}] Connection failed: {cause}",
                cause=cause if isinstance(cause, BaseException) else None,
            )
        )
        if self._ws is not None:
            await self._close_quietly(self._ws)
        await self._finish(code, reason or "connection failed")

    async def _report(self, error: SubscriptionError) -> None:
        if self._handlers.on_error is None:
            _LOGGER.warning("%s", error)
            return
        await self._invoke("on_error", self._handlers.on_error, error)

    async def _finish(self, code: int | None, reason: str) -> None:
        if self._close_notified:
            return
        self._close_notified = True
        self._state = SubscriptionState.CLOSED
        self._close_code = code
        self._close_reason = reason
        self._ws = None
        self._closed_event.set()
        if self._handlers.on_close is not None:
            await self._invoke("on_close", self._handlers.on_close, code, reason)

    async def _invoke(self, label: str, callback: Callable[..., Any], *args: Any) -> None:
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as err:
            _LOGGER.exception("[%s] %s callback error: %s", self.name, label, err)

    async def _close_quietly(self, ws: LedgerWsClient) -> None:
        try:
            await asyncio.wait_for(ws.close(), timeout=self._close_timeout)
        except TimeoutError:
            _LOGGER.warning("[%s] WebSocket close timed out", self.name)
        except (TransportError, ConnectionClosed, OSError) as err:
            _LOGGER.debug("[%s] Error while closing WebSocket: %s", self.name, err)
