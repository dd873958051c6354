"""HTTP transport with timeout and retry/backoff for ledger API endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import aiohttp

from .errors import HttpError, RequestTimeout, TransportError

_LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 502, 503, 504})

_SENSITIVE_HEADERS = frozenset({"authorization", "proxy-authorization", "cookie"})
_SENSITIVE_QUERY_KEYS = frozenset({"access_token", "token", "client_secret", "password"})
_SENSITIVE_BODY_KEYS = frozenset(
    {"password", "client_secret", "access_token", "refresh_token", "authorization"}
)
REDACTED = "[REDACTED]"


def redact_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Copy headers with credential values masked, for logging."""
    if not headers:
        return {}
    return {
        key: REDACTED if key.lower() in _SENSITIVE_HEADERS else value
        for key, value in headers.items()
    }


def redact_url(url: str) -> str:
    """Mask credential-bearing query parameters in ``url``, for logging."""
    parts = urlsplit(url)
    if not parts.query:
        return url
    query = [
        (key, REDACTED if key.lower() in _SENSITIVE_QUERY_KEYS else value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
    ]
    return urlunsplit(parts._replace(query=urlencode(query, safe="[]")))


def redact_body(body: Any) -> Any:
    """Copy a JSON body with credential fields masked at any depth, for logging."""
    if isinstance(body, Mapping):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower() in _SENSITIVE_BODY_KEYS
            else redact_body(value)
            for key, value in body.items()
        }
    if isinstance(body, list):
        return [redact_body(item) for item in body]
    return body


def _loggable(body: Any) -> str:
    if isinstance(body, (bytes, bytearray)):
        return f"<{len(body)} bytes>"
    if isinstance(body, str):
        return body
    return json.dumps(redact_body(body), default=str)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration with exponential backoff and full jitter.

    Attributes:
        max_retries: Retries after the first attempt (0 disables retrying)
        base_delay: Initial backoff in seconds
        max_delay: Backoff cap in seconds
        multiplier: Exponential growth factor per retry
        jitter: Sleep a random duration in [0, backoff]
        retry_statuses: HTTP statuses treated as transient
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: bool = True
    retry_statuses: frozenset[int] = field(default=RETRYABLE_STATUSES)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must not be negative")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    def backoff(self, retry_index: int) -> float:
        """Compute the sleep before retry number ``retry_index`` (0-based)."""
        raw = min(self.base_delay * (self.multiplier**retry_index), self.max_delay)
        if self.jitter:
            return random.uniform(0, raw)
        return raw


NO_RETRY = RetryPolicy(max_retries=0)


@dataclass(frozen=True)
class HttpResponse:
    """Successful HTTP response with a decoded body."""

    status: int
    data: Any
    headers: Mapping[str, str] = field(default_factory=dict)


def _retry_after(headers: Mapping[str, str]) -> float | None:
    value = next((v for k, v in headers.items() if k.lower() == "retry-after"), None)
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


class HttpTransport:
    """Execute single HTTP requests over a shared aiohttp session.

    Transient failures (timeouts, connection errors, and statuses in
    ``retry_policy.retry_statuses``) are retried with backoff. Any other
    non-2xx status raises :class:`HttpError` immediately.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._session = session
        self._timeout = timeout
        self._retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    async def execute(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None = None,
        body: Any = None,
        *,
        timeout: float | None = None,
    ) -> HttpResponse:
        """Send one request, retrying transient failures per policy.

        Raises:
            HttpError: Non-retryable status, or retryable status after the
                last retry
            RequestTimeout: Request timed out on the last attempt
            TransportError: Network failure on the last attempt
        """
        policy = self._retry_policy
        retry_index = 0
        while True:
            try:
                return await self._send(method, url, headers, body, timeout or self._timeout)
            except HttpError as err:
                if err.status not in policy.retry_statuses or retry_index >= policy.max_retries:
                    raise
                delay = _retry_after(err.headers)
                if delay is None:
                    delay = policy.backoff(retry_index)
                reason = f"status {err.status}"
            except TransportError as err:
                if retry_index >= policy.max_retries:
                    raise
                delay = policy.backoff(retry_index)
                reason = str(err)

            retry_index += 1
            _LOGGER.warning(
                "%s %s failed (%s), retry %d/%d in %.2fs",
                method,
                redact_url(url),
                reason,
                retry_index,
                policy.max_retries,
                delay,
            )
            await self._sleep(delay)

    async def _send(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str] | None,
        body: Any,
        timeout: float,
    ) -> HttpResponse:
        safe_url = redact_url(url)
        request_headers = dict(headers or {})
        kwargs: dict[str, Any] = {}
        if isinstance(body, (bytes, bytearray)):
            request_headers.setdefault("Content-Type", "application/octet-stream")
            kwargs["data"] = bytes(body)
        elif body is not None:
            request_headers.setdefault("Content-Type", "application/json")
            kwargs["data"] = json.dumps(body)

        _LOGGER.debug(
            "%s %s headers=%s", method, safe_url, redact_headers(request_headers)
        )
        if body is not None and _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("%s %s request body: %s", method, safe_url, _loggable(body))
        try:
            async with self._session.request(
                method,
                url,
                headers=request_headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
                **kwargs,
            ) as resp:
                payload = self._decode(await resp.text())
                response_headers = dict(resp.headers)
                if _LOGGER.isEnabledFor(logging.DEBUG):
                    _LOGGER.debug(
                        "%s %s response body (%s): %s",
                        method,
                        safe_url,
                        resp.status,
                        _loggable(payload),
                    )
                if 200 <= resp.status < 300:
                    _LOGGER.debug("%s %s -> %s", method, safe_url, resp.status)
                    return HttpResponse(resp.status, payload, response_headers)
                raise HttpError(
                    resp.status,
                    f"{method} request to {safe_url} failed with status {resp.status}",
                    body=payload,
                    method=method,
                    url=safe_url,
                    headers=response_headers,
                )
        except TimeoutError as err:
            raise RequestTimeout(f"{method} request to {safe_url} timed out") from err
        except aiohttp.ClientError as err:
            raise TransportError(f"{method} request to {safe_url} failed: {err}") from err

    @staticmethod
    def _decode(text: str) -> Any:
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text
