"""Bearer token resolution and caching.

An :class:`AuthProvider` turns one :data:`AuthConfig` into bearer tokens. The
resolved token and its expiry are cached per provider; concurrent callers
that arrive while a resolution is in flight share that resolution instead of
starting their own.

States::

    UNRESOLVED --get_token--> RESOLVING --ok--> VALID --expiry/401--> EXPIRED
         ^                        |                                     |
         +-------- failure -------+          EXPIRED --get_token--> RESOLVING
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aiohttp

from .errors import AuthError, ConfigurationError, ValidationError
from .localnet import decode_claims, is_localnet_token
from .schema import number, obj, optional, string

_LOGGER = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = 300.0
DEFAULT_TOKEN_TIMEOUT = 30.0

_TOKEN_RESPONSE = obj(
    {
        "access_token": string(min_length=1),
        "token_type": optional(string()),
        "expires_in": optional(number(minimum=0)),
        "scope": optional(string()),
    }
)


class AuthState(Enum):
    """Lifecycle of the cached credential."""

    UNRESOLVED = "unresolved"
    RESOLVING = "resolving"
    VALID = "valid"
    EXPIRED = "expired"


@dataclass(frozen=True)
class NoAuth:
    """Explicitly unauthenticated access."""


@dataclass(frozen=True)
class StaticToken:
    """Pre-issued bearer token used as-is."""

    token: str = field(repr=False)


@dataclass(frozen=True)
class ClientCredentials:
    """OAuth2 client-credentials grant against ``token_url``."""

    client_id: str
    client_secret: str = field(repr=False)
    token_url: str
    audience: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class PasswordGrant:
    """OAuth2 resource-owner password grant against ``token_url``."""

    client_id: str
    username: str
    password: str = field(repr=False)
    token_url: str
    client_secret: str | None = field(default=None, repr=False)
    audience: str | None = None
    scope: str | None = None


@dataclass(frozen=True)
class TokenGenerator:
    """Token minted by a local callable (sync or async).

    Set ``local`` for generators that sign with the local development secret.
    """

    fn: Callable[[], str | Awaitable[str]]
    local: bool = False


AuthConfig = NoAuth | StaticToken | ClientCredentials | PasswordGrant | TokenGenerator


class AuthProvider:
    """Resolve and cache bearer tokens for one client.

    Args:
        config: Credential source
        session: aiohttp session used for OAuth token requests. A short-lived
            session is opened per request when omitted.
        allow_local_tokens: Accept tokens signed with the local development
            secret. Only local networks may enable this.
        refresh_margin: Seconds before expiry at which a token is refreshed
            (capped at half the token lifetime)
        timeout: Token endpoint request timeout in seconds
        clock: Time source returning epoch seconds
    """

    def __init__(
        self,
        config: AuthConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        allow_local_tokens: bool = False,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        timeout: float = DEFAULT_TOKEN_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if isinstance(config, TokenGenerator) and config.local and not allow_local_tokens:
            raise ConfigurationError(
                "Local development tokens are only allowed on a localnet client"
            )
        self._config = config
        self.session = session
        self._allow_local_tokens = allow_local_tokens
        self._refresh_margin = refresh_margin
        self._timeout = timeout
        self._clock = clock

        self._state = AuthState.UNRESOLVED
        self._token: str | None = None
        self._expires_at: float | None = None
        self._refresh_at: float | None = None
        self._inflight: asyncio.Task[str] | None = None
        self.resolution_count = 0

    @property
    def config(self) -> AuthConfig:
        return self._config

    @property
    def state(self) -> AuthState:
        if self._state is AuthState.VALID and self._is_stale():
            return AuthState.EXPIRED
        return self._state

    @property
    def expires_at(self) -> float | None:
        return self._expires_at

    @property
    def requires_token(self) -> bool:
        return not isinstance(self._config, NoAuth)

    async def get_token(self) -> str | None:
        """Return a valid bearer token, resolving it if necessary.

        Returns None only for :class:`NoAuth`.

        Raises:
            AuthError: If the credential cannot be resolved
        """
        if not self.requires_token:
            return None

        if self._state is AuthState.VALID:
            token = self._token
            if token is not None and not self._is_stale():
                return token
            _LOGGER.debug("Cached token expired, refreshing")
            self._state = AuthState.EXPIRED

        if self._inflight is None:
            self._state = AuthState.RESOLVING
            self._inflight = asyncio.create_task(self._run_resolution())

        # Shield so one cancelled caller does not abort the shared resolution.
        return await asyncio.shield(self._inflight)

    def invalidate(self, stale_token: str | None = None) -> None:
        """Force the cached token to expire.

        When ``stale_token`` is given, the cache is only dropped if it still
        holds that token, so concurrent 401s trigger a single refresh.
        """
        if self._state is not AuthState.VALID:
            return
        if stale_token is not None and stale_token != self._token:
            return
        _LOGGER.debug("Invalidating cached token")
        self._state = AuthState.EXPIRED
        self._token = None
        self._expires_at = None
        self._refresh_at = None

    def _is_stale(self) -> bool:
        return self._refresh_at is not None and self._clock() >= self._refresh_at

    async def _run_resolution(self) -> str:
        self.resolution_count += 1
        try:
            token, expires_at = await self._resolve()
            self._check_token_policy(token)
        except Exception:
            self._state = AuthState.UNRESOLVED
            self._token = None
            raise
        finally:
            self._inflight = None

        now = self._clock()
        self._token = token
        self._expires_at = expires_at
        if expires_at is None:
            self._refresh_at = None
        else:
            margin = min(self._refresh_margin, max(expires_at - now, 0.0) / 2)
            self._refresh_at = expires_at - margin
        self._state = AuthState.VALID
        return token

    async def _resolve(self) -> tuple[str, float | None]:
        config = self._config
        if isinstance(config, StaticToken):
            if not config.token:
                raise AuthError("Static token is empty")
            return config.token, self._jwt_expiry(config.token)
        if isinstance(config, TokenGenerator):
            return await self._generate(config)
        if isinstance(config, ClientCredentials):
            form = {
                "grant_type": "client_credentials",
                "client_id": config.client_id,
                "client_secret": config.client_secret,
            }
            return await self._fetch_oauth_token(config.token_url, form, config.audience, config.scope)
        if isinstance(config, PasswordGrant):
            form = {
                "grant_type": "password",
                "client_id": config.client_id,
                "username": config.username,
                "password": config.password,
            }
            if config.client_secret:
                form["client_secret"] = config.client_secret
            return await self._fetch_oauth_token(config.token_url, form, config.audience, config.scope)
        raise ConfigurationError(f"Unsupported auth configuration: {type(config).__name__}")

    async def _generate(self, config: TokenGenerator) -> tuple[str, float | None]:
        try:
            result: Any = config.fn()
            if inspect.isawaitable(result):
                result = await result
        except AuthError:
            raise
        except Exception as err:
            raise AuthError(f"Token generator failed: {err}") from err
        if not isinstance(result, str) or not result:
            raise AuthError("Token generator returned an empty or non-string token")
        return result, self._jwt_expiry(result)

    async def _fetch_oauth_token(
        self,
        token_url: str,
        form: dict[str, str],
        audience: str | None,
        scope: str | None,
    ) -> tuple[str, float | None]:
        if audience:
            form["audience"] = audience
        if scope:
            form["scope"] = scope

        _LOGGER.debug("Requesting %s token from %s", form["grant_type"], token_url)
        if self.session is not None:
            data = await self._post_token_request(self.session, token_url, form)
        else:
            async with aiohttp.ClientSession() as session:
                data = await self._post_token_request(session, token_url, form)

        try:
            parsed = _TOKEN_RESPONSE.parse(data)
        except ValidationError as err:
            raise AuthError(f"Token endpoint returned an invalid response: {err}") from err

        expires_in = parsed.get("expires_in")
        if expires_in is None:
            return parsed["access_token"], self._jwt_expiry(parsed["access_token"])
        return parsed["access_token"], self._clock() + float(expires_in)

    async def _post_token_request(
        self,
        session: aiohttp.ClientSession,
        token_url: str,
        form: dict[str, str],
    ) -> Any:
        try:
            async with session.post(
                token_url,
                data=form,
                headers={"Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status != 200:
                    _LOGGER.warning(
                        "Token request to %s failed with status %s", token_url, resp.status
                    )
                    raise AuthError(
                        f"Token endpoint returned status {resp.status}", status=resp.status
                    )
                return await resp.json(content_type=None)
        except TimeoutError as err:
            raise AuthError("Token request timed out") from err
        except aiohttp.ClientError as err:
            raise AuthError(f"Token request failed: {err}") from err
        except ValueError as err:
            raise AuthError("Token endpoint returned a non-JSON body") from err

    def _check_token_policy(self, token: str) -> None:
        if not self._allow_local_tokens and is_localnet_token(token):
            raise AuthError(
                "Refusing a token signed with the local development secret "
                "on a non-local network"
            )

    @staticmethod
    def _jwt_expiry(token: str) -> float | None:
        claims = decode_claims(token)
        if claims is None:
            return None
        exp = claims.get("exp")
        if isinstance(exp, (int, float)) and not isinstance(exp, bool):
            return float(exp)
        return None
