"""Client aggregating a fixed set of operations for one ledger API."""

from __future__ import annotations

import functools
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from .auth import AuthConfig, AuthProvider, ClientCredentials, NoAuth, PasswordGrant
from .errors import ConfigurationError
from .operation import (
    ApiOperation,
    OperationDescriptor,
    WebSocketOperation,
    execute_api_operation,
    open_subscription,
)
from .subscription import Subscription, SubscriptionHandlers
from .transport import DEFAULT_TIMEOUT, HttpTransport, RetryPolicy

_LOGGER = logging.getLogger(__name__)

LOCALNET = "localnet"


@dataclass(frozen=True)
class ClientConfig:
    """Immutable configuration owned by one client.

    Attributes:
        api_url: Base URL of the API (``https://host:port``)
        auth: Credential source
        party_id: Default acting party
        user_id: Ledger API user the credential belongs to
        managed_parties: Extra parties included in party lists
        timeout: Per-request timeout in seconds
        retry_policy: Transport retry policy
        network: ``localnet`` or a remote network name
    """

    api_url: str
    auth: AuthConfig = field(default_factory=NoAuth)
    party_id: str | None = None
    user_id: str | None = None
    managed_parties: tuple[str, ...] = ()
    timeout: float = DEFAULT_TIMEOUT
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    network: str = "mainnet"

    def __post_init__(self) -> None:
        if not self.api_url or not self.api_url.startswith(("http://", "https://")):
            raise ConfigurationError(f"api_url must be an http(s) URL, got {self.api_url!r}")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        object.__setattr__(self, "api_url", self.api_url.rstrip("/"))
        object.__setattr__(self, "managed_parties", tuple(self.managed_parties))

    @property
    def is_localnet(self) -> bool:
        return self.network == LOCALNET


class LedgerClient:
    """Named collection of operations bound to one API and credential.

    Every operation is reachable through :meth:`call` / :meth:`subscribe` and
    as an attribute named after the operation::

        async with LedgerClient(config, [GetVersion]) as client:
            version = await client.get_version()

    Args:
        config: Client configuration
        operations: Operation descriptors served by this client
        session: aiohttp session to reuse. The client creates and owns one
            when omitted.
        auth_provider: Override the provider built from ``config.auth``
        transport: Override the HTTP transport
    """

    def __init__(
        self,
        config: ClientConfig,
        operations: Iterable[OperationDescriptor] | Mapping[str, OperationDescriptor] = (),
        *,
        session: aiohttp.ClientSession | None = None,
        auth_provider: AuthProvider | None = None,
        transport: HttpTransport | None = None,
    ) -> None:
        self._config = config
        ops = operations.values() if isinstance(operations, Mapping) else operations
        self._operations: dict[str, OperationDescriptor] = {}
        for op in ops:
            if op.name in self._operations:
                raise ConfigurationError(f"Duplicate operation name {op.name!r}")
            if hasattr(type(self), op.name):
                raise ConfigurationError(f"Operation name {op.name!r} shadows a client attribute")
            self._operations[op.name] = op

        self._session = session
        self._owns_session = session is None
        self._owns_auth_provider = auth_provider is None
        self._auth_provider = auth_provider or AuthProvider(
            config.auth,
            session=session,
            allow_local_tokens=config.is_localnet,
            timeout=config.timeout,
        )
        self._transport = transport
        self._owns_transport = transport is None

    # -------------------------------------------------------------------------
    # Configuration accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def api_url(self) -> str:
        return self._config.api_url

    @property
    def party_id(self) -> str | None:
        return self._config.party_id

    @property
    def user_id(self) -> str | None:
        return self._config.user_id

    @property
    def network(self) -> str:
        return self._config.network

    @property
    def operations(self) -> Mapping[str, OperationDescriptor]:
        return dict(self._operations)

    @property
    def auth_provider(self) -> AuthProvider:
        return self._auth_provider

    @property
    def transport(self) -> HttpTransport:
        if self._transport is None:
            self._transport = HttpTransport(
                self._ensure_session(),
                timeout=self._config.timeout,
                retry_policy=self._config.retry_policy,
            )
        return self._transport

    def get_party_id(self) -> str | None:
        return self._config.party_id

    async def resolve_token(self) -> str | None:
        """Resolve the bearer token through the client's HTTP session."""
        if (
            self._owns_auth_provider
            and self._auth_provider.session is None
            and isinstance(self._config.auth, (ClientCredentials, PasswordGrant))
        ):
            self._ensure_session()
        return await self._auth_provider.get_token()

    def build_party_list(self, additional: Iterable[str] = ()) -> list[str]:
        """Combine ``additional``, managed parties and the default party, deduplicated."""
        parties = [*additional, *self._config.managed_parties]
        if self._config.party_id:
            parties.append(self._config.party_id)
        return list(dict.fromkeys(parties))

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def operation(self, name: str) -> OperationDescriptor:
        try:
            return self._operations[name]
        except KeyError:
            raise ConfigurationError(f"Unknown operation {name!r}") from None

    async def call(self, operation: str | ApiOperation[Any, Any], params: Any = None) -> Any:
        """Execute a REST operation by name or descriptor."""
        op = self.operation(operation) if isinstance(operation, str) else operation
        if not isinstance(op, ApiOperation):
            raise ConfigurationError(f"{op.name!r} is a stream; use subscribe()")
        return await execute_api_operation(self, op, params)

    async def subscribe(
        self,
        operation: str | WebSocketOperation[Any, Any],
        params: Any = None,
        handlers: SubscriptionHandlers[Any] | None = None,
    ) -> Subscription[Any]:
        """Open a stream by name or descriptor."""
        op = self.operation(operation) if isinstance(operation, str) else operation
        if not isinstance(op, WebSocketOperation):
            raise ConfigurationError(f"{op.name!r} is not a stream; use call()")
        if handlers is None:
            raise ConfigurationError("subscribe() requires handlers")
        return await open_subscription(self, op, params, handlers)

    def __getattr__(self, name: str) -> Any:
        operations = self.__dict__.get("_operations")
        if operations is None or name not in operations:
            raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")
        op = operations[name]
        if isinstance(op, WebSocketOperation):
            return functools.partial(self.subscribe, op)
        return functools.partial(self.call, op)

    def __dir__(self) -> list[str]:
        return sorted({*super().__dir__(), *self._operations})

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            _LOGGER.debug("Creating HTTP session for %s", self._config.api_url)
            self._session = aiohttp.ClientSession()
            if self._owns_auth_provider and self._auth_provider.session is None:
                self._auth_provider.session = self._session
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        if self._owns_session and self._session is not None:
            if self._auth_provider.session is self._session:
                self._auth_provider.session = None
            self._session = None
            if self._owns_transport:
                self._transport = None

    async def __aenter__(self) -> LedgerClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
