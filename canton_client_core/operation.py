"""Declarative operation descriptors and their generic executors.

An operation is a frozen data record describing one network action. REST
calls use :class:`ApiOperation`; streams use :class:`WebSocketOperation`.
Descriptors are created once at import time and shared read-only by every
client; all behaviour lives in :func:`execute_api_operation` and
:func:`open_subscription`.

Example:
    GetUser = ApiOperation(
        name="get_user",
        method="GET",
        path="/v2/users/{userId}",
        params_schema=obj({"userId": string(min_length=1)}),
        response_schema=obj({"user": UserSchema}),
    )
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar
from urllib.parse import quote, urlencode

from .errors import (
    ConfigurationError,
    HttpError,
    ResponseValidationError,
    ValidationError,
)
from .schema import Schema
from .subscription import Subscription, SubscriptionHandlers
from .transport import redact_headers, redact_url
from .ws import to_ws_url

if TYPE_CHECKING:
    from .client import LedgerClient

_LOGGER = logging.getLogger(__name__)

P = TypeVar("P")
R = TypeVar("R")
M = TypeVar("M")

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
WsAuthMode = Literal["header", "subprotocol", "query"]

WRITE_METHODS: frozenset[str] = frozenset({"POST", "PUT", "PATCH"})
JWT_SUBPROTOCOL_PREFIX = "jwt.token."
WS_TOKEN_QUERY_PARAM = "access_token"


def _render_path(path: str | Callable[[Any], str], params: Any) -> str:
    if callable(path):
        return path(params)
    values = params if isinstance(params, Mapping) else {}
    try:
        return path.format_map({k: quote(str(v), safe="") for k, v in values.items()})
    except KeyError as err:
        raise ConfigurationError(f"Path template {path!r} references missing field {err}") from err


def _encode_query(query: Mapping[str, Any] | None) -> str:
    if not query:
        return ""
    pairs: list[tuple[str, str]] = []
    for key, value in query.items():
        if value is None:
            continue
        values = value if isinstance(value, (list, tuple)) else [value]
        for item in values:
            if isinstance(item, bool):
                item = "true" if item else "false"
            pairs.append((key, str(item)))
    return urlencode(pairs)


@dataclass(frozen=True)
class ApiOperation(Generic[P, R]):
    """Descriptor for one request/response REST call.

    Attributes:
        name: Operation name, also the client method name
        method: HTTP method
        path: Format template filled from validated params, or a callable
        params_schema: Schema for caller-supplied params
        response_schema: Schema for the decoded response body
        build_body: Builds the JSON body for write methods from validated
            params and the client (defaults to the params themselves)
        build_query: Builds query parameters from validated params
        requires_auth: Attach a bearer token
        description: Human-readable summary
    """

    name: str
    method: HttpMethod
    path: str | Callable[[P], str]
    params_schema: Schema[P]
    response_schema: Schema[R]
    build_body: Callable[[P, LedgerClient], Any] | None = None
    build_query: Callable[[P], Mapping[str, Any]] | None = None
    requires_auth: bool = True
    description: str = ""

    def endpoint(self, params: P) -> str:
        """Resolve the request path (with query string) for validated params."""
        path = _render_path(self.path, params)
        query = _encode_query(self.build_query(params) if self.build_query else None)
        return f"{path}?{query}" if query else path


@dataclass(frozen=True)
class WebSocketOperation(Generic[P, M]):
    """Descriptor for one streaming subscription.

    Attributes:
        name: Operation name, also the client method name
        path: Stream path, template or callable
        params_schema: Schema for caller-supplied params
        message_schema: Schema every inbound frame must satisfy
        build_request_message: Builds the request frame sent after connect,
            sync or async (defaults to the validated params)
        error_schema: Shape of server error frames routed to ``on_error``
        auth_mode: Where the token goes: Authorization header,
            ``jwt.token.<token>`` subprotocol, or ``access_token`` query param
        subprotocols: Application subprotocols offered on connect
        requires_auth: Attach a bearer token
        description: Human-readable summary
    """

    name: str
    path: str | Callable[[P], str]
    params_schema: Schema[P]
    message_schema: Schema[M]
    build_request_message: Callable[[P, LedgerClient], Any | Awaitable[Any]] | None = None
    error_schema: Schema[Any] | None = None
    auth_mode: WsAuthMode = "header"
    subprotocols: tuple[str, ...] = ()
    requires_auth: bool = True
    description: str = ""

    def endpoint(self, params: P) -> str:
        return _render_path(self.path, params)


OperationDescriptor = ApiOperation[Any, Any] | WebSocketOperation[Any, Any]


@dataclass(frozen=True)
class RequestContext:
    """Everything needed to send one request; discarded after the call."""

    operation: str
    method: str
    url: str
    params: Any
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None

    def with_token(self, token: str | None) -> RequestContext:
        headers = {k: v for k, v in self.headers.items() if k != "Authorization"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return replace(self, headers=headers)

    def __repr__(self) -> str:
        return (
            f"RequestContext(operation={self.operation!r}, method={self.method!r}, "
            f"url={redact_url(self.url)!r}, headers={redact_headers(self.headers)!r})"
        )


def validate_params(operation_name: str, schema: Schema[P], params: Any) -> P:
    """Validate caller params, prefixing failures with the operation name."""
    try:
        return schema.parse({} if params is None else params)
    except ValidationError as err:
        raise ValidationError(
            err.issues, f"{operation_name}: parameter validation failed: {err}"
        ) from err


async def execute_api_operation(
    client: LedgerClient, operation: ApiOperation[P, R], params: Any
) -> R:
    """Run one REST operation: validate, authenticate, send, validate response.

    A 401 answer triggers exactly one token invalidation and retry.

    Raises:
        ValidationError: Params do not match ``params_schema`` (nothing sent)
        ResponseValidationError: Response does not match ``response_schema``
        AuthError: Token could not be resolved
        HttpError: Non-2xx response
        TransportError: Network failure after retries
    """
    validated = validate_params(operation.name, operation.params_schema, params)

    body = None
    if operation.method in WRITE_METHODS:
        body = operation.build_body(validated, client) if operation.build_body else validated

    context = RequestContext(
        operation=operation.name,
        method=operation.method,
        url=f"{client.api_url}{operation.endpoint(validated)}",
        params=validated,
        headers={"Accept": "application/json"},
        body=body,
    )

    token = await client.resolve_token() if operation.requires_auth else None
    context = context.with_token(token)
    transport = client.transport

    _LOGGER.debug("[%s] %s %s", operation.name, context.method, redact_url(context.url))
    try:
        response = await transport.execute(
            context.method, context.url, context.headers, context.body
        )
    except HttpError as err:
        if err.status != 401 or token is None:
            raise
        _LOGGER.info("[%s] Unauthorized, refreshing token and retrying once", operation.name)
        client.auth_provider.invalidate(token)
        token = await client.resolve_token()
        context = context.with_token(token)
        response = await transport.execute(
            context.method, context.url, context.headers, context.body
        )

    try:
        return operation.response_schema.parse(response.data)
    except ValidationError as err:
        _LOGGER.warning("[%s] Response did not match schema: %s", operation.name, err)
        raise ResponseValidationError(
            err.issues, f"{operation.name}: response validation failed: {err}"
        ) from err


async def open_subscription(
    client: LedgerClient,
    operation: WebSocketOperation[P, M],
    params: Any,
    handlers: SubscriptionHandlers[M],
) -> Subscription[M]:
    """Validate params, authenticate and open a :class:`Subscription`.

    Raises:
        ValidationError: Params do not match ``params_schema`` (nothing sent)
        AuthError: Token could not be resolved
        TransportError: Connection or handshake failed
    """
    validated = validate_params(operation.name, operation.params_schema, params)
    token = await client.resolve_token() if operation.requires_auth else None

    headers: dict[str, str] = {}
    subprotocols = list(operation.subprotocols)
    query: dict[str, str] = {}
    if token:
        if operation.auth_mode == "header":
            headers["Authorization"] = f"Bearer {token}"
        elif operation.auth_mode == "subprotocol":
            subprotocols.append(f"{JWT_SUBPROTOCOL_PREFIX}{token}")
        else:
            query[WS_TOKEN_QUERY_PARAM] = token

    if operation.build_request_message is not None:
        request = operation.build_request_message(validated, client)
        if inspect.isawaitable(request):
            request = await request
    else:
        request = validated

    subscription: Subscription[M] = Subscription(
        operation.name,
        operation.message_schema,
        handlers,
        error_schema=operation.error_schema,
    )
    await subscription.open(
        to_ws_url(client.api_url, operation.endpoint(validated), query),
        headers=headers,
        subprotocols=subprotocols,
        initial_message=request,
        timeout=client.config.timeout,
    )
    return subscription
