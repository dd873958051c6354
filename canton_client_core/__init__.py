"""Typed asyncio client core for ledger HTTP and WebSocket APIs."""

__version__ = "0.1.0"

from .auth import (
    AuthConfig,
    AuthProvider,
    AuthState,
    ClientCredentials,
    NoAuth,
    PasswordGrant,
    StaticToken,
    TokenGenerator,
)
from .client import ClientConfig, LedgerClient
from .config import config_from_env, config_from_mapping, load_config_file
from .errors import (
    AuthError,
    CompletionError,
    ConfigurationError,
    HandshakeError,
    HttpError,
    Issue,
    LedgerClientError,
    RequestTimeout,
    ResponseValidationError,
    SubscriptionError,
    TransportError,
    ValidationError,
)
from .ledger_api import LEDGER_JSON_API_OPERATIONS, LedgerJsonApiClient, wait_for_completion
from .localnet import generate_localnet_jwt, localnet_token_generator
from .operation import ApiOperation, OperationDescriptor, WebSocketOperation
from .schema import ParseResult, Schema
from .subscription import Subscription, SubscriptionHandlers, SubscriptionState
from .transport import HttpResponse, HttpTransport, RetryPolicy

__all__ = [
    "LEDGER_JSON_API_OPERATIONS",
    "ApiOperation",
    "AuthConfig",
    "AuthError",
    "AuthProvider",
    "AuthState",
    "ClientConfig",
    "ClientCredentials",
    "CompletionError",
    "ConfigurationError",
    "HandshakeError",
    "HttpError",
    "HttpResponse",
    "HttpTransport",
    "Issue",
    "LedgerClient",
    "LedgerClientError",
    "LedgerJsonApiClient",
    "NoAuth",
    "OperationDescriptor",
    "ParseResult",
    "PasswordGrant",
    "RequestTimeout",
    "ResponseValidationError",
    "RetryPolicy",
    "Schema",
    "StaticToken",
    "Subscription",
    "SubscriptionError",
    "SubscriptionHandlers",
    "SubscriptionState",
    "TokenGenerator",
    "TransportError",
    "ValidationError",
    "WebSocketOperation",
    "__version__",
    "config_from_env",
    "config_from_mapping",
    "generate_localnet_jwt",
    "load_config_file",
    "localnet_token_generator",
    "wait_for_completion",
]
