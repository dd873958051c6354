"""Build :class:`ClientConfig` from environment variables or a YAML file.

Environment variables follow ``CANTON_<NETWORK>_<PROVIDER>_<API>_<FIELD>``,
e.g. ``CANTON_DEVNET_5N_LEDGER_JSON_API_URI``. The active network and
provider come from ``CANTON_CURRENT_NETWORK`` / ``CANTON_CURRENT_PROVIDER``
unless passed explicitly.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from .auth import (
    AuthConfig,
    ClientCredentials,
    NoAuth,
    PasswordGrant,
    StaticToken,
    TokenGenerator,
)
from .client import LOCALNET, ClientConfig
from .errors import ConfigurationError, ValidationError
from .localnet import DEFAULT_USER_ID, localnet_token_generator
from .schema import array, integer, literal, number, obj, optional, string
from .transport import DEFAULT_TIMEOUT, RetryPolicy

NETWORKS: tuple[str, ...] = ("devnet", "testnet", "mainnet", LOCALNET)
API_TYPES: tuple[str, ...] = ("LEDGER_JSON_API", "VALIDATOR_API", "SCAN_API")
DEFAULT_LOCALNET_PROVIDER = "app-provider"

_AUTH_SCHEMA = obj(
    {
        "type": literal("none", "static", "client_credentials", "password", "localnet"),
        "token": optional(string(min_length=1)),
        "client_id": optional(string(min_length=1)),
        "client_secret": optional(string()),
        "token_url": optional(string(min_length=1)),
        "username": optional(string(min_length=1)),
        "password": optional(string()),
        "audience": optional(string()),
        "scope": optional(string()),
        "user_id": optional(string(min_length=1)),
    },
    unknown="forbid",
)

_RETRY_SCHEMA = obj(
    {
        "max_retries": optional(integer(minimum=0)),
        "base_delay": optional(number(minimum=0)),
        "max_delay": optional(number(minimum=0)),
        "jitter": optional(literal(True, False)),
        "retry_statuses": optional(array(integer(minimum=100, maximum=599))),
    },
    unknown="forbid",
)

CONFIG_FILE_SCHEMA = obj(
    {
        "api_url": string(pattern=r"https?://.+"),
        "network": optional(literal(*NETWORKS)),
        "auth": optional(_AUTH_SCHEMA),
        "party_id": optional(string(min_length=1)),
        "user_id": optional(string(min_length=1)),
        "managed_parties": optional(array(string(min_length=1))),
        "timeout": optional(number(minimum=0.001)),
        "retry": optional(_RETRY_SCHEMA),
    },
    unknown="forbid",
)


def _require(values: Mapping[str, Any], key: str, context: str) -> Any:
    value = values.get(key)
    if value in (None, ""):
        raise ConfigurationError(f"{context}: missing required '{key}'")
    return value


def _auth_from_mapping(data: Mapping[str, Any], network: str) -> AuthConfig:
    auth_type = data.get("type", "none")
    if auth_type == "none":
        return NoAuth()
    if auth_type == "static":
        return StaticToken(_require(data, "token", "static auth"))
    if auth_type == "localnet":
        if network != LOCALNET:
            raise ConfigurationError("localnet auth is only allowed when network is 'localnet'")
        return TokenGenerator(
            localnet_token_generator(user_id=data.get("user_id") or DEFAULT_USER_ID),
            local=True,
        )
    if auth_type == "client_credentials":
        return ClientCredentials(
            client_id=_require(data, "client_id", "client_credentials auth"),
            client_secret=_require(data, "client_secret", "client_credentials auth"),
            token_url=_require(data, "token_url", "client_credentials auth"),
            audience=data.get("audience") or None,
            scope=data.get("scope") or None,
        )
    return PasswordGrant(
        client_id=_require(data, "client_id", "password auth"),
        username=_require(data, "username", "password auth"),
        password=_require(data, "password", "password auth"),
        token_url=_require(data, "token_url", "password auth"),
        client_secret=data.get("client_secret") or None,
        audience=data.get("audience") or None,
        scope=data.get("scope") or None,
    )


def _retry_from_mapping(data: Mapping[str, Any] | None) -> RetryPolicy:
    if not data:
        return RetryPolicy()
    kwargs = dict(data)
    if "retry_statuses" in kwargs:
        kwargs["retry_statuses"] = frozenset(kwargs["retry_statuses"])
    try:
        return RetryPolicy(**kwargs)
    except ValueError as err:
        raise ConfigurationError(f"Invalid retry policy: {err}") from err


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load YAML file with error handling."""
    if not path.exists():
        raise ConfigurationError(f"File not found: {path}")
    with path.open() as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as err:
            raise ConfigurationError(f"Invalid YAML in {path}: {err}") from err
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def _expand_env(value: Any) -> Any:
    if isinstance(value, str):
        return os.path.expandvars(value)
    if isinstance(value, dict):
        return {key: _expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_expand_env(item) for item in value]
    return value


def config_from_mapping(data: Mapping[str, Any]) -> ClientConfig:
    """Build a client configuration from a plain mapping.

    Raises:
        ConfigurationError: If the mapping is malformed or incomplete
    """
    try:
        parsed = CONFIG_FILE_SCHEMA.parse(dict(data))
    except ValidationError as err:
        raise ConfigurationError(f"Invalid client configuration: {err}") from err

    network = parsed.get("network", "mainnet")
    return ClientConfig(
        api_url=parsed["api_url"],
        auth=_auth_from_mapping(parsed.get("auth") or {}, network),
        party_id=parsed.get("party_id"),
        user_id=parsed.get("user_id"),
        managed_parties=tuple(parsed.get("managed_parties") or ()),
        timeout=parsed.get("timeout", DEFAULT_TIMEOUT),
        retry_policy=_retry_from_mapping(parsed.get("retry")),
        network=network,
    )


def load_config_file(path: str | Path) -> ClientConfig:
    """Load a client configuration from a YAML document.

    ``$VAR`` / ``${VAR}`` references in string values are expanded from the
    environment, so secrets can stay out of the file.

    Example:
        api_url: https://ledger.example.com
        network: devnet
        party_id: alice::1220abcd
        auth:
          type: client_credentials
          client_id: ledger-api-user
          client_secret: ${LEDGER_CLIENT_SECRET}
          token_url: https://auth.example.com/oauth/token
    """
    return config_from_mapping(_expand_env(_load_yaml(Path(path))))


def config_from_env(
    api_type: str = "LEDGER_JSON_API",
    *,
    network: str | None = None,
    provider: str | None = None,
    environ: Mapping[str, str] | None = None,
    allow_anonymous: bool = False,
) -> ClientConfig:
    """Build a client configuration from environment variables.

    Credential precedence: password grant (``USERNAME``/``PASSWORD``), then
    client credentials (``CLIENT_SECRET``), then ``BEARER_TOKEN``, then the
    local development token on localnet.

    Raises:
        ConfigurationError: If required variables are missing
    """
    env = os.environ if environ is None else environ
    api_type = api_type.upper()
    if api_type not in API_TYPES:
        raise ConfigurationError(f"Unknown API type {api_type!r}")

    network = (network or env.get("CANTON_CURRENT_NETWORK") or "").lower()
    if network not in NETWORKS:
        raise ConfigurationError(
            "Missing or invalid CANTON_CURRENT_NETWORK. "
            f"Must be one of: {', '.join(NETWORKS)}"
        )
    provider = (provider or env.get("CANTON_CURRENT_PROVIDER") or "").lower()
    if not provider:
        if network != LOCALNET:
            raise ConfigurationError(
                f"Provider is required for {api_type}. Set CANTON_CURRENT_PROVIDER."
            )
        provider = DEFAULT_LOCALNET_PROVIDER

    provider_key = provider.upper().replace("-", "_")
    base = f"CANTON_{network.upper()}_{provider_key}"
    api_base = f"{base}_{api_type}"

    def get(key: str) -> str | None:
        value = env.get(key)
        return value.strip() if value and value.strip() else None

    api_url = get(f"{api_base}_URI")
    if api_url is None:
        raise ConfigurationError(f"Missing required environment variable {api_base}_URI")

    client_id = get(f"{api_base}_CLIENT_ID")
    auth_url = get(f"{base}_AUTH_URL")
    user_id = get(f"{base}_USER_ID")

    auth: AuthConfig
    if client_id and get(f"{api_base}_USERNAME") and get(f"{api_base}_PASSWORD"):
        if auth_url is None:
            raise ConfigurationError(f"Missing required environment variable {base}_AUTH_URL")
        auth = PasswordGrant(
            client_id=client_id,
            username=get(f"{api_base}_USERNAME") or "",
            password=get(f"{api_base}_PASSWORD") or "",
            token_url=auth_url,
            client_secret=get(f"{api_base}_CLIENT_SECRET"),
            audience=get(f"{api_base}_AUDIENCE"),
            scope=get(f"{api_base}_SCOPE"),
        )
    elif client_id and get(f"{api_base}_CLIENT_SECRET"):
        if auth_url is None:
            raise ConfigurationError(f"Missing required environment variable {base}_AUTH_URL")
        auth = ClientCredentials(
            client_id=client_id,
            client_secret=get(f"{api_base}_CLIENT_SECRET") or "",
            token_url=auth_url,
            audience=get(f"{api_base}_AUDIENCE"),
            scope=get(f"{api_base}_SCOPE"),
        )
    elif get(f"{api_base}_BEARER_TOKEN"):
        auth = StaticToken(get(f"{api_base}_BEARER_TOKEN") or "")
    elif network == LOCALNET:
        auth = TokenGenerator(
            localnet_token_generator(user_id=user_id or DEFAULT_USER_ID), local=True
        )
    elif allow_anonymous:
        auth = NoAuth()
    else:
        raise ConfigurationError(
            f"No credentials configured for {api_type} on {network}/{provider}. "
            f"Set {api_base}_CLIENT_ID with CLIENT_SECRET or USERNAME/PASSWORD, "
            f"or {api_base}_BEARER_TOKEN"
        )

    managed = get(f"MANAGED_PARTIES_{provider_key}_{network.upper()}")
    timeout = get("CANTON_REQUEST_TIMEOUT_SECONDS")
    try:
        timeout_value = float(timeout) if timeout else DEFAULT_TIMEOUT
    except ValueError as err:
        raise ConfigurationError("CANTON_REQUEST_TIMEOUT_SECONDS must be a number") from err

    return ClientConfig(
        api_url=api_url,
        auth=auth,
        party_id=get(f"{base}_PARTY_ID"),
        user_id=user_id,
        managed_parties=tuple(p.strip() for p in managed.split(",") if p.strip()) if managed else (),
        timeout=timeout_value,
        network=network,
    )
