"""Shared-secret JWTs for local development networks.

Local networks started in "unsafe-auth" mode accept HS256 tokens signed with
the well-known secret ``"unsafe"``. These tokens MUST NOT be used against any
remote network; :class:`~canton_client_core.auth.AuthProvider` rejects them
unless the client is configured for ``localnet``.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from collections.abc import Callable
from typing import Any

UNSAFE_SECRET = "unsafe"
UNSAFE_ISSUER = "unsafe-auth"
DEFAULT_AUDIENCE = "https://canton.network.global"
DEFAULT_USER_ID = "ledger-api-user"
DEFAULT_EXPIRY_SECONDS = 3600


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(signing_input: str, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256
    ).digest()
    return _b64url_encode(digest)


def generate_localnet_jwt(
    *,
    user_id: str = DEFAULT_USER_ID,
    audience: str = DEFAULT_AUDIENCE,
    expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
    now: float | None = None,
) -> str:
    """Generate a token accepted by a local network in unsafe-auth mode.

    Args:
        user_id: ``sub`` claim
        audience: ``aud`` claim
        expiry_seconds: Token lifetime
        now: Issue time override (epoch seconds)

    Returns:
        Compact-serialized JWT string
    """
    issued_at = int(now if now is not None else time.time())
    header = {"alg": "HS256", "typ": "JWT"}
    payload = {
        "sub": user_id,
        "aud": audience,
        "iat": issued_at,
        "exp": issued_at + expiry_seconds,
        "iss": UNSAFE_ISSUER,
    }
    signing_input = ".".join(
        _b64url_encode(json.dumps(part, separators=(",", ":")).encode("utf-8"))
        for part in (header, payload)
    )
    return f"{signing_input}.{_sign(signing_input, UNSAFE_SECRET)}"


def localnet_token_generator(
    *,
    user_id: str = DEFAULT_USER_ID,
    audience: str = DEFAULT_AUDIENCE,
    expiry_seconds: int = DEFAULT_EXPIRY_SECONDS,
) -> Callable[[], str]:
    """Return a zero-argument callable minting a fresh local token per call."""

    def generate() -> str:
        return generate_localnet_jwt(
            user_id=user_id, audience=audience, expiry_seconds=expiry_seconds
        )

    return generate


def decode_claims(token: str) -> dict[str, Any] | None:
    """Decode JWT claims without verifying the signature.

    Returns None when the token is not a JWT.
    """
    parts = token.split(".")
    if len(parts) != 3:
        return None
    try:
        claims = json.loads(_b64url_decode(parts[1]))
    except ValueError:
        return None
    return claims if isinstance(claims, dict) else None


def is_localnet_token(token: str) -> bool:
    """Check whether ``token`` is signed with the local development secret."""
    parts = token.split(".")
    if len(parts) != 3:
        return False
    expected = _sign(f"{parts[0]}.{parts[1]}", UNSAFE_SECRET)
    return hmac.compare_digest(expected, parts[2])
