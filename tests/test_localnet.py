"""Tests for local development tokens."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json

from canton_client_core.localnet import (
    DEFAULT_AUDIENCE,
    DEFAULT_USER_ID,
    UNSAFE_ISSUER,
    decode_claims,
    generate_localnet_jwt,
    is_localnet_token,
    localnet_token_generator,
)


def _segment(token: str, index: int) -> dict:
    part = token.split(".")[index]
    return json.loads(base64.urlsafe_b64decode(part + "=" * (-len(part) % 4)))


class TestGenerateLocalnetJwt:
    """Tests for generate_localnet_jwt()."""

    def test_header_and_claims(self):
        token = generate_localnet_jwt(now=1_700_000_000)

        assert _segment(token, 0) == {"alg": "HS256", "typ": "JWT"}
        assert _segment(token, 1) == {
            "sub": DEFAULT_USER_ID,
            "aud": DEFAULT_AUDIENCE,
            "iat": 1_700_000_000,
            "exp": 1_700_003_600,
            "iss": UNSAFE_ISSUER,
        }

    def test_signed_with_unsafe_secret(self):
        token = generate_localnet_jwt(user_id="alice", now=0)
        header, payload, signature = token.split(".")
        expected = hmac.new(b"unsafe", f"{header}.{payload}".encode(), hashlib.sha256).digest()
        assert signature == base64.urlsafe_b64encode(expected).rstrip(b"=").decode()

    def test_custom_claims(self):
        token = generate_localnet_jwt(user_id="bob", audience="aud", expiry_seconds=60, now=100)
        claims = decode_claims(token)
        assert claims is not None
        assert claims["sub"] == "bob"
        assert claims["aud"] == "aud"
        assert claims["exp"] == 160

    def test_generator_mints_fresh_tokens(self):
        generate = localnet_token_generator(user_id="carol")
        claims = decode_claims(generate())
        assert claims is not None
        assert claims["sub"] == "carol"


class TestTokenInspection:
    """Tests for decode_claims() and is_localnet_token()."""

    def test_is_localnet_token(self):
        assert is_localnet_token(generate_localnet_jwt())

    def test_tampered_token_is_not_localnet(self):
        header, payload, _ = generate_localnet_jwt().split(".")
        assert not is_localnet_token(f"{header}.{payload}.invalidsig")

    def test_opaque_token(self):
        assert not is_localnet_token("opaque-token")
        assert decode_claims("opaque-token") is None

    def test_decode_claims_garbage_payload(self):
        assert decode_claims("a.!!!.c") is None
