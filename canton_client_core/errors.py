"""Client error types for ledger API interactions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class LedgerClientError(Exception):
    """Base error for ledger client failures."""


class ConfigurationError(LedgerClientError):
    """Client configuration is invalid or incomplete."""


@dataclass(frozen=True)
class Issue:
    """A single schema failure at a field path."""

    path: tuple[str | int, ...]
    message: str

    def __str__(self) -> str:
        where = ".".join(str(part) for part in self.path) or "<root>"
        return f"{where}: {self.message}"


class ValidationError(LedgerClientError):
    """Value failed a schema check. Carries every failing path."""

    def __init__(self, issues: list[Issue] | tuple[Issue, ...], message: str | None = None):
        self.issues: tuple[Issue, ...] = tuple(issues)
        super().__init__(
            message or "Validation failed: " + "; ".join(str(i) for i in self.issues)
        )

    @property
    def paths(self) -> list[tuple[str | int, ...]]:
        return [issue.path for issue in self.issues]


class ResponseValidationError(ValidationError):
    """Server response diverged from the declared response schema."""


class AuthError(LedgerClientError):
    """Credential resolution failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class HttpError(LedgerClientError):
    """Non-2xx HTTP response from the API."""

    def __init__(
        self,
        status: int,
        message: str,
        *,
        body: Any = None,
        method: str | None = None,
        url: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.body = body
        self.method = method
        self.url = url
        self.headers = headers or {}


class TransportError(LedgerClientError):
    """Network connection to the API failed."""


class RequestTimeout(TransportError):
    """Timeout while communicating with the API."""


class HandshakeError(TransportError):
    """WebSocket handshake failed."""


class SubscriptionError(LedgerClientError):
    """Failure on a streaming subscription, delivered through ``on_error``."""

    def __init__(
        self,
        message: str,
        *,
        cause: BaseException | None = None,
        payload: Any = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.payload = payload


class CompletionError(LedgerClientError):
    """Submitted command completed with a failure status."""

    def __init__(
        self,
        message: str,
        *,
        submission_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.submission_id = submission_id
        self.status_code = status_code
