from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable failure categories surfaced to callers.

    The value doubles as the ``error.code`` in HTTP error envelopes.
    """

    ALREADY_EXISTS = "already_exists"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DEACTIVATED = "account_deactivated"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    STORE_UNAVAILABLE = "store_unavailable"
    CACHE_UNAVAILABLE = "cache_unavailable"

    @property
    def status_code(self) -> int:
        return _KIND_STATUS[self]

    @property
    def default_message(self) -> str:
        return _KIND_MESSAGES[self]


_KIND_STATUS = {
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.ACCOUNT_DEACTIVATED: 403,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.TOKEN_EXPIRED: 401,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.STORE_UNAVAILABLE: 503,
    ErrorKind.CACHE_UNAVAILABLE: 503,
}

_KIND_MESSAGES = {
    ErrorKind.ALREADY_EXISTS: "User already exists",
    ErrorKind.INVALID_CREDENTIALS: "Invalid credentials",
    ErrorKind.ACCOUNT_DEACTIVATED: "Account is deactivated",
    ErrorKind.INVALID_TOKEN: "Invalid token",
    ErrorKind.TOKEN_EXPIRED: "Token expired",
    ErrorKind.RATE_LIMITED: "Too many requests, please try again later",
    ErrorKind.NOT_FOUND: "User not found",
    ErrorKind.STORE_UNAVAILABLE: "Service temporarily unavailable",
    ErrorKind.CACHE_UNAVAILABLE: "Service temporarily unavailable",
}


@dataclass(frozen=True)
class AuthFailure:
    """Payload of a ``Failure`` outcome; ``message`` is safe to show a client."""

    kind: ErrorKind
    message: str
    # Seconds until a retry can succeed; set on RATE_LIMITED
    retry_after: Optional[int] = None

    @classmethod
    def of(
        cls, kind: ErrorKind, message: Optional[str] = None, retry_after: Optional[int] = None
    ) -> "AuthFailure":
        return cls(kind=kind, message=message or kind.default_message, retry_after=retry_after)

    def to_service_error(self) -> "ServiceError":
        error_cls = _KIND_ERRORS.get(self.kind, ServiceError)
        headers = None
        if self.retry_after is not None:
            headers = {"Retry-After": str(self.retry_after)}
        return error_cls(self.message, error_code=self.kind.value, headers=headers)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a default ``error_code``;
    failures converted from ``AuthFailure`` override the code with the
    failure kind so clients can tell e.g. ``token_expired`` from
    ``invalid_token``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        headers: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.headers = headers
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but not allowed (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServiceUnavailableError(ServiceError):
    """A backing store is unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


_KIND_ERRORS = {
    ErrorKind.ALREADY_EXISTS: ConflictError,
    ErrorKind.INVALID_CREDENTIALS: AuthenticationError,
    ErrorKind.ACCOUNT_DEACTIVATED: ForbiddenError,
    ErrorKind.INVALID_TOKEN: AuthenticationError,
    ErrorKind.TOKEN_EXPIRED: AuthenticationError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.STORE_UNAVAILABLE: ServiceUnavailableError,
    ErrorKind.CACHE_UNAVAILABLE: ServiceUnavailableError,
}


__all__ = [
    "ErrorKind",
    "AuthFailure",
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServiceUnavailableError",
]
