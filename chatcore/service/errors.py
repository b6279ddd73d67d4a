from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for core exceptions mapped to structured results.

    Each class carries a transport-neutral ``status_code`` and a stable
    ``error_code`` so the calling layer can build its own response:
    - validation_error (400)
    - missing_credentials / invalid_token / token_expired / invalid_credentials (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
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
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed or missing input (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthError(ServiceError):
    """Authentication failed (401)."""
    status_code = 401
    error_code = "unauthorized"


class MissingCredentialsError(AuthError):
    """Username or token was not supplied."""
    error_code = "missing_credentials"


class InvalidTokenError(AuthError):
    """Token is unknown or belongs to another user."""
    error_code = "invalid_token"


class TokenExpiredError(AuthError):
    """Token was rotated out and is outside the allowed grace use."""
    error_code = "token_expired"


class InvalidCredentialsError(AuthError):
    """Username/password pair did not verify."""
    error_code = "invalid_credentials"


class ForbiddenError(ServiceError):
    """Authenticated but not permitted (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate username (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitExceeded(ServiceError):
    """Rate limit exceeded or actor blocked (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many requests",
        *,
        reset_seconds: int = 0,
        detail: Optional[dict] = None,
    ) -> None:
        detail = {**(detail or {}), "reset_seconds": reset_seconds}
        super().__init__(message, detail=detail)
        self.reset_seconds = reset_seconds


class InternalError(ServiceError):
    """Underlying store failure (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthError",
    "MissingCredentialsError",
    "InvalidTokenError",
    "TokenExpiredError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitExceeded",
    "InternalError",
]
