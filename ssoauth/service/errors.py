from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
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

    @property
    def public_message(self) -> str:
        return self.message


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class LoginRejected(AuthenticationError):
    """Base for login failures.

    Subclasses stay distinct for audit and logging but share one public
    rendering so callers cannot tell a locked or deactivated account from a
    wrong password.
    """

    error_code = "invalid_credentials"

    @property
    def public_message(self) -> str:
        return "invalid credentials"


class InvalidCredentials(LoginRejected):
    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(LoginRejected):
    def __init__(self, locked_until: Optional[datetime] = None, **kwargs) -> None:
        super().__init__("account locked", **kwargs)
        self.locked_until = locked_until


class AccountInactive(LoginRejected):
    def __init__(self, message: str = "account inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenError(AuthenticationError):
    """Presented token cannot be used."""
    error_code = "invalid_token"


class TokenExpired(TokenError):
    error_code = "token_expired"


class TokenRevoked(TokenError):
    error_code = "token_revoked"


class TokenReused(TokenError):
    """A rotated-away refresh token was replayed; its whole lineage is revoked."""
    error_code = "token_reused"


class InvalidSignature(TokenError):
    error_code = "invalid_token"


class MalformedToken(TokenError):
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class Unauthorized(ForbiddenError):
    """RBAC denial for an authenticated principal."""

    def __init__(self, required: str, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {"required": required}
        super().__init__(f"missing permission {required}", detail=detail, **kwargs)
        self.required = required


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class RateLimited(ServiceError):
    """Too many requests for one rate-limit subject (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "rate limit exceeded", *, retry_after: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class ServiceUnreachable(ServiceError):
    """A registered microservice did not answer its health check (503)."""
    status_code = 503
    error_code = "service_unavailable"


class SigningKeyError(RuntimeError):
    """Token signing key material is missing or unusable; fatal at startup."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "LoginRejected",
    "InvalidCredentials",
    "AccountLocked",
    "AccountInactive",
    "TokenError",
    "TokenExpired",
    "TokenRevoked",
    "TokenReused",
    "InvalidSignature",
    "MalformedToken",
    "ForbiddenError",
    "Unauthorized",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "ServiceUnreachable",
    "RateLimited",
    "SigningKeyError",
]
