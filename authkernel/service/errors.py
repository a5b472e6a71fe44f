from __future__ import annotations

from typing import Optional

UNIFORM_LOGIN_MESSAGE = "Invalid email or password"


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    ``error_code`` is the precise internal kind kept for logs and security
    events. ``public_code`` and ``public_message`` are what a caller outside
    the kernel is allowed to see; subclasses that would leak account state
    override them.

    Stable public codes:
    - validation_error (400)
    - unauthorized / invalid_credentials (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    public_code: Optional[str] = None
    public_message: Optional[str] = None
    expose_detail: bool = True
    public_detail_keys: tuple = ()

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
    def reason(self) -> str:
        return self.detail.get("reason") or self.error_code

    def to_public(self) -> dict:
        if self.expose_detail:
            details = self.detail or None
        else:
            details = {k: v for k, v in self.detail.items() if k in self.public_detail_keys} or None
        return {
            "code": self.public_code or self.error_code,
            "message": self.public_message or self.message,
            "details": details,
        }


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    public_code = "unauthorized"
    public_message = "Authentication required"
    expose_detail = False


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"
    public_code = "invalid_credentials"
    public_message = UNIFORM_LOGIN_MESSAGE
    public_detail_keys = ("captcha_required",)


class AccountLockedError(InvalidCredentialsError):
    """Locked accounts look like bad credentials from the outside."""
    error_code = "account_locked"


class AccountInactiveError(InvalidCredentialsError):
    error_code = "account_inactive"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class TokenInvalidError(AuthenticationError):
    error_code = "token_invalid"


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"


class RefreshTokenRevokedError(TokenRevokedError):
    """Refresh token revoked, rotated out, or replayed (401)."""
    error_code = "refresh_token_revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    expose_detail = False


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountInactiveError",
    "TokenExpiredError",
    "TokenInvalidError",
    "TokenRevokedError",
    "RefreshTokenRevokedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "UNIFORM_LOGIN_MESSAGE",
]
