from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - unavailable (503)
    - server_error (500)

    Auth failures additionally carry a ``reason`` so clients can tell "log in
    again" apart from "you cannot do this" without leaking internal state.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    reason: str = "REQUEST_INVALID"

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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    reason = "AUTH_REQUIRED"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    reason = "AUTH_FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    reason = "NOT_FOUND"


# -- authentication ---------------------------------------------------------


class AuthenticationRequired(AuthenticationError):
    reason = "AUTH_REQUIRED"

    def __init__(self, message: str = "authentication required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentials(AuthenticationError):
    reason = "AUTH_INVALID_CREDENTIALS"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountNotActive(ForbiddenError):
    reason = "AUTH_ACCOUNT_NOT_ACTIVE"

    def __init__(self, message: str = "account is not active", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(AuthenticationError):
    reason = "AUTH_TOKEN_INVALID"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    reason = "AUTH_TOKEN_EXPIRED"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenBlacklisted(AuthenticationError):
    reason = "AUTH_TOKEN_BLACKLISTED"

    def __init__(self, message: str = "token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenNotFound(AuthenticationError):
    """Unknown, rotated and expired refresh tokens are indistinguishable to callers."""

    reason = "AUTH_REFRESH_TOKEN_NOT_FOUND"

    def __init__(self, message: str = "invalid refresh token", **kwargs) -> None:
        super().__init__(message, **kwargs)


# -- authorization ----------------------------------------------------------


class TenantRequired(ForbiddenError):
    reason = "AUTH_TENANT_REQUIRED"

    def __init__(self, message: str = "tenant context required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TenantAccessDenied(ForbiddenError):
    reason = "AUTH_TENANT_ACCESS_DENIED"

    def __init__(self, message: str = "tenant access denied", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PolicyDenied(ForbiddenError):
    reason = "AUTH_POLICY_DENIED"

    def __init__(self, message: str = "access denied by policy", **kwargs) -> None:
        super().__init__(message, **kwargs)


# -- invalidation / registration -------------------------------------------


class InvalidationFailed(ServiceError):
    """Mass revocation could not be guaranteed; the triggering operation must abort."""

    status_code = 503
    error_code = "unavailable"
    reason = "AUTH_INVALIDATION_FAILED"

    def __init__(self, message: str = "token invalidation failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidInvitation(ValidationError):
    reason = "AUTH_INVALID_INVITATION"

    def __init__(self, message: str = "invalid invitation code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidResetToken(ValidationError):
    """Unknown, used and expired reset tokens are indistinguishable to callers."""

    reason = "AUTH_INVALID_RESET_TOKEN"

    def __init__(self, message: str = "invalid or expired reset token", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "AuthenticationRequired",
    "InvalidCredentials",
    "AccountNotActive",
    "TokenInvalid",
    "TokenExpired",
    "TokenBlacklisted",
    "RefreshTokenNotFound",
    "TenantRequired",
    "TenantAccessDenied",
    "PolicyDenied",
    "InvalidationFailed",
    "InvalidInvitation",
    "InvalidResetToken",
]
