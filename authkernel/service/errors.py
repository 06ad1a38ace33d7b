from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for credential-layer exceptions.

    Each exception class carries a transport status_code and a stable
    error_code that callers can map to their own responses:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - gone (410)
    - server_error (500)

    ``detail`` holds internal context for logs and is never part of the
    caller-facing envelope.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_envelope(self) -> dict:
        return {"error": {"code": self.error_code, "message": self.message}}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


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


class UserNotFoundError(NotFoundError):
    error_code = "user_not_found"
    default_message = "User not found"


class AuthenticationFailedError(AuthenticationError):
    error_code = "authentication_failed"
    default_message = "Authentication failed"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"
    default_message = "Email address has not been verified"


class AccessTokenError(AuthenticationError):
    """Access token problems; the caller may retry after refreshing."""

    retry_with_refresh = True


class AccessTokenMissingError(AccessTokenError):
    error_code = "access_token_missing"
    default_message = "Access token is missing"


class InvalidAccessTokenError(AccessTokenError):
    error_code = "invalid_access_token"
    default_message = "Access token is malformed or invalid"


class AccessTokenExpiredError(AccessTokenError):
    error_code = "access_token_expired"
    default_message = "Access token has expired"


class RefreshTokenError(AuthenticationError):
    """Refresh failures; the caller must discard its stored refresh credential."""

    clear_refresh_credential = True


class RefreshTokenMissingError(RefreshTokenError):
    error_code = "refresh_token_missing"
    default_message = "Refresh token is missing"


class InvalidRefreshTokenError(RefreshTokenError):
    error_code = "invalid_refresh_token"
    default_message = "Refresh token is malformed or invalid"


class RefreshTokenReusedError(InvalidRefreshTokenError):
    """A superseded refresh secret was presented for a live session.

    Shares the caller-facing code and message of InvalidRefreshTokenError so
    reuse detection is not disclosed; internal handlers can still tell the
    two apart by type.
    """


class RefreshTokenExpiredError(RefreshTokenError):
    error_code = "refresh_token_expired"
    default_message = "Refresh token has expired"


class VerificationError(ValidationError):
    """Verification code and reset token failures."""


class CodeMissingError(VerificationError):
    error_code = "code_missing"
    default_message = "Verification code is missing"


class InvalidCodeError(VerificationError):
    error_code = "invalid_code"
    default_message = "Verification code is invalid"


class CodeExpiredError(VerificationError):
    status_code = 410
    error_code = "code_expired"
    default_message = "Verification code has expired"


class CodeAlreadyUsedError(VerificationError):
    status_code = 409
    error_code = "code_already_used"
    default_message = "Verification code has already been used"


class DispatchFailedError(ServerError):
    error_code = "email_cannot_be_sent"
    default_message = "Email could not be sent"


class InfrastructureError(ServerError):
    """Storage, clock or key material unavailable."""

    default_message = "Internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "UserNotFoundError",
    "AuthenticationFailedError",
    "EmailNotVerifiedError",
    "AccessTokenError",
    "AccessTokenMissingError",
    "InvalidAccessTokenError",
    "AccessTokenExpiredError",
    "RefreshTokenError",
    "RefreshTokenMissingError",
    "InvalidRefreshTokenError",
    "RefreshTokenReusedError",
    "RefreshTokenExpiredError",
    "VerificationError",
    "CodeMissingError",
    "InvalidCodeError",
    "CodeExpiredError",
    "CodeAlreadyUsedError",
    "DispatchFailedError",
    "InfrastructureError",
]
