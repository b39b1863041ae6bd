from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for errors the HTTP layer renders in the response envelope.

    Subclasses pin an HTTP ``status_code`` and a stable ``error_code``; callers
    may override either per raise. The interaction orchestrator turns
    retryable failures (bad password, wrong TOTP code) into retry outcomes,
    so those never reach the HTTP layer.
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

    def to_error_body(self) -> Dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "details": self.detail or None,
        }


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class SessionMismatch(ServiceError):
    """Session-carried flow state is missing or bound to another interaction."""
    status_code = 400
    error_code = "session_mismatch"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown account or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaVerificationFailed(AuthenticationError):
    """A TOTP or backup code matched no verified device."""
    error_code = "mfa_verification_failed"


class ReauthenticationRequired(AuthenticationError):
    """The engine's session has no current-format account id."""
    error_code = "login_required"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email within a pool, client id, group name or device name."""
    status_code = 409
    error_code = "conflict"


class InteractionExpired(ServiceError):
    """The protocol engine no longer knows the interaction id."""
    status_code = 410
    error_code = "interaction_expired"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "SessionMismatch",
    "AuthenticationError",
    "InvalidCredentials",
    "MfaVerificationFailed",
    "ReauthenticationRequired",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "InteractionExpired",
    "ServerError",
]
