from __future__ import annotations

from typing import List, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - invalid_token (400)
    - password_policy (400)
    - unauthorized (401)
    - account_disabled (403)
    - forbidden (403)
    - not_found (404)
    - server_error (500)

    InvalidCredentials, SessionNotFound and TokenInvalid are deliberately
    coarse. Never subclass them into something that says which part failed.
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidInput(ValidationError):
    """Input the credential hasher refuses to process (400)."""
    pass


class InvalidCredentials(ServiceError):
    """Unknown account, missing hash or wrong password; never says which (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFound(ServiceError):
    """No live session for the presented reference (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Not authenticated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDisabled(ServiceError):
    """Credentials were correct but the account is suspended (403)."""
    status_code = 403
    error_code = "account_disabled"

    def __init__(self, message: str = "Account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthorizationDenied(ServiceError):
    """Role hierarchy rejected the action (403)."""
    status_code = 403
    error_code = "forbidden"

    def __init__(self, message: str, *, reason: str, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "reason": reason}
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class TokenInvalid(ServiceError):
    """Reset token absent, expired or already used (400)."""
    status_code = 400
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PasswordPolicyError(ServiceError):
    """New password rejected by policy; reasons are safe to show (400)."""
    status_code = 400
    error_code = "password_policy"

    def __init__(self, reasons: List[str], **kwargs) -> None:
        message = "Password validation failed: " + ", ".join(reasons)
        detail = {**(kwargs.pop("detail", None) or {}), "reasons": list(reasons)}
        super().__init__(message, detail=detail, **kwargs)
        self.reasons = list(reasons)


class InternalError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidInput",
    "InvalidCredentials",
    "SessionNotFound",
    "AccountDisabled",
    "AuthorizationDenied",
    "NotFoundError",
    "TokenInvalid",
    "PasswordPolicyError",
    "InternalError",
]
