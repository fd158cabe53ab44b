from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from sumpauth.service.errors import ValidationError
from sumpauth.storage.models import (
    AccountIdentifier,
    AuthScope,
    ContextType,
    IdentifierKind,
    Session,
)

# Bounded well above any policy maximum; the policy itself reports length errors
MAX_PASSWORD_FIELD = 1024
MAX_TOKEN_FIELD = 256

_VALID_ERROR_CODES = {
    "validation_error",
    "invalid_token",
    "password_policy",
    "unauthorized",
    "account_disabled",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
}

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists with this identifier, a reset link has been sent."
)
RESET_PASSWORD_MESSAGE = (
    "Password has been reset successfully. Please log in with your new password."
)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class Envelope(BaseModel):
    """API envelope. The request id travels in the X-Request-ID header."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None


class ScopeSegment(str, Enum):
    """URL segment selecting which kind of context a route addresses."""

    TENANTS = "tenants"
    ENVIRONMENTS = "environments"

    def to_scope(self, context_id: str) -> AuthScope:
        context_type = (
            ContextType.TENANT if self is ScopeSegment.TENANTS else ContextType.ENVIRONMENT
        )
        return AuthScope(context_type=context_type, context_id=context_id)


class IdentifierFields(BaseModel):
    email: Optional[str] = Field(default=None, max_length=254)
    phone: Optional[str] = Field(default=None, max_length=32)
    username: Optional[str] = Field(default=None, max_length=100)

    def single_identifier(self) -> AccountIdentifier:
        """Collapse the optional fields into exactly one identifier."""
        supplied = [
            AccountIdentifier(kind, value.strip())
            for kind, value in (
                (IdentifierKind.EMAIL, self.email),
                (IdentifierKind.PHONE, self.phone),
                (IdentifierKind.USERNAME, self.username),
            )
            if value and value.strip()
        ]
        if not supplied:
            raise ValidationError("Must provide email, phone, or username")
        if len(supplied) > 1:
            raise ValidationError("Provide only one of email, phone, or username")
        return supplied[0]


class LoginRequest(IdentifierFields):
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_FIELD)


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=3, max_length=100)
    email: str = Field(..., min_length=3, max_length=254)
    username: str = Field(..., min_length=3, max_length=20)
    phone: Optional[str] = Field(default=None, max_length=32)
    # Strength is the password policy's call, reported as password_policy
    password: str = Field(..., max_length=MAX_PASSWORD_FIELD)


class ForgotPasswordRequest(IdentifierFields):
    pass


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., max_length=MAX_TOKEN_FIELD)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_FIELD)
    new_password: str = Field(..., max_length=MAX_PASSWORD_FIELD)


class SessionResponse(BaseModel):
    id: str
    account_type: str
    account_id: str
    context_type: str
    context_id: str
    created_at: datetime
    expires_at: datetime
    last_active_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            account_type=session.account_type.value,
            account_id=session.account_id,
            context_type=session.context_type.value,
            context_id=session.context_id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            last_active_at=session.last_active_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
        )


class LoginResponse(BaseModel):
    account_id: str
    session: SessionResponse


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    current_session_id: Optional[str] = None


class RevokedResponse(BaseModel):
    revoked: int


class MessageResponse(BaseModel):
    message: str


class ResetPasswordResponse(BaseModel):
    success: bool
    message: str


class AccountStatusResponse(BaseModel):
    account_id: str
    disabled: bool
    sessions_revoked: int = 0
