from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now; every timestamp in this package is aware."""
    return datetime.now(timezone.utc)


class AccountType(str, Enum):
    """Which account table a session or reset token belongs to."""

    TENANT_ACCOUNT = "tenant_account"
    ENVIRONMENT_ACCOUNT = "environment_account"


class ContextType(str, Enum):
    """The scope a session is valid within; also the target of a role assignment."""

    TENANT = "tenant"
    ENVIRONMENT = "environment"


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    USER = "user"


class IdentifierKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    USERNAME = "username"


# Each context type carries exactly one kind of account
ACCOUNT_TYPE_FOR_CONTEXT = {
    ContextType.TENANT: AccountType.TENANT_ACCOUNT,
    ContextType.ENVIRONMENT: AccountType.ENVIRONMENT_ACCOUNT,
}


@dataclass(frozen=True)
class AccountIdentifier:
    """A single, already-validated login identifier."""

    kind: IdentifierKind
    value: str


@dataclass(frozen=True)
class AccountRef:
    account_type: AccountType
    account_id: str


@dataclass(frozen=True)
class AuthScope:
    """The tenant or environment a request is addressed to."""

    context_type: ContextType
    context_id: str

    @property
    def account_type(self) -> AccountType:
        return ACCOUNT_TYPE_FOR_CONTEXT[self.context_type]


@dataclass(frozen=True)
class RoleAssignment:
    role: Role
    target: ContextType
    target_id: str


@dataclass
class AccountRecord:
    """What the account persistence layer hands back to the auth core."""

    id: str
    account_type: AccountType
    password_hash: Optional[str] = None
    disabled: bool = False
    role: Optional[RoleAssignment] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class SessionDescriptor:
    account_type: AccountType
    account_id: str
    context_type: ContextType
    context_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class Session:
    id: str
    token_hash: str
    account_type: AccountType
    account_id: str
    context_type: ContextType
    context_id: str
    created_at: datetime
    expires_at: datetime
    last_active_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    # Plaintext token; only set on the instance returned by issuance
    token: Optional[str] = field(default=None, repr=False, compare=False)

    @classmethod
    def new(
        cls,
        descriptor: SessionDescriptor,
        token_hash: str,
        ttl_seconds: int,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            account_type=descriptor.account_type,
            account_id=descriptor.account_id,
            context_type=descriptor.context_type,
            context_id=descriptor.context_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_active_at=now,
            ip_address=descriptor.ip_address,
            user_agent=descriptor.user_agent,
        )

    def is_live(self, now: datetime, idle_deadline: Optional[datetime] = None) -> bool:
        if now >= self.expires_at:
            return False
        if idle_deadline is not None and self.last_active_at < idle_deadline:
            return False
        return True

    def belongs_to(self, account_type: AccountType, account_id: str) -> bool:
        return self.account_type == account_type and self.account_id == account_id

    def detached(self) -> "Session":
        """Copy without the plaintext token, safe to hand to other layers."""
        return replace(self, token=None)


@dataclass
class PasswordResetToken:
    id: str
    token_hash: str
    account_type: AccountType
    account_id: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        account_type: AccountType,
        account_id: str,
        token_hash: str,
        ttl_seconds: int,
        *,
        now: Optional[datetime] = None,
    ) -> "PasswordResetToken":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            account_type=account_type,
            account_id=account_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_live(self, now: datetime) -> bool:
        return now < self.expires_at

    @property
    def account(self) -> AccountRef:
        return AccountRef(self.account_type, self.account_id)


@dataclass(frozen=True)
class ResetTicket:
    """Returned once on reset request; the token is never stored in plaintext."""

    token: str = field(repr=False)
    expires_at: datetime
