from __future__ import annotations

from typing import List, Optional, Protocol

from sumpauth.logging import get_logger
from sumpauth.service.errors import (
    AccountDisabled,
    InternalError,
    InvalidCredentials,
    SessionNotFound,
)
from sumpauth.service.password_reset import PasswordUpdater
from sumpauth.service.passwords import CredentialHasher, PasswordPolicy
from sumpauth.service.sessions import SessionService
from sumpauth.storage.models import (
    AccountIdentifier,
    AccountRecord,
    AccountRef,
    AccountType,
    AuthScope,
    Session,
    SessionDescriptor,
)

logger = get_logger(__name__)


class AccountLookup(Protocol):
    """Read side of the account persistence layer, owned by the platform."""

    async def context_exists(self, scope: AuthScope) -> bool: ...

    async def find_by_identifier(
        self, identifier: AccountIdentifier, scope: AuthScope
    ) -> Optional[AccountRecord]: ...

    async def get_account(
        self, account_type: AccountType, account_id: str, scope: AuthScope
    ) -> Optional[AccountRecord]: ...


class AccountDirectory(AccountLookup, Protocol):
    """Lookup plus the writes the auth endpoints need."""

    async def create_account(
        self,
        scope: AuthScope,
        *,
        password_hash: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        username: Optional[str] = None,
    ) -> AccountRecord: ...

    async def update_password_hash(
        self, account_type: AccountType, account_id: str, password_hash: str
    ) -> bool: ...

    async def set_disabled(
        self, account_type: AccountType, account_id: str, disabled: bool
    ) -> bool: ...


class AuthService:
    """Login, sign-out and session introspection on top of SessionService."""

    def __init__(
        self,
        sessions: SessionService,
        hasher: CredentialHasher,
        policy: PasswordPolicy,
        accounts: AccountLookup,
    ) -> None:
        self.sessions = sessions
        self.hasher = hasher
        self.policy = policy
        self.accounts = accounts
        self.logger = logger

    async def login(
        self,
        identifier: AccountIdentifier,
        password: str,
        scope: AuthScope,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        """Verify credentials within ``scope`` and issue a session.

        Unknown account, missing hash and wrong password all raise the same
        InvalidCredentials after the same amount of hashing work. The disabled
        flag is only consulted once the password has been proven.
        """
        account = await self.accounts.find_by_identifier(identifier, scope)
        if account is None or not account.password_hash:
            await self.hasher.verify_dummy_async(password)
            self.logger.info("login_failed", context_id=scope.context_id)
            raise InvalidCredentials()

        if not await self.hasher.verify_async(password, account.password_hash):
            self.logger.info("login_failed", context_id=scope.context_id)
            raise InvalidCredentials()

        if account.disabled:
            self.logger.info(
                "login_rejected_disabled",
                account_id=account.id,
                context_id=scope.context_id,
            )
            raise AccountDisabled()

        session = await self.sessions.issue(
            SessionDescriptor(
                account_type=account.account_type,
                account_id=account.id,
                context_type=scope.context_type,
                context_id=scope.context_id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        )
        self.logger.info("login_succeeded", account_id=account.id, session_id=session.id)
        return session

    async def signout(self, token: Optional[str]) -> bool:
        """Invalidate the server-side session; the caller clears its cookie after."""
        return await self.sessions.revoke(token)

    async def signout_all(
        self, token: Optional[str], account_type: AccountType, account_id: str
    ) -> int:
        """Revoke every session of the account, the caller's own included."""
        revoked = await self.sessions.revoke_all(account_type, account_id)
        self.logger.info("signout_all", account_id=account_id, revoked=revoked)
        return revoked

    async def validate_session(
        self, token: Optional[str], scope: Optional[AuthScope] = None
    ) -> Optional[Session]:
        if scope is not None:
            # A session presented to the wrong context must not be refreshed
            current = await self.sessions.get(token)
            if current is None:
                return None
            if not _in_scope(current, scope):
                self.logger.warning(
                    "session_scope_mismatch",
                    session_id=current.id,
                    session_context_id=current.context_id,
                    requested_context_id=scope.context_id,
                )
                return None
        return await self.sessions.validate(token)

    async def require_session(
        self, token: Optional[str], scope: Optional[AuthScope] = None
    ) -> Session:
        session = await self.validate_session(token, scope)
        if session is None:
            raise SessionNotFound()
        return session

    async def get_session(
        self, token: Optional[str], scope: Optional[AuthScope] = None
    ) -> Optional[Session]:
        """Like validate_session but leaves ``last_active_at`` untouched."""
        session = await self.sessions.get(token)
        if session is None or (scope is not None and not _in_scope(session, scope)):
            return None
        return session

    async def list_sessions(
        self, account_type: AccountType, account_id: str
    ) -> List[Session]:
        return await self.sessions.list(account_type, account_id)

    async def hash_password(self, plaintext: str) -> str:
        """Policy check then hash, for collaborators that create accounts."""
        self.policy.enforce(plaintext)
        return await self.hasher.hash_async(plaintext)

    async def change_password(
        self,
        account: AccountRef,
        scope: AuthScope,
        current_password: str,
        new_password: str,
        update_password_hash: PasswordUpdater,
        *,
        keep_token: Optional[str] = None,
    ) -> int:
        """Replace the password and sign out every other device.

        Returns the number of sessions revoked. The session identified by
        ``keep_token`` survives.
        """
        record = await self.accounts.get_account(
            account.account_type, account.account_id, scope
        )
        if record is None or not record.password_hash:
            await self.hasher.verify_dummy_async(current_password)
            raise InvalidCredentials()
        if not await self.hasher.verify_async(current_password, record.password_hash):
            raise InvalidCredentials()

        new_hash = await self.hash_password(new_password)
        if not await update_password_hash(record.id, new_hash):
            self.logger.error("password_change_update_failed", account_id=record.id)
            raise InternalError("password update failed")

        revoked = await self.sessions.revoke_all(
            record.account_type, record.id, except_token=keep_token
        )
        self.logger.info("password_changed", account_id=record.id, sessions_revoked=revoked)
        return revoked


def _in_scope(session: Session, scope: AuthScope) -> bool:
    return (
        session.context_type == scope.context_type
        and session.context_id == scope.context_id
    )
