from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Optional, Protocol

from sumpauth.logging import get_logger
from sumpauth.service.errors import PasswordPolicyError
from sumpauth.service.passwords import CredentialHasher, PasswordPolicy
from sumpauth.service.sessions import SessionService
from sumpauth.storage.common import generate_token, hash_token, run_store_call
from sumpauth.storage.errors import StorageError
from sumpauth.storage.models import (
    AccountRef,
    AccountType,
    PasswordResetToken,
    ResetTicket,
    utcnow,
)

logger = get_logger(__name__)

PasswordUpdater = Callable[[str, str], Awaitable[bool]]


class ResetTokenStore(Protocol):
    def create_reset_token(
        self, token: PasswordResetToken, *, supersede: bool
    ) -> PasswordResetToken: ...

    def find_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def delete_reset_token(self, token_hash: str) -> bool: ...

    def delete_account_reset_tokens(
        self, account_type: AccountType, account_id: str
    ) -> int: ...

    def delete_expired_reset_tokens(self, now: datetime) -> int: ...


class PasswordResetService:
    """Issue and redeem single-use password reset tokens.

    Redemption order is fixed: find token, enforce policy, hash, update the
    account, then consume the redeemed token, sweep the account's other tokens
    and revoke its sessions. Nothing is invalidated until the updater has
    reported success.
    """

    def __init__(
        self,
        store: ResetTokenStore,
        sessions: SessionService,
        hasher: CredentialHasher,
        policy: PasswordPolicy,
        *,
        ttl_seconds: int = 3600,
        supersede_previous: bool = True,
        storage_timeout: float = 5.0,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.hasher = hasher
        self.policy = policy
        self.ttl_seconds = ttl_seconds
        self.supersede_previous = supersede_previous
        self.storage_timeout = storage_timeout
        self._now = now

    async def _call(self, fn, *args, **kwargs):
        return await run_store_call(fn, *args, timeout=self.storage_timeout, **kwargs)

    async def request_reset(
        self, account_type: AccountType, account_id: str
    ) -> ResetTicket:
        token = generate_token()
        record = PasswordResetToken.new(
            account_type, account_id, hash_token(token), self.ttl_seconds, now=self._now()
        )
        await self._call(
            self.store.create_reset_token, record, supersede=self.supersede_previous
        )
        logger.info(
            "password_reset_requested",
            account_type=account_type.value,
            account_id=account_id,
            superseded_previous=self.supersede_previous,
        )
        return ResetTicket(token=token, expires_at=record.expires_at)

    async def validate_token(self, token: Optional[str]) -> Optional[AccountRef]:
        """Pure lookup; wrong, expired and used tokens are indistinguishable."""
        if not token:
            return None
        record = await self._call(
            self.store.find_reset_token, hash_token(token), self._now()
        )
        if record is None:
            logger.info("password_reset_token_invalid")
            return None
        return record.account

    async def reset_password(
        self,
        token: Optional[str],
        new_password: str,
        update_password_hash: PasswordUpdater,
    ) -> bool:
        if not token:
            return False
        record = await self._call(
            self.store.find_reset_token, hash_token(token), self._now()
        )
        if record is None:
            logger.info("password_reset_failed", reason="invalid_or_expired_token")
            return False

        try:
            self.policy.enforce(new_password)
        except PasswordPolicyError as exc:
            logger.info("password_reset_failed", reason="weak_password", errors=exc.reasons)
            raise

        password_hash = await self.hasher.hash_async(new_password)

        updated = await update_password_hash(record.account_id, password_hash)
        if not updated:
            logger.error(
                "password_reset_update_failed",
                account_type=record.account_type.value,
                account_id=record.account_id,
            )
            return False

        # The password is committed from here on; cleanup failures must not
        # turn a changed password into a reported failure
        try:
            await self._call(self.store.delete_reset_token, record.token_hash)
        except StorageError as exc:
            logger.error(
                "password_reset_token_consume_failed",
                account_id=record.account_id,
                error=exc.message,
            )
        try:
            await self._call(
                self.store.delete_account_reset_tokens,
                record.account_type,
                record.account_id,
            )
        except StorageError as exc:
            logger.error(
                "password_reset_token_cleanup_failed",
                account_id=record.account_id,
                error=exc.message,
            )
        try:
            revoked = await self.sessions.revoke_all(record.account_type, record.account_id)
        except StorageError as exc:
            logger.error(
                "password_reset_session_revoke_failed",
                account_id=record.account_id,
                error=exc.message,
            )
            revoked = 0

        logger.info(
            "password_reset_completed",
            account_type=record.account_type.value,
            account_id=record.account_id,
            sessions_revoked=revoked,
        )
        return True

    async def cleanup(self) -> int:
        count = await self._call(self.store.delete_expired_reset_tokens, self._now())
        if count:
            logger.info("expired_reset_tokens_deleted", count=count)
        return count
