from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Protocol

from sumpauth.logging import get_logger
from sumpauth.storage.common import (
    generate_token,
    hash_token,
    idle_deadline_for,
    run_store_call,
)
from sumpauth.storage.errors import ConstraintViolation
from sumpauth.storage.models import AccountType, Session, SessionDescriptor, utcnow

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def touch_session(
        self, token_hash: str, now: datetime, idle_deadline: Optional[datetime]
    ) -> Optional[Session]: ...

    def get_session(self, token_hash: str) -> Optional[Session]: ...

    def delete_session(self, token_hash: str) -> bool: ...

    def delete_account_sessions(
        self,
        account_type: AccountType,
        account_id: str,
        except_token_hash: Optional[str] = None,
    ) -> int: ...

    def list_account_sessions(
        self,
        account_type: AccountType,
        account_id: str,
        now: datetime,
        idle_deadline: Optional[datetime],
    ) -> List[Session]: ...

    def delete_expired_sessions(
        self, now: datetime, idle_deadline: Optional[datetime]
    ) -> int: ...


class SessionService:
    """Issue, validate, list and revoke server-side sessions.

    A session dies at ``expires_at`` (absolute) or once it has been idle for
    longer than ``idle_timeout_seconds``; whichever comes first. Store calls
    run in a worker thread under ``storage_timeout``; a timeout is a
    StorageError and is never reported as a missing session.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        ttl_seconds: int,
        idle_timeout_seconds: Optional[int] = None,
        storage_timeout: float = 5.0,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.idle_timeout_seconds = idle_timeout_seconds
        self.storage_timeout = storage_timeout
        self._now = now

    async def _call(self, fn, *args, **kwargs):
        return await run_store_call(fn, *args, timeout=self.storage_timeout, **kwargs)

    def _deadline(self, now: datetime) -> Optional[datetime]:
        return idle_deadline_for(now, self.idle_timeout_seconds)

    async def issue(self, descriptor: SessionDescriptor) -> Session:
        """Create a session; the returned object is the only one carrying the token."""
        try:
            token, session = await self._create(descriptor)
        except ConstraintViolation:
            # 256-bit tokens should never collide; retry once then give up
            logger.warning("session_token_collision", attempt=1)
            token, session = await self._create(descriptor)
        session.token = token
        logger.info(
            "session_created",
            session_id=session.id,
            account_type=session.account_type.value,
            account_id=session.account_id,
            context_type=session.context_type.value,
            context_id=session.context_id,
        )
        return session

    async def _create(self, descriptor: SessionDescriptor) -> tuple[str, Session]:
        token = generate_token()
        session = Session.new(
            descriptor, hash_token(token), self.ttl_seconds, now=self._now()
        )
        await self._call(self.store.create_session, session)
        return token, session

    async def validate(self, token: Optional[str]) -> Optional[Session]:
        """Return the live session for ``token`` and advance its activity time."""
        if not token:
            return None
        now = self._now()
        return await self._call(
            self.store.touch_session, hash_token(token), now, self._deadline(now)
        )

    async def get(self, token: Optional[str]) -> Optional[Session]:
        """Look up a live session without refreshing it."""
        if not token:
            return None
        session = await self._call(self.store.get_session, hash_token(token))
        if session is None:
            return None
        now = self._now()
        return session if session.is_live(now, self._deadline(now)) else None

    async def revoke(self, token: Optional[str]) -> bool:
        if not token:
            return False
        removed = await self._call(self.store.delete_session, hash_token(token))
        if removed:
            logger.info("session_revoked")
        return removed

    async def revoke_all(
        self,
        account_type: AccountType,
        account_id: str,
        *,
        except_token: Optional[str] = None,
    ) -> int:
        except_hash = hash_token(except_token) if except_token else None
        count = await self._call(
            self.store.delete_account_sessions, account_type, account_id, except_hash
        )
        logger.info(
            "sessions_revoked_for_account",
            account_type=account_type.value,
            account_id=account_id,
            count=count,
            kept_current=except_hash is not None,
        )
        return count

    async def list(self, account_type: AccountType, account_id: str) -> List[Session]:
        now = self._now()
        return await self._call(
            self.store.list_account_sessions,
            account_type,
            account_id,
            now,
            self._deadline(now),
        )

    async def cleanup(self) -> int:
        now = self._now()
        count = await self._call(
            self.store.delete_expired_sessions, now, self._deadline(now)
        )
        if count:
            logger.info("expired_sessions_deleted", count=count)
        return count
