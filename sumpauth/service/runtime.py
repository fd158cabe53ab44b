from __future__ import annotations

import threading
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from sumpauth.config import Settings, StoreBackend, get_settings, reset_settings_cache
from sumpauth.logging import get_logger
from sumpauth.service.auth import AccountDirectory, AuthService
from sumpauth.service.password_reset import PasswordResetService, PasswordUpdater
from sumpauth.service.passwords import CredentialHasher, PasswordPolicy
from sumpauth.service.sessions import SessionService
from sumpauth.storage.memory import MemoryAccountDirectory, MemoryStore
from sumpauth.storage.models import (
    AccountRecord,
    AccountType,
    AuthScope,
    ResetTicket,
    utcnow,
)

logger = get_logger(__name__)

ResetDelivery = Callable[[AccountRecord, AuthScope, ResetTicket], Awaitable[None]]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL so it can be logged."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


async def log_reset_delivery(
    account: AccountRecord, scope: AuthScope, ticket: ResetTicket
) -> None:
    """Default delivery: record that a ticket exists, never the token itself."""
    logger.info(
        "password_reset_ticket_ready",
        account_id=account.id,
        context_type=scope.context_type.value,
        context_id=scope.context_id,
        expires_at=ticket.expires_at.isoformat(),
    )


def _build_store(settings: Settings):
    backend = settings.store_backend
    if backend == StoreBackend.POSTGRES:
        from sumpauth.storage.postgres import PostgresStore

        return PostgresStore(
            settings.database_url, timeout=settings.storage_timeout_seconds
        )
    if backend == StoreBackend.REDIS:
        from sumpauth.storage.redis_cache import RedisStore

        store = RedisStore(
            settings.redis_url, socket_timeout=settings.storage_timeout_seconds
        )
        store.verify_connection()
        return store
    return MemoryStore(fs_root=settings.shared_fs_root or None)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store=None,
        accounts=None,
        reset_delivery: Optional[ResetDelivery] = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_backend=self.settings.store_backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = store if store is not None else _build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_backend=self.settings.store_backend.value,
                database_url=_mask_url_password(self.settings.database_url),
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.accounts: AccountDirectory = (
            accounts if accounts is not None else MemoryAccountDirectory()
        )
        self.reset_delivery: ResetDelivery = reset_delivery or log_reset_delivery
        self.hasher = CredentialHasher.from_settings(self.settings)
        self.policy = PasswordPolicy.from_settings(self.settings)
        self.sessions = SessionService(
            self.store,
            ttl_seconds=self.settings.session_absolute_timeout_seconds,
            idle_timeout_seconds=self.settings.session_idle_timeout_seconds,
            storage_timeout=self.settings.storage_timeout_seconds,
            now=now,
        )
        self.password_reset = PasswordResetService(
            self.store,
            self.sessions,
            self.hasher,
            self.policy,
            ttl_seconds=self.settings.reset_token_ttl_seconds,
            supersede_previous=self.settings.reset_supersede_previous,
            storage_timeout=self.settings.storage_timeout_seconds,
            now=now,
        )
        self.auth = AuthService(self.sessions, self.hasher, self.policy, self.accounts)
        logger.info("runtime_initialized", store_type=type(self.store).__name__)

    def password_updater(self, account_type: AccountType) -> PasswordUpdater:
        """Bind the account directory's updater to one account table."""

        async def _update(account_id: str, password_hash: str) -> bool:
            return await self.accounts.update_password_hash(
                account_type, account_id, password_hash
            )

        return _update

    async def cleanup_expired(self) -> Dict[str, int]:
        sessions = await self.sessions.cleanup()
        reset_tokens = await self.password_reset.cleanup()
        return {"sessions": sessions, "reset_tokens": reset_tokens}

    def close(self) -> None:
        closer = getattr(self.store, "close", None)
        if callable(closer):
            closer()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
