"""Common storage utilities shared between the memory, postgres and redis backends.

Token digests, row (de)serialization and the off-loop call wrapper live here
so every backend agrees on the same representation.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, TypeVar

from sumpauth.storage.errors import StorageError
from sumpauth.storage.models import (
    AccountType,
    ContextType,
    PasswordResetToken,
    Session,
)

T = TypeVar("T")

TOKEN_BYTES = 32


def generate_token() -> str:
    """64 hex characters from the OS CSPRNG."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """SHA-256 digest used as the storage key; raw tokens are never persisted."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


async def run_store_call(
    fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any
) -> T:
    """Run a blocking store call in a worker thread under a deadline.

    A timeout surfaces as StorageError, never as an empty result.
    """
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs), timeout=timeout
        )
    except asyncio.TimeoutError as exc:
        raise StorageError(
            "storage operation timed out",
            {"operation": getattr(fn, "__name__", repr(fn)), "timeout": timeout},
        ) from exc


# ============================================================================
# SERIALIZATION
# ============================================================================

def serialize_datetime(dt: datetime) -> str:
    return dt.isoformat()


def deserialize_datetime(raw: str) -> datetime:
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def session_to_dict(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "token_hash": session.token_hash,
        "account_type": session.account_type.value,
        "account_id": session.account_id,
        "context_type": session.context_type.value,
        "context_id": session.context_id,
        "created_at": serialize_datetime(session.created_at),
        "expires_at": serialize_datetime(session.expires_at),
        "last_active_at": serialize_datetime(session.last_active_at),
        "ip_address": session.ip_address,
        "user_agent": session.user_agent,
    }


def session_from_dict(data: Dict[str, Any]) -> Session:
    return Session(
        id=str(data["id"]),
        token_hash=data["token_hash"],
        account_type=AccountType(data["account_type"]),
        account_id=str(data["account_id"]),
        context_type=ContextType(data["context_type"]),
        context_id=str(data["context_id"]),
        created_at=_as_datetime(data["created_at"]),
        expires_at=_as_datetime(data["expires_at"]),
        last_active_at=_as_datetime(data["last_active_at"]),
        ip_address=data.get("ip_address") or None,
        user_agent=data.get("user_agent") or None,
    )


def reset_token_to_dict(token: PasswordResetToken) -> Dict[str, Any]:
    return {
        "id": token.id,
        "token_hash": token.token_hash,
        "account_type": token.account_type.value,
        "account_id": token.account_id,
        "created_at": serialize_datetime(token.created_at),
        "expires_at": serialize_datetime(token.expires_at),
    }


def reset_token_from_dict(data: Dict[str, Any]) -> PasswordResetToken:
    return PasswordResetToken(
        id=str(data["id"]),
        token_hash=data["token_hash"],
        account_type=AccountType(data["account_type"]),
        account_id=str(data["account_id"]),
        created_at=_as_datetime(data["created_at"]),
        expires_at=_as_datetime(data["expires_at"]),
    )


def _as_datetime(value: Any) -> datetime:
    """Accept either a driver-native datetime or an ISO string."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return deserialize_datetime(str(value))


def idle_deadline_for(now: datetime, idle_timeout_seconds: Optional[int]) -> Optional[datetime]:
    if not idle_timeout_seconds:
        return None
    return now - timedelta(seconds=idle_timeout_seconds)
