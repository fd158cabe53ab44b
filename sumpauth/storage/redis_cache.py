from __future__ import annotations

import math
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from sumpauth.logging import get_logger
from sumpauth.storage.common import (
    reset_token_from_dict,
    reset_token_to_dict,
    session_from_dict,
    session_to_dict,
)
from sumpauth.storage.errors import ConstraintViolation, StorageError
from sumpauth.storage.models import AccountType, PasswordResetToken, Session

SESSION_PREFIX = "auth:session:"
SESSION_INDEX_PREFIX = "auth:account_sessions:"
RESET_PREFIX = "auth:reset:"
RESET_INDEX_PREFIX = "auth:account_resets:"


class RedisStore:
    """Redis-backed session and reset-token store.

    Each row is a hash keyed by token digest with a native TTL at its absolute
    expiry; a per-account set indexes the digests for revoke-all and listing.
    Multi-key mutations run as Lua scripts so they are atomic on the server.
    """

    # Insert a row and index it. Optionally clears the account's other rows
    # first. Returns -1 on digest collision, otherwise the number superseded.
    _CREATE_SCRIPT = """
local row_key = KEYS[1]
local index_key = KEYS[2]
local digest = ARGV[1]
local ttl = tonumber(ARGV[2])
local supersede = ARGV[3]
local prefix = ARGV[4]

if redis.call('EXISTS', row_key) == 1 then
  return -1
end

local superseded = 0
if supersede == '1' then
  local members = redis.call('SMEMBERS', index_key)
  for _, other in ipairs(members) do
    superseded = superseded + redis.call('DEL', prefix .. other)
  end
  redis.call('DEL', index_key)
end

for i = 5, #ARGV, 2 do
  redis.call('HSET', row_key, ARGV[i], ARGV[i + 1])
end
redis.call('EXPIRE', row_key, ttl)
redis.call('SADD', index_key, digest)
if redis.call('TTL', index_key) < ttl then
  redis.call('EXPIRE', index_key, ttl)
end
return superseded
"""

    # Validate-and-refresh. Returns nil when absent, -1 when the row was stale
    # and has been deleted, otherwise the row (refreshed when touch == '1').
    _TOUCH_SCRIPT = """
local row_key = KEYS[1]
local now = tonumber(ARGV[1])
local idle_deadline = tonumber(ARGV[2])
local now_iso = ARGV[3]
local touch = ARGV[4]

if redis.call('EXISTS', row_key) == 0 then
  return nil
end

local data = redis.call('HMGET', row_key, 'expires_ts', 'last_active_ts', 'index_key', 'token_hash')
local expires = tonumber(data[1])
local last = tonumber(data[2])
if now >= expires or (idle_deadline >= 0 and last < idle_deadline) then
  redis.call('DEL', row_key)
  if data[3] then
    redis.call('SREM', data[3], data[4])
  end
  return -1
end

if touch ~= '1' then
  return 0
end
if now > last then
  redis.call('HSET', row_key, 'last_active_ts', ARGV[1], 'last_active_at', now_iso)
end
return redis.call('HGETALL', row_key)
"""

    _DELETE_SCRIPT = """
local index_key = redis.call('HGET', KEYS[1], 'index_key')
local removed = redis.call('DEL', KEYS[1])
if index_key then
  redis.call('SREM', index_key, ARGV[1])
end
return removed
"""

    _DELETE_ACCOUNT_SCRIPT = """
local index_key = KEYS[1]
local prefix = ARGV[1]
local keep = ARGV[2]
local removed = 0
for _, digest in ipairs(redis.call('SMEMBERS', index_key)) do
  if digest ~= keep then
    removed = removed + redis.call('DEL', prefix .. digest)
    redis.call('SREM', index_key, digest)
  end
end
return removed
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.logger = get_logger(__name__)
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._create = self.client.register_script(self._CREATE_SCRIPT)
        self._touch = self.client.register_script(self._TOUCH_SCRIPT)
        self._delete = self.client.register_script(self._DELETE_SCRIPT)
        self._delete_account = self.client.register_script(self._DELETE_ACCOUNT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        with self._guard("ping"):
            self.client.ping()

    def close(self) -> None:
        self.client.close()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RedisError as exc:
            self.logger.error("redis_operation_failed", operation=operation, error=str(exc))
            raise StorageError(
                "redis operation failed",
                {"operation": operation, "error": type(exc).__name__},
            ) from exc

    @staticmethod
    def _ttl_seconds(expires_at: datetime, now: datetime) -> int:
        """Clamp to at least one second; Redis rejects zero or negative TTLs."""
        return max(1, math.ceil((expires_at - now).total_seconds()))

    @staticmethod
    def _index_key(prefix: str, account_type: AccountType, account_id: str) -> str:
        return f"{prefix}{account_type.value}:{account_id}"

    @staticmethod
    def _encode_row(data: Dict[str, Any]) -> List[str]:
        flat: List[str] = []
        for key, value in data.items():
            flat.extend([key, "" if value is None else str(value)])
        return flat

    @staticmethod
    def _decode_row(raw: Any) -> Dict[str, str]:
        if isinstance(raw, dict):
            return raw
        items = list(raw)
        return dict(zip(items[0::2], items[1::2]))

    def _insert(
        self,
        operation: str,
        row_key: str,
        index_key: str,
        row: Dict[str, Any],
        *,
        ttl: int,
        supersede: bool,
        prefix: str,
    ) -> int:
        with self._guard(operation):
            result = self._create(
                keys=[row_key, index_key],
                args=[row["token_hash"], ttl, "1" if supersede else "0", prefix]
                + self._encode_row(row),
            )
        if int(result) < 0:
            raise ConstraintViolation("duplicate token digest", {"operation": operation})
        return int(result)

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        index_key = self._index_key(
            SESSION_INDEX_PREFIX, session.account_type, session.account_id
        )
        row = session_to_dict(session)
        row.update(
            index_key=index_key,
            expires_ts=session.expires_at.timestamp(),
            last_active_ts=session.last_active_at.timestamp(),
        )
        self._insert(
            "create_session",
            SESSION_PREFIX + session.token_hash,
            index_key,
            row,
            ttl=self._ttl_seconds(session.expires_at, session.created_at),
            supersede=False,
            prefix=SESSION_PREFIX,
        )
        return session

    def _run_touch(
        self,
        row_key: str,
        now: datetime,
        idle_deadline: Optional[datetime],
        *,
        touch: bool,
    ) -> Any:
        with self._guard("touch_session"):
            return self._touch(
                keys=[row_key],
                args=[
                    now.timestamp(),
                    idle_deadline.timestamp() if idle_deadline else -1,
                    now.isoformat(),
                    "1" if touch else "0",
                ],
            )

    def touch_session(
        self, token_hash: str, now: datetime, idle_deadline: Optional[datetime]
    ) -> Optional[Session]:
        result = self._run_touch(SESSION_PREFIX + token_hash, now, idle_deadline, touch=True)
        if not isinstance(result, (list, dict)):
            return None
        return session_from_dict(self._decode_row(result))

    def get_session(self, token_hash: str) -> Optional[Session]:
        with self._guard("get_session"):
            raw = self.client.hgetall(SESSION_PREFIX + token_hash)
        return session_from_dict(raw) if raw else None

    def delete_session(self, token_hash: str) -> bool:
        with self._guard("delete_session"):
            removed = self._delete(keys=[SESSION_PREFIX + token_hash], args=[token_hash])
        return int(removed) > 0

    def delete_account_sessions(
        self,
        account_type: AccountType,
        account_id: str,
        except_token_hash: Optional[str] = None,
    ) -> int:
        index_key = self._index_key(SESSION_INDEX_PREFIX, account_type, account_id)
        with self._guard("delete_account_sessions"):
            removed = self._delete_account(
                keys=[index_key], args=[SESSION_PREFIX, except_token_hash or ""]
            )
        return int(removed)

    def list_account_sessions(
        self,
        account_type: AccountType,
        account_id: str,
        now: datetime,
        idle_deadline: Optional[datetime],
    ) -> List[Session]:
        index_key = self._index_key(SESSION_INDEX_PREFIX, account_type, account_id)
        with self._guard("list_account_sessions"):
            digests = sorted(self.client.smembers(index_key))
            if not digests:
                return []
            pipe = self.client.pipeline()
            for digest in digests:
                pipe.hgetall(SESSION_PREFIX + digest)
            rows = pipe.execute()
            # Rows that expired natively leave their digest behind in the index
            missing = [digest for digest, raw in zip(digests, rows) if not raw]
            if missing:
                self.client.srem(index_key, *missing)
        sessions = [session_from_dict(raw) for raw in rows if raw]
        live = [s for s in sessions if s.is_live(now, idle_deadline)]
        return sorted(live, key=lambda s: (s.created_at, s.id))

    def delete_expired_sessions(
        self, now: datetime, idle_deadline: Optional[datetime]
    ) -> int:
        removed = 0
        with self._guard("delete_expired_sessions"):
            keys = list(self.client.scan_iter(match=f"{SESSION_PREFIX}*"))
        for key in keys:
            if self._run_touch(key, now, idle_deadline, touch=False) == -1:
                removed += 1
        return removed

    # -- reset tokens ------------------------------------------------------

    def create_reset_token(
        self, token: PasswordResetToken, *, supersede: bool
    ) -> PasswordResetToken:
        index_key = self._index_key(RESET_INDEX_PREFIX, token.account_type, token.account_id)
        row = reset_token_to_dict(token)
        row.update(index_key=index_key, expires_ts=token.expires_at.timestamp())
        superseded = self._insert(
            "create_reset_token",
            RESET_PREFIX + token.token_hash,
            index_key,
            row,
            ttl=self._ttl_seconds(token.expires_at, token.created_at),
            supersede=supersede,
            prefix=RESET_PREFIX,
        )
        if superseded:
            self.logger.info(
                "reset_tokens_superseded",
                account_type=token.account_type.value,
                account_id=token.account_id,
                count=superseded,
            )
        return token

    def find_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._guard("find_reset_token"):
            raw = self.client.hgetall(RESET_PREFIX + token_hash)
        if not raw:
            return None
        token = reset_token_from_dict(raw)
        return token if token.is_live(now) else None

    def delete_reset_token(self, token_hash: str) -> bool:
        with self._guard("delete_reset_token"):
            removed = self._delete(keys=[RESET_PREFIX + token_hash], args=[token_hash])
        return int(removed) > 0

    def delete_account_reset_tokens(
        self, account_type: AccountType, account_id: str
    ) -> int:
        index_key = self._index_key(RESET_INDEX_PREFIX, account_type, account_id)
        with self._guard("delete_account_reset_tokens"):
            removed = self._delete_account(keys=[index_key], args=[RESET_PREFIX, ""])
        return int(removed)

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        removed = 0
        cutoff = now.timestamp()
        with self._guard("delete_expired_reset_tokens"):
            for key in list(self.client.scan_iter(match=f"{RESET_PREFIX}*")):
                expires_ts = self.client.hget(key, "expires_ts")
                if expires_ts is None or float(expires_ts) > cutoff:
                    continue
                digest = key[len(RESET_PREFIX):]
                removed += int(self._delete(keys=[key], args=[digest]))
        return removed
