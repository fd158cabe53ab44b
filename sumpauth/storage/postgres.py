from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from sumpauth.logging import get_logger
from sumpauth.storage.common import reset_token_from_dict, session_from_dict
from sumpauth.storage.errors import ConstraintViolation, StorageError
from sumpauth.storage.models import AccountType, PasswordResetToken, Session

_SESSION_COLUMNS = (
    "id, token_hash, account_type, account_id, context_type, context_id, "
    "created_at, expires_at, last_active_at, ip_address, user_agent"
)
_RESET_COLUMNS = "id, token_hash, account_type, account_id, created_at, expires_at"

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        account_type TEXT NOT NULL,
        account_id TEXT NOT NULL,
        context_type TEXT NOT NULL,
        context_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        last_active_at TIMESTAMPTZ NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        CHECK (expires_at > created_at)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx "
    "ON auth_session (account_type, account_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id TEXT PRIMARY KEY,
        token_hash TEXT NOT NULL UNIQUE,
        account_type TEXT NOT NULL,
        account_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_token_account_idx "
    "ON password_reset_token (account_type, account_id)",
)


class PostgresStore:
    """Postgres-backed session and reset-token store.

    Every mutation is a single statement or a short transaction on one pooled
    connection, so the database provides the atomicity the services rely on.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 5.0,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(timeout * 1000)}",
            },
        )
        if ensure_schema:
            self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._transaction("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[psycopg.Connection]:
        """Yield a pooled connection, committing on success.

        Driver failures become StorageError so callers never mistake an outage
        for a missing row.
        """
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "duplicate token digest", {"operation": operation}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed", operation=operation, error=str(exc)
            )
            raise StorageError(
                "postgres operation failed",
                {"operation": operation, "error": type(exc).__name__},
            ) from exc

    def _ensure_schema(self) -> None:
        with self._transaction("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _idle_clause(idle_deadline: Optional[datetime]) -> tuple[str, tuple]:
        if idle_deadline is None:
            return "", ()
        return " AND last_active_at >= %s", (idle_deadline,)

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._transaction("create_session") as conn:
            conn.execute(
                f"INSERT INTO auth_session ({_SESSION_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    session.id,
                    session.token_hash,
                    session.account_type.value,
                    session.account_id,
                    session.context_type.value,
                    session.context_id,
                    session.created_at,
                    session.expires_at,
                    session.last_active_at,
                    session.ip_address,
                    session.user_agent,
                ),
            )
        return session

    def touch_session(
        self, token_hash: str, now: datetime, idle_deadline: Optional[datetime]
    ) -> Optional[Session]:
        with self._transaction("touch_session") as conn:
            expired = conn.execute(
                "DELETE FROM auth_session WHERE token_hash = %s "
                "AND (expires_at <= %s OR last_active_at < %s) RETURNING id",
                (token_hash, now, idle_deadline),
            ).fetchone()
            if expired:
                return None
            # UPDATE only: a row deleted concurrently stays deleted
            row = conn.execute(
                "UPDATE auth_session SET last_active_at = GREATEST(last_active_at, %s) "
                f"WHERE token_hash = %s RETURNING {_SESSION_COLUMNS}",
                (now, token_hash),
            ).fetchone()
        return session_from_dict(row) if row else None

    def get_session(self, token_hash: str) -> Optional[Session]:
        with self._transaction("get_session") as conn:
            row = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session WHERE token_hash = %s",
                (token_hash,),
            ).fetchone()
        return session_from_dict(row) if row else None

    def delete_session(self, token_hash: str) -> bool:
        with self._transaction("delete_session") as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE token_hash = %s", (token_hash,)
            )
            return cur.rowcount > 0

    def delete_account_sessions(
        self,
        account_type: AccountType,
        account_id: str,
        except_token_hash: Optional[str] = None,
    ) -> int:
        query = "DELETE FROM auth_session WHERE account_type = %s AND account_id = %s"
        params: tuple = (account_type.value, account_id)
        if except_token_hash:
            query += " AND token_hash <> %s"
            params += (except_token_hash,)
        with self._transaction("delete_account_sessions") as conn:
            return conn.execute(query, params).rowcount

    def list_account_sessions(
        self,
        account_type: AccountType,
        account_id: str,
        now: datetime,
        idle_deadline: Optional[datetime],
    ) -> List[Session]:
        idle_sql, idle_params = self._idle_clause(idle_deadline)
        with self._transaction("list_account_sessions") as conn:
            rows = conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM auth_session "
                "WHERE account_type = %s AND account_id = %s AND expires_at > %s"
                f"{idle_sql} ORDER BY created_at ASC, id ASC",
                (account_type.value, account_id, now, *idle_params),
            ).fetchall()
        return [session_from_dict(row) for row in rows]

    def delete_expired_sessions(
        self, now: datetime, idle_deadline: Optional[datetime]
    ) -> int:
        with self._transaction("delete_expired_sessions") as conn:
            return conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s OR last_active_at < %s",
                (now, idle_deadline),
            ).rowcount

    # -- reset tokens ------------------------------------------------------

    def create_reset_token(
        self, token: PasswordResetToken, *, supersede: bool
    ) -> PasswordResetToken:
        with self._transaction("create_reset_token") as conn:
            if supersede:
                conn.execute(
                    "DELETE FROM password_reset_token "
                    "WHERE account_type = %s AND account_id = %s",
                    (token.account_type.value, token.account_id),
                )
            conn.execute(
                f"INSERT INTO password_reset_token ({_RESET_COLUMNS}) "
                "VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    token.id,
                    token.token_hash,
                    token.account_type.value,
                    token.account_id,
                    token.created_at,
                    token.expires_at,
                ),
            )
        return token

    def find_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._transaction("find_reset_token") as conn:
            row = conn.execute(
                f"SELECT {_RESET_COLUMNS} FROM password_reset_token "
                "WHERE token_hash = %s AND expires_at > %s",
                (token_hash, now),
            ).fetchone()
        return reset_token_from_dict(row) if row else None

    def delete_reset_token(self, token_hash: str) -> bool:
        with self._transaction("delete_reset_token") as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_token WHERE token_hash = %s",
                (token_hash,),
            )
            return cur.rowcount > 0

    def delete_account_reset_tokens(
        self, account_type: AccountType, account_id: str
    ) -> int:
        with self._transaction("delete_account_reset_tokens") as conn:
            return conn.execute(
                "DELETE FROM password_reset_token "
                "WHERE account_type = %s AND account_id = %s",
                (account_type.value, account_id),
            ).rowcount

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._transaction("delete_expired_reset_tokens") as conn:
            return conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at <= %s", (now,)
            ).rowcount
