from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from sumpauth.logging import get_logger
from sumpauth.storage.common import (
    reset_token_from_dict,
    reset_token_to_dict,
    session_from_dict,
    session_to_dict,
)
from sumpauth.storage.errors import ConstraintViolation, StorageError
from sumpauth.storage.models import (
    AccountIdentifier,
    AccountRecord,
    AccountType,
    AuthScope,
    IdentifierKind,
    PasswordResetToken,
    RoleAssignment,
    Session,
)


class MemoryStore:
    """In-process session and reset-token store.

    Rows are keyed by token digest. When ``fs_root`` is set the whole state is
    snapshotted to ``<fs_root>/state/auth_store.json`` after each mutation so a
    development server keeps its sessions across restarts.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so persistence can run inside an already-held mutation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.token_hash in self.sessions:
                raise ConstraintViolation(
                    "session token collision", {"session_id": session.id}
                )
            stored = session.detached()
            self.sessions[stored.token_hash] = stored
            self._persist_state()
        return session

    def touch_session(
        self, token_hash: str, now: datetime, idle_deadline: Optional[datetime]
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token_hash)
            if sess is None:
                return None
            if not sess.is_live(now, idle_deadline):
                self.sessions.pop(token_hash, None)
                self._persist_state()
                return None
            if now > sess.last_active_at:
                sess = replace(sess, last_active_at=now)
                self.sessions[token_hash] = sess
                self._persist_state()
            return replace(sess)

    def get_session(self, token_hash: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(token_hash)
            return replace(sess) if sess else None

    def delete_session(self, token_hash: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(token_hash, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_account_sessions(
        self,
        account_type: AccountType,
        account_id: str,
        except_token_hash: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            stale = [
                digest
                for digest, sess in self.sessions.items()
                if sess.belongs_to(account_type, account_id)
                and digest != except_token_hash
            ]
            for digest in stale:
                self.sessions.pop(digest, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_account_sessions(
        self,
        account_type: AccountType,
        account_id: str,
        now: datetime,
        idle_deadline: Optional[datetime],
    ) -> List[Session]:
        with self._data_lock:
            live = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.belongs_to(account_type, account_id)
                and sess.is_live(now, idle_deadline)
            ]
        return sorted(live, key=lambda s: (s.created_at, s.id))

    def delete_expired_sessions(
        self, now: datetime, idle_deadline: Optional[datetime]
    ) -> int:
        with self._data_lock:
            stale = [
                digest
                for digest, sess in self.sessions.items()
                if not sess.is_live(now, idle_deadline)
            ]
            for digest in stale:
                self.sessions.pop(digest, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- reset tokens ------------------------------------------------------

    def create_reset_token(
        self, token: PasswordResetToken, *, supersede: bool
    ) -> PasswordResetToken:
        with self._data_lock:
            if token.token_hash in self.reset_tokens:
                raise ConstraintViolation(
                    "reset token collision", {"token_id": token.id}
                )
            if supersede:
                self._drop_account_tokens(token.account_type, token.account_id)
            self.reset_tokens[token.token_hash] = token
            self._persist_state()
        return token

    def find_reset_token(
        self, token_hash: str, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._data_lock:
            token = self.reset_tokens.get(token_hash)
            if token is None or not token.is_live(now):
                return None
            return replace(token)

    def delete_reset_token(self, token_hash: str) -> bool:
        with self._data_lock:
            removed = self.reset_tokens.pop(token_hash, None) is not None
            if removed:
                self._persist_state()
            return removed

    def delete_account_reset_tokens(
        self, account_type: AccountType, account_id: str
    ) -> int:
        with self._data_lock:
            count = self._drop_account_tokens(account_type, account_id)
            if count:
                self._persist_state()
            return count

    def delete_expired_reset_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                digest
                for digest, token in self.reset_tokens.items()
                if not token.is_live(now)
            ]
            for digest in stale:
                self.reset_tokens.pop(digest, None)
            if stale:
                self._persist_state()
            return len(stale)

    def _drop_account_tokens(self, account_type: AccountType, account_id: str) -> int:
        stale = [
            digest
            for digest, token in self.reset_tokens.items()
            if token.account_type == account_type and token.account_id == account_id
        ]
        for digest in stale:
            self.reset_tokens.pop(digest, None)
        return len(stale)

    # -- snapshot ----------------------------------------------------------

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "sessions": [session_to_dict(s) for s in self.sessions.values()],
            "reset_tokens": [
                reset_token_to_dict(t) for t in self.reset_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StorageError(
                "failed to persist in-memory state", {"path": str(path)}
            ) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_state_unreadable", path=str(path), error=str(exc))
            return False
        self.sessions = {
            s["token_hash"]: session_from_dict(s) for s in data.get("sessions", [])
        }
        self.reset_tokens = {
            t["token_hash"]: reset_token_from_dict(t)
            for t in data.get("reset_tokens", [])
        }
        self.logger.info(
            "memory_state_loaded",
            sessions=len(self.sessions),
            reset_tokens=len(self.reset_tokens),
        )
        return True


# ============================================================================
# ACCOUNT DIRECTORY
# ============================================================================


@dataclass
class _DirectoryEntry:
    record: AccountRecord
    scope: AuthScope
    identifiers: Dict[IdentifierKind, str] = field(default_factory=dict)


def _normalize_identifier(kind: IdentifierKind, value: str) -> str:
    value = value.strip()
    if kind == IdentifierKind.EMAIL:
        return value.lower()
    return value


class MemoryAccountDirectory:
    """In-process account lookup used by the development server and tests.

    Accounts and contexts themselves are owned by the surrounding platform;
    this directory only answers the questions the authentication core asks.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._contexts: set[AuthScope] = set()
        self._accounts: Dict[Tuple[AccountType, str], _DirectoryEntry] = {}

    def add_context(self, scope: AuthScope) -> AuthScope:
        with self._lock:
            self._contexts.add(scope)
        return scope

    def add_account(
        self,
        scope: AuthScope,
        *,
        password_hash: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        username: Optional[str] = None,
        role: Optional[RoleAssignment] = None,
        disabled: bool = False,
        account_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> AccountRecord:
        record = AccountRecord(
            id=account_id or str(uuid.uuid4()),
            account_type=scope.account_type,
            password_hash=password_hash,
            disabled=disabled,
            role=role,
            name=name,
        )
        identifiers = {
            kind: _normalize_identifier(kind, value)
            for kind, value in (
                (IdentifierKind.EMAIL, email),
                (IdentifierKind.PHONE, phone),
                (IdentifierKind.USERNAME, username),
            )
            if value
        }
        with self._lock:
            for entry in self._accounts.values():
                if entry.scope != scope:
                    continue
                for kind, value in identifiers.items():
                    if entry.identifiers.get(kind) == value:
                        raise ConstraintViolation(
                            f"{kind.value} already exists", {"field": kind.value}
                        )
            self._contexts.add(scope)
            self._accounts[(record.account_type, record.id)] = _DirectoryEntry(
                record=record, scope=scope, identifiers=identifiers
            )
        return replace(record)

    async def create_account(
        self,
        scope: AuthScope,
        *,
        password_hash: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        username: Optional[str] = None,
    ) -> AccountRecord:
        """Self-service signup; duplicates within the context raise ConstraintViolation."""
        return self.add_account(
            scope,
            password_hash=password_hash,
            name=name,
            email=email,
            phone=phone,
            username=username,
        )

    async def context_exists(self, scope: AuthScope) -> bool:
        with self._lock:
            return scope in self._contexts

    async def find_by_identifier(
        self, identifier: AccountIdentifier, scope: AuthScope
    ) -> Optional[AccountRecord]:
        wanted = _normalize_identifier(identifier.kind, identifier.value)
        with self._lock:
            for entry in self._accounts.values():
                if entry.scope != scope:
                    continue
                if entry.identifiers.get(identifier.kind) == wanted:
                    return replace(entry.record)
        return None

    async def get_account(
        self, account_type: AccountType, account_id: str, scope: AuthScope
    ) -> Optional[AccountRecord]:
        with self._lock:
            entry = self._accounts.get((account_type, account_id))
            if entry is None or entry.scope != scope:
                return None
            return replace(entry.record)

    async def update_password_hash(
        self, account_type: AccountType, account_id: str, password_hash: str
    ) -> bool:
        with self._lock:
            entry = self._accounts.get((account_type, account_id))
            if entry is None:
                return False
            entry.record = replace(entry.record, password_hash=password_hash)
            return True

    async def set_disabled(
        self, account_type: AccountType, account_id: str, disabled: bool
    ) -> bool:
        with self._lock:
            entry = self._accounts.get((account_type, account_id))
            if entry is None:
                return False
            entry.record = replace(entry.record, disabled=disabled)
            return True
