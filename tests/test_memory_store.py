from datetime import datetime, timedelta, timezone

import pytest

from sumpauth.storage.common import hash_token
from sumpauth.storage.errors import ConstraintViolation
from sumpauth.storage.memory import MemoryAccountDirectory, MemoryStore
from sumpauth.storage.models import (
    AccountIdentifier,
    AccountType,
    AuthScope,
    ContextType,
    IdentifierKind,
    PasswordResetToken,
    Role,
    RoleAssignment,
    Session,
    SessionDescriptor,
)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
TENANT = AuthScope(ContextType.TENANT, "tenant-1")


def _session(token: str, account_id: str = "acct-1") -> Session:
    descriptor = SessionDescriptor(
        account_type=AccountType.TENANT_ACCOUNT,
        account_id=account_id,
        context_type=ContextType.TENANT,
        context_id="tenant-1",
        user_agent="pytest",
    )
    return Session.new(descriptor, hash_token(token), 3600, now=NOW)


def _reset(token: str, account_id: str = "acct-1") -> PasswordResetToken:
    return PasswordResetToken.new(
        AccountType.TENANT_ACCOUNT, account_id, hash_token(token), 600, now=NOW
    )


def test_duplicate_session_digest_is_rejected():
    store = MemoryStore()
    store.create_session(_session("tok"))

    with pytest.raises(ConstraintViolation):
        store.create_session(_session("tok"))


def test_stored_session_never_holds_plaintext():
    store = MemoryStore()
    session = _session("tok")
    session.token = "tok"

    returned = store.create_session(session)

    assert returned.token == "tok"
    assert store.sessions[session.token_hash].token is None


def test_touch_returns_copy():
    store = MemoryStore()
    session = store.create_session(_session("tok"))

    touched = store.touch_session(session.token_hash, NOW + timedelta(minutes=5), None)
    touched.account_id = "tampered"

    assert store.sessions[session.token_hash].account_id == "acct-1"
    assert store.sessions[session.token_hash].last_active_at == NOW + timedelta(minutes=5)


def test_delete_account_sessions_respects_exception():
    store = MemoryStore()
    keep = store.create_session(_session("keep"))
    store.create_session(_session("drop"))
    store.create_session(_session("other", account_id="acct-2"))

    removed = store.delete_account_sessions(
        AccountType.TENANT_ACCOUNT, "acct-1", except_token_hash=keep.token_hash
    )

    assert removed == 1
    assert set(store.sessions) == {keep.token_hash, hash_token("other")}


def test_reset_supersession_is_per_account():
    store = MemoryStore()
    store.create_reset_token(_reset("first"), supersede=True)
    store.create_reset_token(_reset("neighbour", account_id="acct-2"), supersede=True)
    store.create_reset_token(_reset("second"), supersede=True)

    assert store.find_reset_token(hash_token("first"), NOW) is None
    assert store.find_reset_token(hash_token("second"), NOW) is not None
    assert store.find_reset_token(hash_token("neighbour"), NOW) is not None


def test_find_reset_token_honours_expiry():
    store = MemoryStore()
    store.create_reset_token(_reset("tok"), supersede=False)

    assert store.find_reset_token(hash_token("tok"), NOW + timedelta(seconds=599)) is not None
    assert store.find_reset_token(hash_token("tok"), NOW + timedelta(seconds=600)) is None


def test_snapshot_survives_restart(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    session = store.create_session(_session("tok"))
    store.create_reset_token(_reset("reset"), supersede=True)

    assert (tmp_path / "state" / "auth_store.json").exists()

    reloaded = MemoryStore(fs_root=str(tmp_path))
    restored = reloaded.get_session(session.token_hash)
    assert restored is not None
    assert restored.id == session.id
    assert restored.expires_at == session.expires_at
    assert restored.user_agent == "pytest"
    assert reloaded.find_reset_token(hash_token("reset"), NOW) is not None


def test_snapshot_reflects_deletions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    session = store.create_session(_session("tok"))
    store.delete_session(session.token_hash)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.sessions == {}


def test_corrupt_snapshot_starts_empty(tmp_path):
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "auth_store.json").write_text("{not json")

    store = MemoryStore(fs_root=str(tmp_path))
    assert store.sessions == {}
    assert store.reset_tokens == {}


class TestAccountDirectory:
    async def test_lookup_is_scoped(self):
        directory = MemoryAccountDirectory()
        other = AuthScope(ContextType.TENANT, "tenant-2")
        record = directory.add_account(TENANT, email="a@example.com")
        directory.add_context(other)

        found = await directory.find_by_identifier(
            AccountIdentifier(IdentifierKind.EMAIL, "A@Example.com "), TENANT
        )
        assert found.id == record.id
        assert await directory.find_by_identifier(
            AccountIdentifier(IdentifierKind.EMAIL, "a@example.com"), other
        ) is None
        assert await directory.get_account(record.account_type, record.id, other) is None

    async def test_identifiers_unique_within_scope_only(self):
        directory = MemoryAccountDirectory()
        directory.add_account(TENANT, username="sam")

        with pytest.raises(ConstraintViolation):
            directory.add_account(TENANT, username="sam")
        directory.add_account(AuthScope(ContextType.TENANT, "tenant-2"), username="sam")

    async def test_contexts(self):
        directory = MemoryAccountDirectory()
        env = AuthScope(ContextType.ENVIRONMENT, "env-1")

        assert await directory.context_exists(env) is False
        directory.add_context(env)
        assert await directory.context_exists(env) is True

    async def test_updates(self):
        directory = MemoryAccountDirectory()
        record = directory.add_account(
            TENANT,
            email="a@example.com",
            role=RoleAssignment(Role.ADMIN, ContextType.TENANT, "tenant-1"),
        )

        assert await directory.update_password_hash(record.account_type, record.id, "h")
        assert await directory.set_disabled(record.account_type, record.id, True)
        stored = await directory.get_account(record.account_type, record.id, TENANT)
        assert stored.password_hash == "h"
        assert stored.disabled is True
        assert stored.role.role == Role.ADMIN
        assert await directory.set_disabled(record.account_type, "missing", True) is False

    async def test_create_account_for_signup(self):
        directory = MemoryAccountDirectory()
        env = AuthScope(ContextType.ENVIRONMENT, "env-1")

        record = await directory.create_account(
            env, password_hash="h", name="Jane Smith", email="jane@example.com", username="jane"
        )

        assert record.account_type == AccountType.ENVIRONMENT_ACCOUNT
        assert record.role is None
        found = await directory.find_by_identifier(
            AccountIdentifier(IdentifierKind.USERNAME, "jane"), env
        )
        assert found.name == "Jane Smith"
        assert found.password_hash == "h"
        with pytest.raises(ConstraintViolation):
            await directory.create_account(env, password_hash="h", email="JANE@example.com")
