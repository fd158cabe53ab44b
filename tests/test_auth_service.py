"""Unit tests for the auth service.

Tests for:
- Login within a tenant or environment scope
- Uniform failure for unknown accounts and wrong passwords
- Disabled accounts
- Scope binding of sessions
- Password change
"""

import pytest

from sumpauth.service.auth import AuthService
from sumpauth.service.errors import (
    AccountDisabled,
    InternalError,
    InvalidCredentials,
    PasswordPolicyError,
    SessionNotFound,
)
from sumpauth.service.sessions import SessionService
from sumpauth.storage.memory import MemoryAccountDirectory, MemoryStore
from sumpauth.storage.models import (
    AccountIdentifier,
    AccountRef,
    AuthScope,
    ContextType,
    IdentifierKind,
)

TENANT = AuthScope(ContextType.TENANT, "tenant-1")
OTHER_TENANT = AuthScope(ContextType.TENANT, "tenant-2")
PASSWORD = "CorrectHorse1"


def _email(value: str) -> AccountIdentifier:
    return AccountIdentifier(IdentifierKind.EMAIL, value)


@pytest.fixture
def accounts():
    return MemoryAccountDirectory()


@pytest.fixture
def sessions(clock):
    return SessionService(MemoryStore(), ttl_seconds=86400, now=clock)


@pytest.fixture
def auth(sessions, hasher, policy, accounts):
    return AuthService(sessions, hasher, policy, accounts)


@pytest.fixture
def alice(accounts, hasher):
    return accounts.add_account(
        TENANT, email="alice@example.com", password_hash=hasher.hash(PASSWORD)
    )


class TestLogin:
    async def test_login_issues_scoped_session(self, auth, alice):
        session = await auth.login(
            _email("alice@example.com"), PASSWORD, TENANT, ip_address="198.51.100.4"
        )

        assert session.token
        assert session.account_id == alice.id
        assert session.context_type == ContextType.TENANT
        assert session.context_id == "tenant-1"
        assert session.ip_address == "198.51.100.4"

    async def test_email_lookup_ignores_case(self, auth, alice):
        session = await auth.login(_email("Alice@Example.com"), PASSWORD, TENANT)
        assert session.account_id == alice.id

    async def test_login_by_username_and_phone(self, auth, accounts, hasher):
        bob = accounts.add_account(
            TENANT,
            username="bob",
            phone="+15550100",
            password_hash=hasher.hash(PASSWORD),
        )

        by_name = await auth.login(
            AccountIdentifier(IdentifierKind.USERNAME, "bob"), PASSWORD, TENANT
        )
        by_phone = await auth.login(
            AccountIdentifier(IdentifierKind.PHONE, "+15550100"), PASSWORD, TENANT
        )
        assert by_name.account_id == by_phone.account_id == bob.id

    async def test_failures_are_indistinguishable(self, auth, accounts, alice):
        accounts.add_account(TENANT, email="nohash@example.com")
        attempts = [
            (_email("alice@example.com"), "WrongHorse1", TENANT),
            (_email("ghost@example.com"), PASSWORD, TENANT),
            (_email("nohash@example.com"), PASSWORD, TENANT),
            (_email("alice@example.com"), PASSWORD, OTHER_TENANT),
        ]

        messages = set()
        for identifier, password, scope in attempts:
            with pytest.raises(InvalidCredentials) as exc_info:
                await auth.login(identifier, password, scope)
            err = exc_info.value
            messages.add((err.status_code, err.error_code, err.message))

        assert messages == {(401, "unauthorized", "Invalid credentials")}

    @pytest.mark.parametrize("password", ["", "WrongHorse1", "x" * 5000])
    async def test_known_and_unknown_accounts_cost_the_same(
        self, auth, alice, argon2_calls, password
    ):
        counts = []
        for email in ("alice@example.com", "ghost@example.com"):
            argon2_calls.verifications = 0
            with pytest.raises(InvalidCredentials):
                await auth.login(_email(email), password, TENANT)
            counts.append(argon2_calls.verifications)

        assert counts == [1, 1]

    async def test_disabled_account_with_correct_password(self, auth, accounts, hasher, sessions):
        carol = accounts.add_account(
            TENANT,
            email="carol@example.com",
            password_hash=hasher.hash(PASSWORD),
            disabled=True,
        )
        before = await sessions.list(carol.account_type, carol.id)

        with pytest.raises(AccountDisabled):
            await auth.login(_email("carol@example.com"), PASSWORD, TENANT)

        assert await sessions.list(carol.account_type, carol.id) == before == []

    async def test_disabled_account_with_wrong_password_looks_like_any_failure(
        self, auth, accounts, hasher
    ):
        accounts.add_account(
            TENANT,
            email="carol@example.com",
            password_hash=hasher.hash(PASSWORD),
            disabled=True,
        )

        with pytest.raises(InvalidCredentials):
            await auth.login(_email("carol@example.com"), "WrongHorse1", TENANT)


class TestSessions:
    async def test_validate_session_in_scope(self, auth, alice):
        session = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)

        assert (await auth.validate_session(session.token, TENANT)).id == session.id
        assert (await auth.validate_session(session.token)).id == session.id

    async def test_session_from_another_scope_is_rejected(self, auth, alice):
        session = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)

        assert await auth.validate_session(session.token, OTHER_TENANT) is None
        with pytest.raises(SessionNotFound):
            await auth.require_session(session.token, OTHER_TENANT)
        assert await auth.get_session(session.token, OTHER_TENANT) is None

    async def test_wrong_scope_does_not_refresh_activity(self, auth, alice, clock):
        session = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)
        clock.advance(hours=1)

        assert await auth.validate_session(session.token, OTHER_TENANT) is None
        untouched = await auth.get_session(session.token, TENANT)
        assert untouched.last_active_at == session.last_active_at

        refreshed = await auth.validate_session(session.token, TENANT)
        assert refreshed.last_active_at == clock.current

    async def test_require_session_without_token(self, auth):
        with pytest.raises(SessionNotFound):
            await auth.require_session(None, TENANT)

    async def test_signout_ends_session(self, auth, alice):
        session = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)

        assert await auth.signout(session.token) is True
        assert await auth.validate_session(session.token, TENANT) is None

    async def test_signout_all_includes_current(self, auth, alice):
        first = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)
        second = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)

        revoked = await auth.signout_all(first.token, alice.account_type, alice.id)

        assert revoked == 2
        assert await auth.validate_session(first.token) is None
        assert await auth.validate_session(second.token) is None
        assert await auth.list_sessions(alice.account_type, alice.id) == []


class TestChangePassword:
    async def test_change_password_keeps_current_session(self, auth, accounts, alice, hasher):
        current = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)
        other = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)

        revoked = await auth.change_password(
            AccountRef(alice.account_type, alice.id),
            TENANT,
            PASSWORD,
            "EvenBetterHorse2",
            _updater(accounts, alice.account_type),
            keep_token=current.token,
        )

        assert revoked == 1
        assert await auth.validate_session(current.token) is not None
        assert await auth.validate_session(other.token) is None
        stored = await accounts.get_account(alice.account_type, alice.id, TENANT)
        assert hasher.verify("EvenBetterHorse2", stored.password_hash)

    async def test_wrong_current_password(self, auth, accounts, alice):
        with pytest.raises(InvalidCredentials):
            await auth.change_password(
                AccountRef(alice.account_type, alice.id),
                TENANT,
                "WrongHorse1",
                "EvenBetterHorse2",
                _updater(accounts, alice.account_type),
            )

    async def test_weak_new_password(self, auth, accounts, alice):
        with pytest.raises(PasswordPolicyError):
            await auth.change_password(
                AccountRef(alice.account_type, alice.id),
                TENANT,
                PASSWORD,
                "short",
                _updater(accounts, alice.account_type),
            )

    async def test_failed_update_revokes_nothing(self, auth, alice):
        session = await auth.login(_email("alice@example.com"), PASSWORD, TENANT)

        async def refuse(account_id, password_hash):
            return False

        with pytest.raises(InternalError):
            await auth.change_password(
                AccountRef(alice.account_type, alice.id),
                TENANT,
                PASSWORD,
                "EvenBetterHorse2",
                refuse,
            )
        assert await auth.validate_session(session.token) is not None


def _updater(accounts, account_type):
    async def update(account_id, password_hash):
        return await accounts.update_password_hash(account_type, account_id, password_hash)

    return update
