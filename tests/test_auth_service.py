"""Tests for the authentication orchestrator.

Covers login, refresh, logout, introspection and registration against the
memory store, including the concurrent session ceiling under threads.
"""

import asyncio
import threading
from datetime import timedelta

import pytest

from realmgate.config import Settings
from realmgate.service.auth import AuthService
from realmgate.service.errors import (
    BadRealmClientComboError,
    InvalidTokenError,
    LockedError,
    MaxConcurrentSessionsError,
    NoResourceError,
    SessionNotFoundError,
    TokenExpiredError,
    WrongCredentialsError,
)
from realmgate.service.tokens import TokenService
from realmgate.storage.memory import MemoryStore
from realmgate.storage.models import RefreshToken, Session, User, new_id, utcnow

PASSWORD = "correct horse battery staple"


class CountingHasher:
    def __init__(self):
        self.verifications = 0

    def hash(self, password):
        return f"plain${password}"

    def verify(self, password, hashed):
        self.verifications += 1
        return hashed == f"plain${password}"


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!", jwt_issuer="auth.test")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def service(store, settings, plain_hasher):
    return AuthService(store, settings, TokenService(settings), plain_hasher)


def _enroll(service, realm, client, email="ada@example.com", identifiers=None):
    user = service.store.create_user(
        User(
            id=new_id(),
            realm_id=realm.id,
            email=email,
            first_name="Ada",
            last_name="Lovelace",
            password_hash=service.hasher.hash(PASSWORD),
        )
    )
    group, _ = service.groups.create_group(
        realm.id, user.id, client.id, "default", identifiers or {"role": "user"}
    )
    return user, group


class TestLogin:
    async def test_login_issues_tokens_and_session(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, group = _enroll(service, realm, client)

        result = await service.login(realm.id, client.id, "ADA@example.com", PASSWORD)

        assert result.user.id == user.id
        assert result.refresh_token is not None
        session = store.get_session(result.session_id)
        assert session is not None
        assert session.refresh_token_id is not None
        assert result.expires_at == session.expires

        claims = service.tokens.verify_access(result.access_token)
        assert claims["sub"] == user.id
        assert claims["sid"] == result.session_id
        assert claims["exp"] == int(session.expires.timestamp())
        assert claims["resource"]["identifiers"] == {"role": "user"}
        assert claims["resource"]["group_name"] == "default"

    async def test_client_without_refresh_tokens(self, service, store, pair_factory):
        realm, client = pair_factory(store, use_refresh_token=False)
        _enroll(service, realm, client)
        result = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        assert result.refresh_token is None
        assert store.refresh_tokens == {}

    async def test_selected_group(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, _ = _enroll(service, realm, client)
        other, _ = service.groups.create_group(
            realm.id, user.id, client.id, "billing", {"account": "acc-7"}
        )
        result = await service.login(
            realm.id, client.id, "ada@example.com", PASSWORD, resource_group_key=other.group_key
        )
        claims = service.tokens.verify_access(result.access_token)
        assert claims["resource"]["identifiers"] == {"account": "acc-7"}

    async def test_wrong_password_and_unknown_user_look_alike(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        _enroll(service, realm, client)
        with pytest.raises(WrongCredentialsError) as wrong_pw:
            await service.login(realm.id, client.id, "ada@example.com", "nope")
        with pytest.raises(WrongCredentialsError) as unknown:
            await service.login(realm.id, client.id, "ghost@example.com", PASSWORD)
        with pytest.raises(WrongCredentialsError) as no_group:
            await service.login(
                realm.id, client.id, "ada@example.com", PASSWORD, resource_group_key="missing"
            )
        assert wrong_pw.value.message == unknown.value.message == no_group.value.message
        assert store.sessions == {}

    async def test_unknown_account_still_checks_a_password(self, store, settings, pair_factory):
        hasher = CountingHasher()
        service = AuthService(store, settings, TokenService(settings), hasher)
        realm, client = pair_factory(store)
        _enroll(service, realm, client)

        for email, group_key in (
            ("ada@example.com", None),
            ("ghost@example.com", None),
            ("ada@example.com", "missing"),
        ):
            hasher.verifications = 0
            with pytest.raises(WrongCredentialsError):
                await service.login(
                    realm.id, client.id, email, "nope", resource_group_key=group_key
                )
            assert hasher.verifications == 1

    async def test_bad_realm_client_combo(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        other_realm, _ = pair_factory(store)
        _enroll(service, realm, client)
        with pytest.raises(BadRealmClientComboError):
            await service.login(other_realm.id, client.id, "ada@example.com", PASSWORD)

    async def test_locked_group(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, group = _enroll(service, realm, client)
        service.groups.update_group(realm.id, user.id, client.id, group.group_key, lock=True)
        with pytest.raises(LockedError):
            await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        assert store.sessions == {}

    async def test_locked_user_needs_password_first(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, _ = _enroll(service, realm, client)
        store.set_user_lock(user.id, utcnow() - timedelta(seconds=1))
        with pytest.raises(WrongCredentialsError):
            await service.login(realm.id, client.id, "ada@example.com", "nope")
        with pytest.raises(LockedError):
            await service.login(realm.id, client.id, "ada@example.com", PASSWORD)

    async def test_locked_realm(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        _enroll(service, realm, client)
        store.realms[realm.id].locked_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(LockedError) as exc_info:
            await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        assert exc_info.value.detail["entity"] == "realm"

    async def test_all_resources_locked(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, group = _enroll(service, realm, client)
        for res in store.list_resources(user.id, client.id, group.group_key):
            service.groups.set_resource_lock(realm.id, user.id, client.id, res.id, True)
        with pytest.raises(LockedError):
            await service.login(realm.id, client.id, "ada@example.com", PASSWORD)

    async def test_session_ceiling(self, service, store, pair_factory):
        realm, client = pair_factory(store, max_sessions=2)
        user, _ = _enroll(service, realm, client)
        await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        with pytest.raises(MaxConcurrentSessionsError):
            await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        assert store.count_active_sessions(user.id, client.id, utcnow()) == 2
        # the rejected attempt must not leave a refresh token behind
        assert len(store.refresh_tokens) == 2


class TestConcurrentLogin:
    def test_ceiling_holds_under_threads(self, service, store, pair_factory):
        realm, client = pair_factory(store, max_sessions=3)
        user, _ = _enroll(service, realm, client)
        outcomes = []
        outcomes_lock = threading.Lock()
        start = threading.Barrier(10)

        def attempt():
            start.wait()
            try:
                asyncio.run(service.login(realm.id, client.id, "ada@example.com", PASSWORD))
                outcome = "ok"
            except MaxConcurrentSessionsError:
                outcome = "rejected"
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 3
        assert outcomes.count("rejected") == 7
        assert store.count_active_sessions(user.id, client.id, utcnow()) == 3


class TestRefresh:
    async def test_refresh_with_single_session_client(self, service, store, pair_factory):
        realm, client = pair_factory(store, max_sessions=1)
        user, _ = _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)

        result = await service.refresh(realm.id, client.id, login.refresh_token)

        assert result.session_id != login.session_id
        assert store.get_session(login.session_id) is None
        assert store.count_active_sessions(user.id, client.id, utcnow()) == 1
        assert 0 < result.expires_in <= client.session_lifetime
        claims = service.tokens.verify_access(result.access_token)
        assert claims["sid"] == result.session_id

    async def test_reuse_then_rotate(self, service, store, pair_factory):
        realm, client = pair_factory(store, realm_reuse_limit=2)
        _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        original_id = service.tokens.verify_refresh(login.refresh_token)["sub"]

        first = await service.refresh(realm.id, client.id, login.refresh_token)
        assert service.tokens.verify_refresh(first.refresh_token)["sub"] == original_id
        assert store.get_refresh_token(original_id).re_used_count == 1

        second = await service.refresh(realm.id, client.id, first.refresh_token)
        assert service.tokens.verify_refresh(second.refresh_token)["sub"] == original_id
        assert store.get_refresh_token(original_id).re_used_count == 2

        third = await service.refresh(realm.id, client.id, second.refresh_token)
        rotated_id = service.tokens.verify_refresh(third.refresh_token)["sub"]
        assert rotated_id != original_id
        assert store.get_refresh_token(original_id) is None
        assert store.get_refresh_token(rotated_id).re_used_count == 0

        with pytest.raises(InvalidTokenError):
            await service.refresh(realm.id, client.id, login.refresh_token)

    async def test_refresh_for_other_client_rejected(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        with pytest.raises(InvalidTokenError):
            await service.refresh(realm.id, "another-client", login.refresh_token)

    async def test_expired_refresh_token(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, _ = _enroll(service, realm, client)
        row = store.insert_refresh_token(RefreshToken.new(user.id, client.id, realm.id))
        stale = service.tokens.issue_refresh(row, 60, now=utcnow() - timedelta(hours=1))
        with pytest.raises(TokenExpiredError):
            await service.refresh(realm.id, client.id, stale)

    async def test_locked_refresh_token(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        token_id = service.tokens.verify_refresh(login.refresh_token)["sub"]
        store.refresh_tokens[token_id].locked_at = utcnow() - timedelta(seconds=1)
        with pytest.raises(LockedError):
            await service.refresh(realm.id, client.id, login.refresh_token)
        assert store.get_session(login.session_id) is not None


class TestLogout:
    async def test_logout_removes_session_and_refresh_token(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)

        session = await service.logout(login.session_id)

        assert session.id == login.session_id
        assert store.get_session(login.session_id) is None
        assert store.refresh_tokens == {}
        with pytest.raises(SessionNotFoundError):
            await service.logout(login.session_id)

    async def test_logout_all(self, service, store, pair_factory):
        realm, client = pair_factory(store, max_sessions=3)
        user, _ = _enroll(service, realm, client)
        for _ in range(3):
            await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        assert await service.logout_all(user.id, client.id) == 3
        assert store.count_active_sessions(user.id, client.id, utcnow()) == 0
        assert store.refresh_tokens == {}
        assert await service.logout_all(user.id, client.id) == 0

    async def test_logout_by_access_token(self, service, store, pair_factory):
        realm, client = pair_factory(store, max_sessions=2)
        user, _ = _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)

        user_id, session_id, removed = await service.logout_by_token(
            realm.id, access_token=login.access_token
        )

        assert (user_id, session_id, removed) == (user.id, login.session_id, 1)
        assert store.get_session(login.session_id) is None
        assert store.refresh_tokens == {}

    async def test_logout_by_refresh_token(self, service, store, pair_factory):
        realm, client = pair_factory(store, max_sessions=2)
        user, _ = _enroll(service, realm, client)
        first = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        second = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)

        user_id, session_id, removed = await service.logout_by_token(
            realm.id, refresh_token=first.refresh_token
        )

        assert (user_id, session_id, removed) == (user.id, None, 1)
        assert store.get_session(first.session_id) is None
        assert store.get_session(second.session_id) is not None
        with pytest.raises(InvalidTokenError):
            await service.refresh(realm.id, client.id, first.refresh_token)

    async def test_logout_by_token_needs_a_token(self, service, store, pair_factory):
        realm, _ = pair_factory(store)
        with pytest.raises(NoResourceError):
            await service.logout_by_token(realm.id)

    async def test_logout_by_token_from_other_realm(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        with pytest.raises(NoResourceError):
            await service.logout_by_token("other-realm", access_token=login.access_token)
        assert store.get_session(login.session_id) is not None


class TestIntrospect:
    async def test_live_token(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, _ = _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)

        snapshot = await service.introspect(login.access_token, realm_id=realm.id, client_id=client.id)

        assert snapshot["active"] is True
        assert snapshot["sub"] == user.id
        assert snapshot["sid"] == login.session_id
        assert snapshot["client_name"] == "web"
        assert snapshot["identifiers"] == {"role": "user"}
        assert snapshot["iss"] == "auth.test"

    async def test_logged_out_session(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        await service.logout(login.session_id)
        with pytest.raises(SessionNotFoundError):
            await service.introspect(login.access_token)

    async def test_client_mismatch(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        with pytest.raises(NoResourceError):
            await service.introspect(login.access_token, client_id="other-client")

    async def test_locked_user(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, _ = _enroll(service, realm, client)
        login = await service.login(realm.id, client.id, "ada@example.com", PASSWORD)
        store.set_user_lock(user.id, utcnow() - timedelta(seconds=1))
        with pytest.raises(LockedError):
            await service.introspect(login.access_token)


class TestRegistrationAndPurge:
    async def test_register_user_creates_default_group(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, group = await service.register_user(
            realm.id,
            client.id,
            email="grace@example.com",
            password=PASSWORD,
            first_name="Grace",
            identifiers={"role": "admin"},
        )
        assert group.is_default is True
        assert store.get_default_group(user.id, client.id).group_key == group.group_key
        result = await service.login(realm.id, client.id, "grace@example.com", PASSWORD)
        assert result.user.id == user.id

    async def test_register_rolls_back_on_bad_client(self, service, store, pair_factory):
        realm, _ = pair_factory(store)
        with pytest.raises(BadRealmClientComboError):
            await service.register_user(
                realm.id, "missing", email="grace@example.com", password=PASSWORD, first_name="Grace"
            )
        assert store.users == {}

    async def test_purge_expired(self, service, store, pair_factory):
        realm, client = pair_factory(store)
        user, _ = _enroll(service, realm, client)
        store.insert_session(Session.new(user.id, client.id, 1, now=utcnow() - timedelta(minutes=5)))
        assert await service.purge_expired() == 1
        assert store.sessions == {}
