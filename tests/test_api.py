"""HTTP layer tests through FastAPI's TestClient.

Checks the envelope shape, error code mapping and the realm administrator
guard on introspection and resource group administration.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from realmgate.app import app
from realmgate.service.runtime import reset_runtime_for_tests
from realmgate.storage.models import Client, Realm, Session, User, new_id, utcnow

PASSWORD = "correct horse battery staple"
BROWSER_UA = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/121.0.0.0 Safari/537.36"
)


@pytest.fixture
def client():
    return TestClient(app)


def _seed(runtime, *, max_sessions=5, name="acme"):
    realm = runtime.store.create_realm(Realm(id=new_id(), name=name, slug=name))
    app_client = runtime.store.create_client(
        Client(id=new_id(), realm_id=realm.id, name="web", max_concurrent_sessions=max_sessions)
    )
    return realm, app_client


def _enroll(runtime, realm, app_client, email, identifiers):
    user = runtime.store.create_user(
        User(
            id=new_id(),
            realm_id=realm.id,
            email=email,
            first_name="Test",
            password_hash=runtime.hasher.hash(PASSWORD),
        )
    )
    runtime.groups.create_group(realm.id, user.id, app_client.id, "default", identifiers)
    return user


def _base(realm, app_client):
    return f"/v1/realms/{realm.id}/clients/{app_client.id}"


def _login(client, realm, app_client, email):
    resp = client.post(
        f"{_base(realm, app_client)}/auth/login",
        json={"email": email, "password": PASSWORD},
        headers={"User-Agent": BROWSER_UA, "CF-IPCountry": "NL"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def world(fast_runtime):
    realm, app_client = _seed(fast_runtime)
    user = _enroll(fast_runtime, realm, app_client, "user@example.com", {"role": "user"})
    admin = _enroll(fast_runtime, realm, app_client, "admin@example.com", {"role": "admin"})
    return fast_runtime, realm, app_client, user, admin


class TestLogin:
    def test_login_envelope(self, client, world):
        runtime, realm, app_client, user, _ = world
        resp = client.post(
            f"{_base(realm, app_client)}/auth/login",
            json={"email": "USER@example.com", "password": PASSWORD},
            headers={"User-Agent": BROWSER_UA, "X-Request-ID": "req-123"},
        )
        assert resp.status_code == 200
        assert resp.headers["X-Request-ID"] == "req-123"
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["token_type"] == "Bearer"
        assert data["user"]["id"] == user.id
        assert data["refresh_token"]
        session = runtime.store.get_session(data["session_id"])
        assert session.browser == "Chrome"
        assert session.operating_system == "Linux"

    def test_wrong_password(self, client, world):
        _, realm, app_client, _, _ = world
        resp = client.post(
            f"{_base(realm, app_client)}/auth/login",
            json={"email": "user@example.com", "password": "nope"},
        )
        assert resp.status_code == 401
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["details"]["reason"] == "wrong_credentials"

    def test_invalid_email_is_validation_error(self, client, world):
        _, realm, app_client, _, _ = world
        resp = client.post(
            f"{_base(realm, app_client)}/auth/login",
            json={"email": "not-an-email", "password": PASSWORD},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_session_ceiling(self, client, fast_runtime):
        realm, app_client = _seed(fast_runtime, max_sessions=1)
        _enroll(fast_runtime, realm, app_client, "solo@example.com", {"role": "user"})
        _login(client, realm, app_client, "solo@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/login",
            json={"email": "solo@example.com", "password": PASSWORD},
        )
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "max_concurrent_sessions"

    def test_bad_combo(self, client, world, fast_runtime):
        _, realm, _, _, _ = world
        _, foreign_client = _seed(fast_runtime, name="other")
        resp = client.post(
            f"/v1/realms/{realm.id}/clients/{foreign_client.id}/auth/login",
            json={"email": "user@example.com", "password": PASSWORD},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"]["reason"] == "bad_realm_client_combo"


class TestRefreshAndLogout:
    def test_refresh(self, client, world):
        _, realm, app_client, _, _ = world
        login = _login(client, realm, app_client, "user@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/refresh",
            json={"refresh_token": login["refresh_token"]},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["session_id"] != login["session_id"]
        assert data["expires_in"] > 0

    def test_refresh_garbage(self, client, world):
        _, realm, app_client, _, _ = world
        resp = client.post(
            f"{_base(realm, app_client)}/auth/refresh", json={"refresh_token": "x.y.z"}
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["details"]["reason"] == "invalid_token"

    def test_logout_current_session(self, client, world):
        runtime, realm, app_client, user, _ = world
        login = _login(client, realm, app_client, "user@example.com")
        resp = client.post("/v1/auth/logout", headers=_bearer(login["access_token"]))
        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "ok": True,
            "user_id": user.id,
            "session_id": login["session_id"],
            "sessions_removed": 1,
        }
        again = client.post("/v1/auth/logout", headers=_bearer(login["access_token"]))
        assert again.status_code == 404

    def test_logout_requires_bearer(self, client, world):
        resp = client.post("/v1/auth/logout")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_expired_access_token(self, client, world):
        runtime, realm, app_client, user, _ = world
        issued = utcnow() - timedelta(hours=1)
        session = Session.new(user.id, app_client.id, 60, now=issued)
        token = runtime.tokens.issue_access(
            user, app_client, None, [], session, now=issued
        )
        resp = client.post("/v1/auth/logout", headers=_bearer(token))
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_expired"

    def test_logout_all_self(self, client, world):
        _, realm, app_client, user, _ = world
        first = _login(client, realm, app_client, "user@example.com")
        _login(client, realm, app_client, "user@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/logout-all", headers=_bearer(first["access_token"])
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_removed"] == 2

    def test_logout_all_other_user_needs_admin(self, client, world):
        _, realm, app_client, user, admin = world
        user_login = _login(client, realm, app_client, "user@example.com")
        admin_login = _login(client, realm, app_client, "admin@example.com")

        denied = client.post(
            f"{_base(realm, app_client)}/auth/logout-all",
            json={"user_id": admin.id},
            headers=_bearer(user_login["access_token"]),
        )
        assert denied.status_code == 403
        assert denied.json()["error"]["details"]["reason"] == "action_forbidden"

        allowed = client.post(
            f"{_base(realm, app_client)}/auth/logout-all",
            json={"user_id": user.id},
            headers=_bearer(admin_login["access_token"]),
        )
        assert allowed.status_code == 200
        assert allowed.json()["data"]["sessions_removed"] == 1


class TestIntrospect:
    def test_admin_can_introspect(self, client, world):
        _, realm, app_client, user, _ = world
        user_login = _login(client, realm, app_client, "user@example.com")
        admin_login = _login(client, realm, app_client, "admin@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/introspect",
            json={"access_token": user_login["access_token"]},
            headers=_bearer(admin_login["access_token"]),
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["active"] is True
        assert data["sub"] == user.id
        assert data["identifiers"] == {"role": "user"}

    def test_non_admin_forbidden(self, client, world):
        _, realm, app_client, _, _ = world
        user_login = _login(client, realm, app_client, "user@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/introspect",
            json={"access_token": user_login["access_token"]},
            headers=_bearer(user_login["access_token"]),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_master_realm_admin_crosses_realms(self, client, monkeypatch):
        master_id = new_id()
        monkeypatch.setenv("MASTER_REALM_ID", master_id)
        runtime = reset_runtime_for_tests()
        assert runtime.settings.master_realm_id == master_id

        master = runtime.store.create_realm(Realm(id=master_id, name="master", slug="master"))
        console = runtime.store.create_client(
            Client(id=new_id(), realm_id=master.id, name="console", max_concurrent_sessions=5)
        )
        _enroll(runtime, master, console, "root@example.com", {"role": "admin"})
        tenant, tenant_client = _seed(runtime, name="tenant")
        _enroll(runtime, tenant, tenant_client, "member@example.com", {"role": "user"})

        root_login = _login(client, master, console, "root@example.com")
        member_login = _login(client, tenant, tenant_client, "member@example.com")
        resp = client.post(
            f"{_base(tenant, tenant_client)}/auth/introspect",
            json={"access_token": member_login["access_token"]},
            headers=_bearer(root_login["access_token"]),
        )
        assert resp.status_code == 200


class TestResourceGroupAdmin:
    def test_crud_flow(self, client, world):
        runtime, realm, app_client, user, _ = world
        admin_login = _login(client, realm, app_client, "admin@example.com")
        headers = _bearer(admin_login["access_token"])
        groups_url = f"{_base(realm, app_client)}/users/{user.id}/resource-groups"

        created = client.post(
            groups_url,
            json={"name": "billing", "identifiers": {"account": "acc-1"}},
            headers=headers,
        )
        assert created.status_code == 201
        billing = created.json()["data"]
        assert billing["is_default"] is False
        assert billing["resources"][0]["name"] == "account"

        listing = client.get(groups_url, headers=headers)
        assert [g["name"] for g in listing.json()["data"]["items"]] == ["default", "billing"]

        promoted = client.post(f"{groups_url}/{billing['group_key']}/default", headers=headers)
        assert promoted.status_code == 200
        assert promoted.json()["data"]["is_default"] is True

        conflict = client.patch(
            f"{groups_url}/{billing['group_key']}", json={"is_default": False}, headers=headers
        )
        assert conflict.status_code == 409
        assert conflict.json()["error"]["details"]["reason"] == "cannot_remove_only_default"

        resource_id = billing["resources"][0]["id"]
        locked = client.put(
            f"{groups_url}/{billing['group_key']}/resources/{resource_id}/lock",
            json={"locked": True},
            headers=headers,
        )
        assert locked.status_code == 200
        assert locked.json()["data"]["locked_at"] is not None

        deleted = client.delete(f"{groups_url}/{billing['group_key']}", headers=headers)
        assert deleted.status_code == 200
        remaining = runtime.store.list_groups(user.id, app_client.id)
        assert [g.name for g in remaining] == ["default"]
        assert remaining[0].is_default is True

    def test_missing_group(self, client, world):
        _, realm, app_client, user, _ = world
        admin_login = _login(client, realm, app_client, "admin@example.com")
        resp = client.get(
            f"{_base(realm, app_client)}/users/{user.id}/resource-groups/missing",
            headers=_bearer(admin_login["access_token"]),
        )
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_non_admin_denied(self, client, world):
        _, realm, app_client, user, _ = world
        user_login = _login(client, realm, app_client, "user@example.com")
        resp = client.get(
            f"{_base(realm, app_client)}/users/{user.id}/resource-groups",
            headers=_bearer(user_login["access_token"]),
        )
        assert resp.status_code == 403

    def test_lock_through_wrong_group_leaves_resource_untouched(self, client, world):
        runtime, realm, app_client, user, _ = world
        admin_login = _login(client, realm, app_client, "admin@example.com")
        groups_url = f"{_base(realm, app_client)}/users/{user.id}/resource-groups"
        [(_, resources)] = runtime.groups.list_groups(realm.id, user.id, app_client.id)

        resp = client.put(
            f"{groups_url}/not-the-group/resources/{resources[0].id}/lock",
            json={"locked": True},
            headers=_bearer(admin_login["access_token"]),
        )

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"
        assert runtime.store.get_resource(resources[0].id).locked_at is None
        _login(client, realm, app_client, "user@example.com")


class TestUserRegistration:
    def test_admin_registers_user(self, client, world):
        runtime, realm, app_client, _, _ = world
        admin_login = _login(client, realm, app_client, "admin@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/users",
            json={
                "email": "New.Member@example.com",
                "password": PASSWORD,
                "first_name": "New",
                "identifiers": {"role": "user"},
            },
            headers=_bearer(admin_login["access_token"]),
        )
        assert resp.status_code == 201
        data = resp.json()["data"]
        assert data["user"]["email"] == "new.member@example.com"
        assert data["resource_group"]["is_default"] is True
        assert data["resource_group"]["resources"][0]["name"] == "role"
        _login(client, realm, app_client, "new.member@example.com")

    def test_duplicate_email_conflicts(self, client, world):
        _, realm, app_client, _, _ = world
        admin_login = _login(client, realm, app_client, "admin@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/users",
            json={"email": "user@example.com", "password": PASSWORD, "first_name": "Dup"},
            headers=_bearer(admin_login["access_token"]),
        )
        assert resp.status_code == 409

    def test_non_admin_cannot_register(self, client, world):
        runtime, realm, app_client, _, _ = world
        user_login = _login(client, realm, app_client, "user@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/users",
            json={"email": "sneaky@example.com", "password": PASSWORD, "first_name": "S"},
            headers=_bearer(user_login["access_token"]),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["details"]["reason"] == "action_forbidden"
        assert len(runtime.store.users) == 2


class TestAdminLogoutSession:
    def test_by_access_token(self, client, world):
        runtime, realm, app_client, user, _ = world
        user_login = _login(client, realm, app_client, "user@example.com")
        admin_login = _login(client, realm, app_client, "admin@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/logout-session",
            json={"access_token": user_login["access_token"]},
            headers=_bearer(admin_login["access_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"] == {
            "ok": True,
            "user_id": user.id,
            "session_id": user_login["session_id"],
            "sessions_removed": 1,
        }
        assert runtime.store.get_session(user_login["session_id"]) is None

    def test_by_refresh_token(self, client, world):
        runtime, realm, app_client, user, _ = world
        user_login = _login(client, realm, app_client, "user@example.com")
        admin_login = _login(client, realm, app_client, "admin@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/logout-session",
            json={"refresh_token": user_login["refresh_token"]},
            headers=_bearer(admin_login["access_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["sessions_removed"] == 1
        assert runtime.store.get_session(user_login["session_id"]) is None

    def test_without_token(self, client, world):
        _, realm, app_client, _, _ = world
        admin_login = _login(client, realm, app_client, "admin@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/logout-session",
            json={},
            headers=_bearer(admin_login["access_token"]),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["details"]["reason"] == "no_resource"

    def test_non_admin_forbidden(self, client, world):
        runtime, realm, app_client, _, _ = world
        user_login = _login(client, realm, app_client, "user@example.com")
        admin_login = _login(client, realm, app_client, "admin@example.com")
        resp = client.post(
            f"{_base(realm, app_client)}/auth/logout-session",
            json={"access_token": admin_login["access_token"]},
            headers=_bearer(user_login["access_token"]),
        )
        assert resp.status_code == 403
        assert runtime.store.get_session(admin_login["session_id"]) is not None


class TestHealth:
    def test_healthz(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
