from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from jose import jwt

from conftest import PASSWORD, bearer, make_token
from ecoflow.main import create_app
from ecoflow.models import User
from ecoflow.security import hash_password, verify_password


def _login(client, email, password=PASSWORD, **extra):
    return client.post("/api/login", json={"email": email, "password": password, **extra})


def _expires_in(settings, token):
    claims = jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    return datetime.fromtimestamp(claims["exp"], timezone.utc) - datetime.now(timezone.utc)


def test_health(settings):
    with TestClient(create_app(settings)) as client:
        resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_login_issues_token(settings, users):
    with TestClient(create_app(settings)) as client:
        resp = _login(client, "gardener@ecoflow.test")
        status = client.get("/api/commands/status", headers=bearer(resp.json()["token"]))

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Login successful."
    assert body["username"] == "gardener"
    assert body["userRole"] == "user"

    claims = jwt.decode(body["token"], settings.jwt_secret, algorithms=["HS256"])
    assert claims["user_id"] == users["gardener"]
    assert claims["role"] == "user"
    assert timedelta(hours=23) < _expires_in(settings, body["token"]) <= timedelta(days=1)
    assert status.status_code == 200


def test_remember_me_extends_expiry(settings, users):
    with TestClient(create_app(settings)) as client:
        resp = _login(client, "admin@ecoflow.test", rememberMe=True)

    assert resp.status_code == 200
    assert _expires_in(settings, resp.json()["token"]) > timedelta(days=29)


def test_login_failures(settings, users):
    with TestClient(create_app(settings)) as client:
        wrong = _login(client, "admin@ecoflow.test", "not-the-password")
        unknown = _login(client, "nobody@ecoflow.test")
        inactive = _login(client, "retired@ecoflow.test")
        missing = client.post("/api/login", json={"email": "admin@ecoflow.test"})

    assert wrong.status_code == 401
    assert wrong.json()["message"] == "Invalid credentials."
    assert unknown.status_code == 401
    assert inactive.status_code == 401
    assert inactive.json()["message"] == "Invalid credentials or user is inactive."
    assert missing.status_code == 400
    assert missing.json()["message"] == "Email and password are required."


def test_expired_token_is_forbidden(settings, users):
    token = make_token(settings, users["admin"], role="admin", expires=timedelta(seconds=-5))
    with TestClient(create_app(settings)) as client:
        resp = client.get("/api/users", headers=bearer(token))

    assert resp.status_code == 403


def test_admin_registers_user(settings, store, admin_headers):
    body = {"name": "newhand", "email": "newhand@greenhouse.org", "password": "longenough", "role": "user"}
    with TestClient(create_app(settings)) as client:
        created = client.post("/api/register", json=body, headers=admin_headers)
        duplicate = client.post("/api/register", json=body, headers=admin_headers)
        short = client.post(
            "/api/register", json={**body, "email": "other@greenhouse.org", "password": "abc"}, headers=admin_headers
        )
        login = _login(client, "newhand@greenhouse.org", "longenough")

    assert created.status_code == 201
    assert created.json()["message"] == "User registered successfully."
    assert duplicate.status_code == 409
    assert short.status_code == 400
    assert login.status_code == 200

    async def _load(session):
        return await session.get(User, created.json()["userId"])

    user = store(_load)
    assert user.user_role == "user"
    assert user.password_hash != "longenough"
    assert verify_password("longenough", user.password_hash)


def test_register_requires_admin(settings, user_headers):
    body = {"name": "sneaky", "email": "sneaky@greenhouse.org", "password": "longenough"}
    with TestClient(create_app(settings)) as client:
        as_user = client.post("/api/register", json=body, headers=user_headers)
        anonymous = client.post("/api/register", json=body)

    assert as_user.status_code == 403
    assert as_user.json()["message"] == "Access denied. Administrator privileges required."
    assert anonymous.status_code == 401


def test_list_and_update_users(settings, users, admin_headers):
    with TestClient(create_app(settings)) as client:
        listed = client.get("/api/users", headers=admin_headers)
        updated = client.put(
            f"/api/users/{users['gardener']}",
            json={"role": "admin", "email": "head@greenhouse.org"},
            headers=admin_headers,
        )
        clash = client.put(
            f"/api/users/{users['retired']}", json={"name": "admin"}, headers=admin_headers
        )
        missing = client.put("/api/users/9999", json={"role": "user"}, headers=admin_headers)

    assert listed.status_code == 200
    assert [u["username"] for u in listed.json()] == ["admin", "gardener", "retired"]
    assert "password_hash" not in listed.json()[0]

    assert updated.status_code == 200
    assert updated.json()["user_role"] == "admin"
    assert updated.json()["email"] == "head@greenhouse.org"
    assert clash.status_code == 409
    assert missing.status_code == 404


def test_password_update_is_rehashed(settings, users, admin_headers):
    with TestClient(create_app(settings)) as client:
        client.put(f"/api/users/{users['gardener']}", json={"password": "fresh-secret"}, headers=admin_headers)
        old = _login(client, "gardener@ecoflow.test")
        new = _login(client, "gardener@ecoflow.test", "fresh-secret")

    assert old.status_code == 401
    assert new.status_code == 200


def test_delete_deactivates_user(settings, store, users, admin_headers):
    with TestClient(create_app(settings)) as client:
        resp = client.delete(f"/api/users/{users['gardener']}", headers=admin_headers)
        self_delete = client.delete(f"/api/users/{users['admin']}", headers=admin_headers)
        login = _login(client, "gardener@ecoflow.test")

    assert resp.status_code == 200
    assert self_delete.status_code == 400
    assert login.status_code == 401

    async def _load(session):
        return await session.get(User, users["gardener"])

    user = store(_load)
    assert user is not None
    assert user.is_active is False


def test_malformed_hash_never_verifies():
    assert verify_password("anything", "not-a-bcrypt-hash") is False
    assert verify_password(PASSWORD, hash_password(PASSWORD)) is True
