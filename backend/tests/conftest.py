import asyncio
from datetime import timedelta

import pytest

from ecoflow import alerting
from ecoflow.config import Settings
from ecoflow.db import Database
from ecoflow.models import User
from ecoflow.security import create_access_token, hash_password

DEVICE_HEADERS = {"x-api-key": "device-key"}
SERVICE_HEADERS = {"x-service-api-key": "service-key"}
PASSWORD = "secret-pass"


class DummyServer:
    def __init__(self):
        self.sent_messages = []

    def send_message(self, message):
        self.sent_messages.append(message)

    def quit(self):
        pass


def smtp_settings(**overrides):
    values = dict(
        host="smtp.example.com",
        port=25,
        use_ssl=False,
        use_starttls=False,
        user="",
        password="",
        from_addr="noreply@example.com",
        to_addrs=["admin@example.com"],
        timeout=10,
        debug=False,
    )
    values.update(overrides)
    return alerting.SMTPSettings(**values)


def run_with_session(url, fn):
    """Run ``fn(session)`` against the test database on a private event loop."""

    async def _run():
        database = Database(url)
        await database.init(create_tables=True)
        try:
            async with database.session() as session:
                return await fn(session)
        finally:
            await database.shutdown()

    return asyncio.run(_run())


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'ecoflow.db'}"


@pytest.fixture
def settings(db_url):
    return Settings(
        jwt_secret="test-secret",
        device_api_key="device-key",
        service_api_key="service-key",
        database_url=db_url,
        db_create_tables=True,
        smtp=smtp_settings(),
        openai_api_key=None,
        cors_origins=["http://localhost:5173"],
    )


@pytest.fixture
def store(db_url):
    return lambda fn: run_with_session(db_url, fn)


@pytest.fixture(autouse=True)
def mail_server(monkeypatch):
    server = DummyServer()
    monkeypatch.setattr(alerting, "_open_smtp_connection", lambda settings: server)
    return server


@pytest.fixture
def users(store):
    async def _seed(session):
        admin = User(
            username="admin",
            email="admin@ecoflow.test",
            password_hash=hash_password(PASSWORD),
            user_role="admin",
        )
        gardener = User(
            username="gardener",
            email="gardener@ecoflow.test",
            password_hash=hash_password(PASSWORD),
            user_role="user",
        )
        retired = User(
            username="retired",
            email="retired@ecoflow.test",
            password_hash=hash_password(PASSWORD),
            user_role="user",
            is_active=False,
        )
        session.add_all([admin, gardener, retired])
        await session.commit()
        return {"admin": admin.user_id, "gardener": gardener.user_id, "retired": retired.user_id}

    return store(_seed)


def make_token(settings, user_id, role="user", username=None, expires=timedelta(hours=1)):
    return create_access_token(
        {"user_id": user_id, "role": role, "username": username},
        settings.jwt_secret,
        expires_delta=expires,
    )


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(settings, users):
    return bearer(make_token(settings, users["admin"], role="admin", username="admin"))


@pytest.fixture
def user_headers(settings, users):
    return bearer(make_token(settings, users["gardener"], role="user", username="gardener"))
