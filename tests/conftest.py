import asyncio
import base64
import itertools
import json
import os
import tempfile
from types import SimpleNamespace

import httpx
import pytest

_TMP = tempfile.mkdtemp(prefix="driversales-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP}/import.db"
os.environ["SUPABASE_URL"] = "https://auth.example.test"
os.environ["SUPABASE_ANON_KEY"] = "anon-key"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "service-key"
os.environ["REPORT_TIMEZONE"] = "Europe/Madrid"
os.environ.pop("LOG_LEVEL", None)

from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from driversales import auth, main
from driversales.filters import RequestSequencer
from driversales.models import Base, Company, User
from driversales.session_store import SESSION_KEY

PASSWORD = "secret123"


def run(coro):
    return asyncio.run(coro)


def encode_session(credential: dict) -> str:
    """The session cookie value a browser would hold for ``credential``."""
    raw = json.dumps(credential, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class FakeSupabase:
    """In-memory GoTrue: password and refresh grants, sign-up, sign-out, admin delete."""

    def __init__(self):
        self.users: dict[str, dict] = {}
        self.refresh_tokens: dict[str, dict] = {}
        self.calls: list[str] = []
        self._ids = itertools.count(1)
        self._tokens = itertools.count(1)

    def add_user(self, email: str, password: str = PASSWORD, auth_id: str | None = None) -> dict:
        user = {"id": auth_id or f"auth-{next(self._ids)}", "email": email, "password": password}
        self.users[email] = user
        return user

    def session_for(self, user: dict, expires_in: int = 3600) -> dict:
        n = next(self._tokens)
        refresh = f"refresh-{user['id']}-{n}"
        self.refresh_tokens[refresh] = user
        return {
            "access_token": f"access-{user['id']}-{n}",
            "refresh_token": refresh,
            "expires_in": expires_in,
            "token_type": "bearer",
            "user": {"id": user["id"], "email": user["email"]},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(f"{request.method} {path}")
        body = json.loads(request.content) if request.content else {}

        if path == "/auth/v1/token":
            grant = request.url.params.get("grant_type")
            if grant == "password":
                user = self.users.get(body.get("email"))
                if user is None or user["password"] != body.get("password"):
                    return httpx.Response(400, json={"error": "invalid_grant",
                                                     "error_description": "Invalid login credentials"})
                return httpx.Response(200, json=self.session_for(user))
            if grant == "refresh_token":
                user = self.refresh_tokens.pop(body.get("refresh_token"), None)
                if user is None:
                    return httpx.Response(400, json={"error": "invalid_grant",
                                                     "error_description": "Invalid Refresh Token: Refresh Token Not Found"})
                return httpx.Response(200, json=self.session_for(user))

        if path == "/auth/v1/signup":
            if body.get("email") in self.users:
                return httpx.Response(422, json={"code": 422, "msg": "User already registered"})
            if len(body.get("password") or "") < 6:
                return httpx.Response(422, json={"msg": "Password should be at least 6 characters"})
            user = self.add_user(body["email"], body["password"])
            return httpx.Response(200, json={"id": user["id"], "email": user["email"]})

        if path == "/auth/v1/logout":
            return httpx.Response(204)

        if path.startswith("/auth/v1/admin/users/"):
            auth_id = path.rsplit("/", 1)[-1]
            self.users = {e: u for e, u in self.users.items() if u["id"] != auth_id}
            return httpx.Response(200, json={})

        return httpx.Response(404, json={"msg": "not found"})


@pytest.fixture
def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db", poolclass=NullPool)

    async def _create():
        async with eng.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    run(_create())
    yield eng
    run(eng.dispose())


@pytest.fixture
def sessionmaker(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def supabase(monkeypatch):
    fake = FakeSupabase()
    monkeypatch.setattr(auth, "_http_client", httpx.AsyncClient(transport=httpx.MockTransport(fake.handler)))
    auth.cache_clear()
    main._LOGIN_ATTEMPTS.clear()
    yield fake
    auth.cache_clear()


@pytest.fixture
def seed(sessionmaker, supabase):
    """Two companies: Fleet One (admin + two drivers) and Fleet Two (one driver)."""

    async def _seed():
        async with sessionmaker() as db:
            one = Company(name="Fleet One")
            two = Company(name="Fleet Two")
            db.add_all([one, two])
            await db.flush()
            admin = User(auth_id="auth-admin", email="admin@fleet.test", role="admin",
                         name="Ana Admin", company_id=one.id)
            db.add(admin)
            await db.flush()
            one.admin_id = admin.id
            driver = User(auth_id="auth-driver", email="driver@fleet.test", role="driver",
                          name="Dan Driver", company_id=one.id, admin_id=admin.id, commission=10.0)
            other = User(auth_id="auth-other", email="other@fleet.test", role="driver",
                         name="Olga Other", company_id=one.id, admin_id=admin.id, commission=0.0)
            outsider = User(auth_id="auth-outsider", email="outsider@fleet.test", role="driver",
                            name="Xavi Outsider", company_id=two.id, commission=5.0)
            db.add_all([driver, other, outsider])
            await db.commit()
            return SimpleNamespace(
                company_id=one.id, other_company_id=two.id,
                admin_id=admin.id, driver_id=driver.id, other_id=other.id, outsider_id=outsider.id,
            )

    ids = run(_seed())
    for email, auth_id in [("admin@fleet.test", "auth-admin"), ("driver@fleet.test", "auth-driver"),
                           ("other@fleet.test", "auth-other"), ("outsider@fleet.test", "auth-outsider")]:
        supabase.add_user(email, auth_id=auth_id)
    return ids


@pytest.fixture
def client(engine, sessionmaker, seed, monkeypatch):
    monkeypatch.setattr(main, "engine", engine)
    monkeypatch.setattr(main, "SessionLocal", sessionmaker)
    monkeypatch.setattr(main, "sequencer", RequestSequencer())
    with TestClient(main.app) as c:
        yield c


def set_session(client, credential: dict) -> None:
    # Same domain the cookie jar files server-set cookies under, so the app can replace it
    client.cookies.set(SESSION_KEY, encode_session(credential), domain="testserver.local", path="/")


def csrf(client) -> str:
    token = client.cookies.get(main.CSRF_COOKIE)
    if token is None:
        client.get("/")
        token = client.cookies.get(main.CSRF_COOKIE)
    return token


def login(client, email: str, password: str = PASSWORD, next: str = ""):
    token = csrf(client)
    return client.post(
        "/",
        data={"email": email, "password": password, "next": next, "csrf_token": token},
        follow_redirects=False,
    )


@pytest.fixture
def as_admin(client):
    r = login(client, "admin@fleet.test")
    assert r.status_code == 303
    return client


@pytest.fixture
def as_driver(client):
    r = login(client, "driver@fleet.test")
    assert r.status_code == 303
    return client
