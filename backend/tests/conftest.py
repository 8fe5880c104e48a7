import os

# Must be set before prepfox.config is imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ.setdefault("RUN_BACKGROUND_WORKERS", "false")

import httpx
import pytest
from fastapi.testclient import TestClient

from prepfox.models_sqlalchemy import Base, SessionLocal, engine, get_db
from prepfox.models_sqlalchemy import models  # noqa: F401
from prepfox.models_sqlalchemy.models import User
from prepfox.services.auth import create_access_token, get_password_hash
from prepfox.utils.logger import carrier_logger


class FakeResponse:
    def __init__(self, status_code=200, json_body=None, text=None, headers=None):
        self.status_code = status_code
        self._json = json_body
        self._text = text
        self.headers = headers or {}

    def json(self):
        if self._json is None:
            raise ValueError("response has no JSON body")
        return self._json

    @property
    def text(self):
        if self._text is not None:
            return self._text
        return "" if self._json is None else str(self._json)


class FakeHTTP:
    """Stands in for ``httpx.AsyncClient``; routes requests by URL substring.

    A route's response may be a FakeResponse, an exception instance to
    raise, a callable ``(method, url, kwargs) -> FakeResponse``, or a list
    consumed one item per call.
    """

    def __init__(self):
        self.routes = []
        self.calls = []

    def add(self, method, url_part, response):
        self.routes.append((method.upper(), url_part, response))
        return self

    def calls_to(self, url_part):
        return [c for c in self.calls if url_part in c["url"]]

    def _respond(self, method, url, kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        for route_method, url_part, response in self.routes:
            if route_method != method or url_part not in url:
                continue
            if isinstance(response, list):
                response = response.pop(0) if len(response) > 1 else response[0]
            if isinstance(response, Exception):
                raise response
            if callable(response):
                return response(method, url, kwargs)
            return response
        raise AssertionError(f"Unexpected HTTP call: {method} {url}")

    def __call__(self, *args, **kwargs):
        return _FakeAsyncClient(self)


class _FakeAsyncClient:
    def __init__(self, http):
        self._http = http

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def get(self, url, **kwargs):
        return self._http._respond("GET", str(url), kwargs)

    async def post(self, url, **kwargs):
        return self._http._respond("POST", str(url), kwargs)

    async def request(self, method, url, **kwargs):
        return self._http._respond(method.upper(), str(url), kwargs)


@pytest.fixture
def fake_http(monkeypatch):
    http = FakeHTTP()
    monkeypatch.setattr(httpx, "AsyncClient", http)
    return http


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        carrier_logger.clear_logs()


def _make_user(db, email, role="user"):
    user = User(
        email=email,
        username=email.split("@")[0],
        hashed_password=get_password_hash("s3cret-pass"),
        role=role,
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def user(db):
    return _make_user(db, "seller@example.com")


@pytest.fixture
def other_user(db):
    return _make_user(db, "someone-else@example.com")


@pytest.fixture
def admin_user(db):
    return _make_user(db, "admin@example.com", role="admin")


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {create_access_token({'sub': user.id})}"}


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {create_access_token({'sub': admin_user.id})}"}


@pytest.fixture
def client(db):
    from prepfox.main import app

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
