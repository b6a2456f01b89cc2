"""
Shared fixtures: an app bound to in-memory SQLite, a test client and
small helpers for CSRF tokens and front-controller calls.
"""

import pytest

from app import create_app
from config import Config
from models import db as _db
from models.user import User
from security.password import hash_password
from utils.auth_context import RequestContext

PASSWORD = "Secret123"


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    SESSION_COOKIE_SECURE = False
    SESSION_COOKIE_SAMESITE = "Lax"
    BCRYPT_ROUNDS = 4
    RATE_LIMIT_LOGIN = 100
    RATE_LIMIT_REGISTER = 100
    RATE_LIMIT_PASSWORD_RESET = 100
    SMTP_HOST = None
    LOGIN_PAGE_URL = "/login"
    DASHBOARD_URL = "/dashboard"
    GOOGLE_CLIENT_ID = "google-client"
    GOOGLE_CLIENT_SECRET = "google-secret"
    GOOGLE_REDIRECT_URI = "http://localhost/auth/social?action=callback&provider=google"
    DISCORD_CLIENT_ID = "discord-client"
    DISCORD_CLIENT_SECRET = "discord-secret"
    DISCORD_REDIRECT_URI = "http://localhost/auth/social?action=callback&provider=discord"
    LOG_LEVEL = "WARNING"


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def ctx():
    return RequestContext(ip="10.0.0.1", user_agent="pytest")


@pytest.fixture
def make_user(app):
    def _make(username="alice", email="alice@example.com", password=PASSWORD, verified=True, **kwargs):
        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            email_verified=verified,
            **kwargs,
        )
        _db.session.add(user)
        _db.session.commit()
        return user
    return _make


@pytest.fixture
def csrf(client):
    """Returns the CSRF token the server currently expects from this client."""
    def _csrf():
        return client.get("/auth/csrf").get_json()["token"]
    return _csrf


@pytest.fixture
def api(client, csrf):
    """Calls a front-controller action; POSTs carry a valid CSRF token unless told otherwise."""
    def _api(action, data=None, method="POST", with_csrf=True, **kwargs):
        if method == "GET":
            query = {"action": action}
            query.update(data or {})
            return client.get("/auth/api", query_string=query, **kwargs)
        payload = dict(data or {})
        if with_csrf:
            payload.setdefault("_token", csrf())
        return client.post(f"/auth/api?action={action}", data=payload, **kwargs)
    return _api


@pytest.fixture
def login(api, make_user):
    def _login(email="alice@example.com", password=PASSWORD, remember=False, **kwargs):
        data = {"email": email, "password": password}
        if remember:
            data["remember_me"] = "1"
        return api("login", data, **kwargs)
    return _login


@pytest.fixture
def logged_in(login, make_user):
    user = make_user()
    resp = login()
    assert resp.status_code == 200
    return user
