"""
OAuth login through Google and Discord with the provider HTTP calls mocked.
"""

import json
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from models.session import UserSession
from models.social_provider import SocialProvider
from models.user import User
from security.oauth import PROVIDERS, normalize_profile

GOOGLE_PROFILE = {
    "sub": "1122334455",
    "email": "carol@gmail.com",
    "email_verified": True,
    "given_name": "Carol",
    "family_name": "Jones",
    "picture": "https://lh3.googleusercontent.com/a/photo.jpg",
}


def _response(payload, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    return resp


@pytest.fixture
def provider_http():
    with patch("security.oauth.requests.request") as mocked:
        yield mocked


def _initiate(client, provider="google", **params):
    resp = client.get("/auth/social", query_string=dict(action="initiate", provider=provider, **params))
    assert resp.status_code == 302
    query = parse_qs(urlparse(resp.headers["Location"]).query)
    return query["state"][0], query


def _callback(client, state, provider="google", code="auth-code", **params):
    return client.get(
        "/auth/social",
        query_string=dict(action="callback", provider=provider, state=state, code=code, **params),
    )


def _is_error_redirect(resp):
    return resp.status_code == 302 and resp.headers["Location"].startswith("/login?error=1")


# --- initiate ---

def test_initiate_redirects_to_provider(client):
    resp = client.get("/auth/social?action=initiate&provider=google")
    location = urlparse(resp.headers["Location"])
    assert location.netloc == "accounts.google.com"

    state, query = _initiate(client)
    assert query["client_id"] == ["google-client"]
    assert query["scope"] == ["openid email profile"]
    assert query["response_type"] == ["code"]
    assert len(state) == 64

    with client.session_transaction() as sess:
        assert sess["oauth_state"] == state
        assert sess["social_auth_provider"] == "google"
        assert sess["social_auth_intent"] == "login"


def test_initiate_discord_uses_discord_scope(client):
    _, query = _initiate(client, provider="discord", intent="register")
    assert query["scope"] == ["identify email"]
    with client.session_transaction() as sess:
        assert sess["social_auth_intent"] == "register"


def test_unsupported_or_unconfigured_provider(app, client):
    assert _is_error_redirect(client.get("/auth/social?action=initiate&provider=myspace"))

    app.config["DISCORD_CLIENT_ID"] = ""
    assert _is_error_redirect(client.get("/auth/social?action=initiate&provider=discord"))


# --- callback ---

def test_google_callback_creates_verified_user_and_logs_in(client, provider_http):
    provider_http.side_effect = [_response({"access_token": "at-1"}), _response(GOOGLE_PROFILE)]
    state, _ = _initiate(client)

    resp = _callback(client, state)

    assert resp.status_code == 302
    assert resp.headers["Location"].startswith("/dashboard?success=1")

    user = User.query.filter_by(email="carol@gmail.com").one()
    assert user.username == "carol"
    assert user.email_verified is True
    assert user.first_name == "Carol"

    link = SocialProvider.query.one()
    assert (link.provider_name, link.provider_id, link.user_id) == ("google", "1122334455", user.id)
    assert json.loads(link.provider_data)["email"] == "carol@gmail.com"

    assert client.get_cookie("feed_session") is not None
    assert UserSession.query.filter_by(user_id=user.id).count() == 1
    assert client.get("/auth/api?action=getCurrentUser").status_code == 200

    token_call, profile_call = provider_http.call_args_list
    assert token_call.args == ("POST", PROVIDERS["google"].token_url)
    assert token_call.kwargs["data"]["code"] == "auth-code"
    assert profile_call.kwargs["headers"]["Authorization"] == "Bearer at-1"


def test_callback_links_existing_account_by_email(client, provider_http, make_user):
    existing = make_user(username="carol_j", email="carol@gmail.com")
    provider_http.side_effect = [_response({"access_token": "at-1"}), _response(GOOGLE_PROFILE)]
    state, _ = _initiate(client)

    resp = _callback(client, state)

    assert resp.headers["Location"].startswith("/dashboard?success=1")
    assert User.query.count() == 1
    assert SocialProvider.query.one().user_id == existing.id


def test_second_login_reuses_provider_link(client, provider_http):
    provider_http.side_effect = [
        _response({"access_token": "at-1"}), _response(GOOGLE_PROFILE),
        _response({"access_token": "at-2"}), _response(GOOGLE_PROFILE),
    ]
    for _ in range(2):
        state, _ = _initiate(client)
        _callback(client, state)

    assert User.query.count() == 1
    assert SocialProvider.query.count() == 1


def test_callback_rejects_wrong_state(client, provider_http):
    _initiate(client)

    resp = _callback(client, "forged-state")

    assert _is_error_redirect(resp)
    assert "Invalid+state" in resp.headers["Location"]
    provider_http.assert_not_called()
    assert User.query.count() == 0


def test_state_cannot_be_replayed(client, provider_http):
    provider_http.side_effect = [_response({"access_token": "at-1"}), _response(GOOGLE_PROFILE)]
    state, _ = _initiate(client)

    assert _callback(client, state).headers["Location"].startswith("/dashboard")
    assert _is_error_redirect(_callback(client, state))


def test_provider_error_and_missing_code(client, provider_http):
    state, _ = _initiate(client)
    assert _is_error_redirect(_callback(client, state, error="access_denied"))

    state, _ = _initiate(client)
    assert _is_error_redirect(_callback(client, state, code=""))
    provider_http.assert_not_called()


def test_token_exchange_http_failure(client, provider_http):
    provider_http.return_value = _response({"error": "invalid_grant"}, status=400)
    state, _ = _initiate(client)

    assert _is_error_redirect(_callback(client, state))
    assert User.query.count() == 0


def test_provider_unreachable(client, provider_http):
    provider_http.side_effect = requests.ConnectionError("no route")
    state, _ = _initiate(client)

    assert _is_error_redirect(_callback(client, state))


def test_profile_without_email_fails(client, provider_http):
    provider_http.side_effect = [_response({"access_token": "at-1"}), _response({"sub": "1"})]
    state, _ = _initiate(client)

    assert _is_error_redirect(_callback(client, state))
    assert User.query.count() == 0


def test_discord_callback_with_taken_username(client, provider_http, make_user):
    make_user(username="dave", email="dave@example.com")
    profile = {"id": "80351110224678912", "username": "dave", "discriminator": "0",
               "email": "dave@discord.example", "verified": True, "avatar": "a1b2"}
    provider_http.side_effect = [_response({"access_token": "at-1"}), _response(profile)]
    state, _ = _initiate(client, provider="discord")

    resp = _callback(client, state, provider="discord")

    assert resp.headers["Location"].startswith("/dashboard")
    user = User.query.filter_by(email="dave@discord.example").one()
    assert user.username == "dave2"
    assert user.profile_picture == "https://cdn.discordapp.com/avatars/80351110224678912/a1b2.png"


# --- profile mapping ---

def test_normalize_discord_profile(app):
    discord = PROVIDERS["discord"]
    legacy = normalize_profile(discord, {
        "id": "42", "username": "eve", "discriminator": "1337", "email": "eve@example.com",
    })
    assert legacy["username"] == "eve_13"
    assert legacy["provider_id"] == "42"
    assert legacy["profile_picture"] == ""
    assert legacy["email_verified"] is False

    modern = normalize_profile(discord, {
        "id": "43", "username": "eve", "global_name": "Eve", "discriminator": "0",
        "email": "eve2@example.com", "verified": True,
    })
    assert modern["username"] == "eve"
    assert modern["first_name"] == "Eve"
    assert modern["email_verified"] is True


def test_normalize_google_profile(app):
    profile = normalize_profile(PROVIDERS["google"], GOOGLE_PROFILE)
    assert profile["provider_id"] == "1122334455"
    assert profile["username"] == "carol"
    assert profile["last_name"] == "Jones"


def test_unverified_provider_email_is_not_linked_to_existing_account(client, provider_http, make_user):
    existing = make_user(username="dave", email="dave@example.com")
    profile = {"id": "999", "username": "mallory", "discriminator": "0",
               "email": "Dave@Example.com", "verified": False}
    provider_http.side_effect = [_response({"access_token": "at-1"}), _response(profile)]
    state, _ = _initiate(client, provider="discord")

    resp = _callback(client, state, provider="discord")

    assert _is_error_redirect(resp)
    assert "not+verified" in resp.headers["Location"]
    assert SocialProvider.query.count() == 0
    assert UserSession.query.filter_by(user_id=existing.id).count() == 0
    assert client.get_cookie("feed_session") is None


def test_unverified_provider_email_can_open_new_account(client, provider_http):
    profile = {"id": "1000", "username": "frank", "discriminator": "0",
               "email": "frank@example.com", "verified": False}
    provider_http.side_effect = [_response({"access_token": "at-1"}), _response(profile)]
    state, _ = _initiate(client, provider="discord")

    assert _callback(client, state, provider="discord").headers["Location"].startswith("/dashboard")
    assert SocialProvider.query.one().user.email == "frank@example.com"
    assert SocialProvider.query.one().user.email_verified is False


def test_existing_link_wins_over_email(db, client, provider_http, make_user):
    owner = make_user(username="gina", email="gina@example.com")
    make_user(username="other", email="changed@example.com")
    db.session.add(SocialProvider(user_id=owner.id, provider_name="google", provider_id="1122334455"))
    db.session.commit()

    profile = dict(GOOGLE_PROFILE, email="changed@example.com", email_verified=False)
    provider_http.side_effect = [_response({"access_token": "at-1"}), _response(profile)]
    state, _ = _initiate(client)

    assert _callback(client, state).headers["Location"].startswith("/dashboard")
    link = SocialProvider.query.one()
    assert link.user_id == owner.id
    assert link.provider_email == "changed@example.com"
