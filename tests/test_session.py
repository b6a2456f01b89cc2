"""
Session store: token lookup, expiry, owner state, remember-me rotation.
"""

import warnings
from datetime import datetime, timedelta

from sqlalchemy.exc import SAWarning

from models.session import UserSession
from security.session import (
    check_suspicious_activity,
    clean_expired_sessions,
    create_session,
    destroy_all_user_sessions,
    destroy_session,
    extend_session,
    find_session,
    get_session_stats,
    get_user_sessions,
    regenerate_session,
    validate_session,
)


# --- store ---

def test_create_session_stores_only_token_hash(make_user, ctx):
    user = make_user()
    raw = create_session(user.id, ctx)

    row = UserSession.query.one()
    assert row.token_hash != raw
    assert len(raw) == 128
    assert row.csrf_token
    assert row.ip_address == "10.0.0.1"
    assert row.user_agent == "pytest"
    assert ctx.session is row and ctx.user.id == user.id


def test_session_lifetime_is_24h_or_30d_with_remember(make_user, ctx):
    user = make_user()
    create_session(user.id, ctx)
    short = ctx.session.expires_at - ctx.session.created_at
    create_session(user.id, ctx, remember=True)
    long = ctx.session.expires_at - ctx.session.created_at

    assert short == timedelta(hours=24)
    assert long == timedelta(days=30)


def test_unknown_token_is_not_valid(make_user, ctx):
    create_session(make_user().id, ctx)
    assert validate_session("not-a-real-token") is None
    assert validate_session("") is None
    assert validate_session(None) is None


def test_expired_session_is_not_valid(db, make_user, ctx):
    raw = create_session(make_user().id, ctx)
    ctx.session.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    assert validate_session(raw) is None


def test_session_of_inactive_user_is_not_valid(db, make_user, ctx):
    user = make_user()
    raw = create_session(user.id, ctx)
    user.is_active = False
    db.session.commit()

    assert validate_session(raw) is None


def test_validate_touches_last_activity(db, make_user, ctx):
    raw = create_session(make_user().id, ctx)
    old = datetime.utcnow() - timedelta(hours=2)
    ctx.session.last_activity = old
    db.session.commit()

    sess = validate_session(raw)
    assert sess is not None
    assert sess.last_activity > old


def test_regenerate_rotates_token_and_csrf(make_user, ctx):
    raw = create_session(make_user().id, ctx)
    sess = ctx.session
    old_csrf = sess.csrf_token

    new_raw = regenerate_session(sess)

    assert new_raw != raw
    assert sess.csrf_token != old_csrf
    assert validate_session(raw) is None
    assert validate_session(new_raw).id == sess.id


def test_destroy_session(make_user, ctx):
    raw = create_session(make_user().id, ctx)
    assert destroy_session(raw) is True
    assert find_session(raw) is None
    assert destroy_session(raw) is False


def test_destroy_all_user_sessions_can_keep_one(make_user, ctx):
    user = make_user()
    create_session(user.id, ctx)
    create_session(user.id, ctx)
    keep_raw = create_session(user.id, ctx)

    removed = destroy_all_user_sessions(user.id, keep=ctx.session)

    assert removed == 2
    assert UserSession.query.count() == 1
    assert validate_session(keep_raw) is not None


def test_clean_expired_sessions(db, make_user, ctx):
    user = make_user()
    create_session(user.id, ctx)
    ctx.session.expires_at = datetime.utcnow() - timedelta(minutes=1)
    db.session.commit()
    create_session(user.id, ctx)

    assert clean_expired_sessions() == 1
    assert UserSession.query.count() == 1


def test_extend_session_pushes_expiry(db, make_user, ctx):
    create_session(make_user().id, ctx)
    ctx.session.expires_at = datetime.utcnow() + timedelta(minutes=5)
    db.session.commit()

    new_expiry = extend_session(ctx.session)
    assert new_expiry > datetime.utcnow() + timedelta(hours=23)


def test_user_sessions_and_stats(db, make_user, ctx):
    user = make_user()
    create_session(user.id, ctx)
    create_session(user.id, ctx)
    ctx.session.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    assert len(get_user_sessions(user.id)) == 1
    stats = get_session_stats(user.id)
    assert stats["total_sessions"] == 2
    assert stats["active_sessions"] == 1
    assert stats["last_activity"] is not None


def test_suspicious_activity_after_many_ips(make_user, ctx):
    user = make_user()
    for i in range(4):
        ctx.ip = f"10.0.0.{i + 1}"
        create_session(user.id, ctx)
        assert check_suspicious_activity(user.id) is (i == 3)


# --- cookies & request pipeline ---

def test_bogus_cookie_is_not_authenticated(client, api, make_user):
    make_user()
    client.set_cookie("feed_session", "forged-token")

    assert api("getCurrentUser", method="GET").status_code == 401


def test_expired_cookie_session_is_not_authenticated(db, api, logged_in):
    assert api("getCurrentUser", method="GET").status_code == 200

    row = UserSession.query.one()
    row.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    assert api("getCurrentUser", method="GET").status_code == 401


def test_remember_cookie_silently_reauthenticates_and_rotates(client, api, login, make_user):
    make_user()
    resp = login(remember=True)
    assert resp.status_code == 200
    old_token = client.get_cookie("remember_token").value
    assert client.get_cookie("feed_session").value == old_token

    # browser dropped the short-lived session cookie
    client.delete_cookie("feed_session")
    resp = api("getCurrentUser", method="GET")

    assert resp.status_code == 200
    new_session = client.get_cookie("feed_session").value
    new_remember = client.get_cookie("remember_token").value
    assert new_session != old_token
    assert new_remember == new_session
    assert find_session(old_token) is None
    assert UserSession.query.count() == 1


def test_invalid_remember_cookie_is_cleared(client, api):
    client.set_cookie("remember_token", "stale")
    resp = api("getCurrentUser", method="GET")

    assert resp.status_code == 401
    assert any(
        c.startswith("remember_token=;") for c in resp.headers.getlist("Set-Cookie")
    )


def test_extend_never_shortens_remember_me_session(make_user, ctx):
    create_session(make_user().id, ctx, remember=True)
    thirty_days = ctx.session.expires_at

    assert extend_session(ctx.session) == thirty_days
    assert ctx.session.expires_at == thirty_days


def test_bulk_deletes_detach_removed_rows(db, make_user, ctx):
    user = make_user()
    create_session(user.id, ctx)
    revoked = ctx.session
    create_session(user.id, ctx)
    expired = ctx.session
    expired.expires_at = datetime.utcnow() - timedelta(seconds=1)
    db.session.commit()

    clean_expired_sessions()
    assert expired not in db.session
    destroy_all_user_sessions(user.id)
    assert revoked not in db.session

    # SQLite hands the freed ids out again
    with warnings.catch_warnings():
        warnings.simplefilter("error", SAWarning)
        create_session(user.id, ctx)
        create_session(user.id, ctx)
    assert UserSession.query.count() == 2
