import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy import func

from models import db
from models.session import UserSession
from models.user import User


def generate_secure_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def _hash_token(token: str) -> str:
    # SHA-256 is fine for hashing random session tokens
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _lifetime(remember: bool = False) -> int:
    if remember:
        return current_app.config.get("REMEMBER_LIFETIME_SECONDS", 30 * 24 * 60 * 60)
    return current_app.config.get("SESSION_LIFETIME_SECONDS", 24 * 60 * 60)


def create_session(user_id: int, ctx, remember: bool = False) -> str:
    """
    Creates a server-side session and returns the RAW token (to set as cookie).
    Only the hash is stored in DB; the CSRF token lives on the row.
    """
    raw_token = generate_secure_token(64)
    now = datetime.utcnow()

    row = UserSession(
        user_id=user_id,
        token_hash=_hash_token(raw_token),
        csrf_token=generate_secure_token(32),
        ip_address=ctx.ip,
        user_agent=(ctx.user_agent or "")[:255],
        created_at=now,
        last_activity=now,
        expires_at=now + timedelta(seconds=_lifetime(remember)),
    )
    db.session.add(row)
    db.session.commit()

    ctx.token = raw_token
    ctx.session = row
    ctx.user = row.user
    return raw_token


def find_session(raw_token: Optional[str]) -> Optional[UserSession]:
    if not raw_token:
        return None
    return UserSession.query.filter_by(token_hash=_hash_token(raw_token)).first()


def validate_session(raw_token: Optional[str]) -> Optional[UserSession]:
    """
    Returns the session row when the token matches an unexpired session
    owned by an active user, touching last_activity. Otherwise None.
    """
    if not raw_token:
        return None

    now = datetime.utcnow()
    sess = (
        UserSession.query
        .join(User, UserSession.user_id == User.id)
        .filter(
            UserSession.token_hash == _hash_token(raw_token),
            UserSession.expires_at > now,
            User.is_active.is_(True),
        )
        .first()
    )
    if not sess:
        return None

    sess.last_activity = now
    db.session.commit()
    return sess


def regenerate_session(sess: UserSession) -> str:
    """Rotates both the session token and its CSRF token. Returns the new raw token."""
    raw_token = generate_secure_token(64)
    sess.token_hash = _hash_token(raw_token)
    sess.csrf_token = generate_secure_token(32)
    db.session.commit()
    return raw_token


def extend_session(sess: UserSession) -> datetime:
    """Pushes expiry one lifetime from now; never moves it earlier (remember-me rows)."""
    candidate = datetime.utcnow() + timedelta(seconds=_lifetime())
    if candidate > sess.expires_at:
        sess.expires_at = candidate
        db.session.commit()
    return sess.expires_at


def destroy_session(raw_token: Optional[str]) -> bool:
    sess = find_session(raw_token)
    if not sess:
        return False
    db.session.delete(sess)
    db.session.commit()
    return True


def destroy_all_user_sessions(user_id: int, keep: Optional[UserSession] = None) -> int:
    query = UserSession.query.filter(UserSession.user_id == user_id)
    if keep is not None:
        query = query.filter(UserSession.id != keep.id)
    count = query.delete(synchronize_session="fetch")
    db.session.commit()
    return count


def clean_expired_sessions() -> int:
    count = (
        UserSession.query
        .filter(UserSession.expires_at < datetime.utcnow())
        .delete(synchronize_session="fetch")
    )
    db.session.commit()
    return count


def get_user_sessions(user_id: int) -> list:
    return (
        UserSession.query
        .filter(UserSession.user_id == user_id, UserSession.expires_at > datetime.utcnow())
        .order_by(UserSession.last_activity.desc())
        .all()
    )


def get_session_stats(user_id: int) -> dict:
    now = datetime.utcnow()
    total, last_activity = (
        db.session.query(func.count(UserSession.id), func.max(UserSession.last_activity))
        .filter(UserSession.user_id == user_id)
        .one()
    )
    active = UserSession.query.filter(
        UserSession.user_id == user_id, UserSession.expires_at > now
    ).count()
    return {
        "total_sessions": total,
        "active_sessions": active,
        "last_activity": last_activity.isoformat() if last_activity else None,
    }


def check_suspicious_activity(user_id: int) -> bool:
    """True when sessions were opened from too many distinct IPs in the last hour."""
    since = datetime.utcnow() - timedelta(hours=1)
    ip_count = (
        db.session.query(func.count(func.distinct(UserSession.ip_address)))
        .filter(UserSession.user_id == user_id, UserSession.created_at > since)
        .scalar()
    )
    threshold = current_app.config.get("SUSPICIOUS_IP_THRESHOLD", 3)
    return (ip_count or 0) > threshold


def set_auth_cookies(resp, raw_token: str, remember: bool = False):
    cfg = current_app.config
    resp.set_cookie(
        cfg.get("AUTH_COOKIE_NAME", "feed_session"),
        raw_token,
        httponly=True,
        secure=cfg.get("SESSION_COOKIE_SECURE", True),
        samesite=cfg.get("SESSION_COOKIE_SAMESITE", "None"),
        max_age=_lifetime(),
        path="/",
    )
    if remember:
        resp.set_cookie(
            cfg.get("REMEMBER_COOKIE_NAME", "remember_token"),
            raw_token,
            httponly=True,
            secure=cfg.get("SESSION_COOKIE_SECURE", True),
            samesite=cfg.get("SESSION_COOKIE_SAMESITE", "None"),
            max_age=_lifetime(remember=True),
            path="/",
        )
    return resp


def clear_remember_cookie(resp):
    resp.delete_cookie(current_app.config.get("REMEMBER_COOKIE_NAME", "remember_token"), path="/")
    return resp


def clear_auth_cookies(resp):
    resp.delete_cookie(current_app.config.get("AUTH_COOKIE_NAME", "feed_session"), path="/")
    return clear_remember_cookie(resp)
