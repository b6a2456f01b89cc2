import logging
from datetime import datetime, timedelta
from functools import wraps
from typing import NamedTuple

from flask import current_app, jsonify
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.rate_limit import BLOCKED_ACTION, RateLimit
from utils.auth_context import current_context

logger = logging.getLogger(__name__)

# attempts value stored on a "blocked" row
BLOCKED_ATTEMPTS = 999999


class RateLimitResult(NamedTuple):
    allowed: bool
    retry_after: int = 0


def _get_row(ip: str, action: str):
    return RateLimit.query.filter_by(ip_address=ip, action_type=action).first()


def _clean_old_entries(action: str, window_seconds: int):
    # rows are kept for twice the window for analysis
    cutoff = datetime.utcnow() - timedelta(seconds=window_seconds * 2)
    (
        RateLimit.query
        .filter(RateLimit.action_type == action, RateLimit.window_start < cutoff)
        .delete(synchronize_session="fetch")
    )


def _delete_expired_blocks() -> int:
    # a "blocked" row's window_start is the end of the ban
    return (
        RateLimit.query
        .filter(RateLimit.action_type == BLOCKED_ACTION, RateLimit.window_start <= datetime.utcnow())
        .delete(synchronize_session="fetch")
    )


def clean_expired_blocks() -> int:
    count = _delete_expired_blocks()
    db.session.commit()
    return count


def check(ip: str, action: str, max_attempts: int, window_seconds: int) -> RateLimitResult:
    """
    Fixed window counter per (ip, action).
    Fails open: a storage error allows the request.
    """
    try:
        _clean_old_entries(action, window_seconds)
        _delete_expired_blocks()
        now = datetime.utcnow()

        row = _get_row(ip, action)
        if not row:
            db.session.add(RateLimit(ip_address=ip, action_type=action, attempts=1, window_start=now))
            db.session.commit()
            return RateLimitResult(True)

        window_end = row.window_start + timedelta(seconds=window_seconds)

        # Reset window if expired
        if now >= window_end:
            row.window_start = now
            row.attempts = 1
            db.session.commit()
            return RateLimitResult(True)

        if row.attempts >= max_attempts:
            db.session.commit()
            retry_after = int((window_end - now).total_seconds())
            return RateLimitResult(False, max(retry_after, 1))

        row.attempts += 1
        db.session.commit()
        return RateLimitResult(True)

    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Rate limit check failed for %s/%s, allowing request", ip, action)
        return RateLimitResult(True)


def get_remaining_attempts(ip: str, action: str, max_attempts: int, window_seconds: int) -> int:
    row = _get_row(ip, action)
    if not row:
        return max_attempts
    if datetime.utcnow() - row.window_start >= timedelta(seconds=window_seconds):
        return max_attempts
    return max(0, max_attempts - row.attempts)


def get_time_until_reset(ip: str, action: str, window_seconds: int) -> int:
    row = _get_row(ip, action)
    if not row:
        return 0
    reset_at = row.window_start + timedelta(seconds=window_seconds)
    return max(0, int((reset_at - datetime.utcnow()).total_seconds()))


def block_ip(ip: str, duration: int = 3600) -> datetime:
    """Bans an IP until now + duration using the synthetic "blocked" action row."""
    until = datetime.utcnow() + timedelta(seconds=duration)
    row = _get_row(ip, BLOCKED_ACTION)
    if not row:
        row = RateLimit(ip_address=ip, action_type=BLOCKED_ACTION)
        db.session.add(row)
    row.attempts = BLOCKED_ATTEMPTS
    row.window_start = until
    db.session.commit()
    logger.warning("IP %s blocked until %s", ip, until.isoformat())
    return until


def is_blocked(ip: str) -> bool:
    row = _get_row(ip, BLOCKED_ACTION)
    if not row:
        return False
    return row.window_start > datetime.utcnow()


def unblock_ip(ip: str) -> bool:
    count = (
        RateLimit.query
        .filter_by(ip_address=ip, action_type=BLOCKED_ACTION)
        .delete(synchronize_session="fetch")
    )
    db.session.commit()
    return count > 0


def get_stats(hours: int = 24) -> list:
    since = datetime.utcnow() - timedelta(hours=hours)
    rows = (
        db.session.query(
            RateLimit.action_type,
            func.count(RateLimit.id),
            func.count(func.distinct(RateLimit.ip_address)),
            func.avg(RateLimit.attempts),
        )
        .filter(RateLimit.window_start > since)
        .group_by(RateLimit.action_type)
        .all()
    )
    return [
        {
            "action_type": action,
            "total_attempts": total,
            "unique_ips": unique_ips,
            "avg_attempts_per_ip": float(avg or 0),
        }
        for action, total, unique_ips, avg in rows
    ]


def rate_limited(
    action: str,
    max_key: str,
    window_key: str = "RATE_LIMIT_WINDOW_SECONDS",
    message: str = "Too many attempts. Please try again later.",
):
    """
    Usage: @rate_limited("login", "RATE_LIMIT_LOGIN")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            max_attempts = current_app.config.get(max_key, 5)
            window_seconds = current_app.config.get(window_key, 300)
            result = check(current_context().ip, action, max_attempts, window_seconds)
            if not result.allowed:
                logger.info("Rate limit hit for %s on %s", current_context().ip, action)
                resp = jsonify(
                    error=message,
                    retry_after_seconds=result.retry_after,
                )
                resp.headers["Retry-After"] = str(result.retry_after)
                return resp, 429
            return fn(*args, **kwargs)
        return wrapper
    return decorator
