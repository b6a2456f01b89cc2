import logging
from datetime import datetime, timedelta

from flask import current_app

from models import db
from models.user import User

logger = logging.getLogger(__name__)


def is_locked(user: User) -> tuple[bool, int]:
    """
    Returns (locked, seconds_remaining)
    """
    if not user or not user.locked_until:
        return False, 0

    now = datetime.utcnow()
    if user.locked_until <= now:
        return False, 0

    seconds = int((user.locked_until - now).total_seconds())
    return True, max(seconds, 1)


def register_failure(user: User) -> tuple[int, bool]:
    """
    Increments failure counter. Returns (fail_count, locked_now)
    """
    now = datetime.utcnow()
    user.failed_login_attempts = (user.failed_login_attempts or 0) + 1

    max_attempts = current_app.config.get("MAX_LOGIN_ATTEMPTS", 5)
    lock_seconds = current_app.config.get("LOCKOUT_SECONDS", 900)

    locked_now = False
    if user.failed_login_attempts >= max_attempts:
        user.locked_until = now + timedelta(seconds=lock_seconds)
        locked_now = True
        logger.warning("Account %s locked after %s failed attempts", user.id, user.failed_login_attempts)

    db.session.commit()
    return user.failed_login_attempts, locked_now


def reset_attempts(user: User):
    """
    Clears failure counter and stamps last_login after a successful login.
    """
    user.failed_login_attempts = 0
    user.locked_until = None
    user.last_login = datetime.utcnow()
    db.session.commit()
