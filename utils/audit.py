import logging

from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.login_attempt import LoginAttempt

logger = logging.getLogger(__name__)


def record_login_attempt(ctx, email: str, success: bool):
    """Persists a login attempt. Never fails the request."""
    row = LoginAttempt(
        ip_address=ctx.ip,
        email=(email or "")[:255] or None,
        success=success,
        user_agent=ctx.user_agent[:255] if ctx.user_agent else None,
    )
    try:
        db.session.add(row)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Failed to log login attempt for %s", email)
