import secrets
from functools import wraps
from typing import Optional

from flask import current_app, jsonify, request, session

from models import db
from security.session import generate_secure_token
from utils.auth_context import current_context

CSRF_SESSION_KEY = "csrf_token"
CSRF_HEADER = "X-CSRF-Token"


def get_token(ctx) -> Optional[str]:
    # an authenticated request uses the token stored on its session row
    if ctx.session is not None:
        return ctx.session.csrf_token
    return session.get(CSRF_SESSION_KEY)


def generate_token(ctx) -> str:
    token = get_token(ctx)
    if token:
        return token
    return regenerate_token(ctx)


def regenerate_token(ctx) -> str:
    token = generate_secure_token(32)
    if ctx.session is not None:
        ctx.session.csrf_token = token
        db.session.commit()
    else:
        session[CSRF_SESSION_KEY] = token
    return token


def clear_token():
    session.pop(CSRF_SESSION_KEY, None)


def validate_token(ctx, submitted: Optional[str]) -> bool:
    expected = get_token(ctx)
    if not submitted or not expected:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), submitted.encode("utf-8"))


def submitted_token() -> str:
    name = current_app.config.get("CSRF_TOKEN_NAME", "_token")
    token = request.form.get(name) or request.headers.get(CSRF_HEADER)
    if not token:
        data = request.get_json(silent=True)
        if isinstance(data, dict):
            token = data.get(name)
    return token if isinstance(token, str) else ""


def csrf_protected(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not validate_token(current_context(), submitted_token()):
            return jsonify(error="Invalid CSRF token"), 403
        return fn(*args, **kwargs)
    return wrapper
