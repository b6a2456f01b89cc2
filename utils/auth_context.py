import ipaddress
from dataclasses import dataclass
from functools import wraps
from typing import Optional

from flask import after_this_request, current_app, g, jsonify, request

from models.session import UserSession
from models.user import User
from security.session import (
    clear_remember_cookie,
    regenerate_session,
    set_auth_cookies,
    validate_session,
)

_PROXY_HEADERS = ("X-Forwarded-For", "X-Real-IP", "Client-IP")


@dataclass
class RequestContext:
    """Everything a handler needs to know about who is calling."""

    ip: str
    user_agent: str = ""
    token: Optional[str] = None
    session: Optional[UserSession] = None
    user: Optional[User] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


def _valid_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def client_ip() -> str:
    if current_app.config.get("TRUST_PROXY_HEADERS", True):
        for header in _PROXY_HEADERS:
            raw = request.headers.get(header)
            if not raw:
                continue
            candidate = raw.split(",")[0].strip()
            if _valid_ip(candidate):
                return candidate
    return request.remote_addr or "0.0.0.0"


def build_request_context() -> RequestContext:
    ctx = RequestContext(
        ip=client_ip(),
        user_agent=(request.headers.get("User-Agent") or "")[:255],
    )

    raw_token = request.cookies.get(current_app.config.get("AUTH_COOKIE_NAME", "feed_session"))
    sess = validate_session(raw_token)
    if sess:
        ctx.token, ctx.session, ctx.user = raw_token, sess, sess.user
        return ctx

    remember_token = request.cookies.get(current_app.config.get("REMEMBER_COOKIE_NAME", "remember_token"))
    if not remember_token:
        return ctx

    sess = validate_session(remember_token)
    if not sess:
        after_this_request(clear_remember_cookie)
        return ctx

    # silent re-auth from the remember-me cookie rotates the token
    new_token = regenerate_session(sess)
    ctx.token, ctx.session, ctx.user = new_token, sess, sess.user

    @after_this_request
    def _reissue_cookies(resp):
        # skipped when the handler logged the session out
        if ctx.token != new_token:
            return resp
        return set_auth_cookies(resp, new_token, remember=True)

    return ctx


def load_request_context():
    g.ctx = build_request_context()


def current_context() -> RequestContext:
    ctx = getattr(g, "ctx", None)
    if ctx is None:
        ctx = build_request_context()
        g.ctx = ctx
    return ctx


def login_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if not current_context().is_authenticated:
            return jsonify(error="Authentication required"), 401
        return fn(*args, **kwargs)
    return wrapper
