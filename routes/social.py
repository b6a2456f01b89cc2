import logging
import secrets
from urllib.parse import urlencode

from flask import Blueprint, current_app, flash, redirect, request, session
from sqlalchemy.exc import SQLAlchemyError

from models import db
from security.csrf import clear_token
from security.oauth import OAuthError, authorization_url, complete_login, get_provider
from security.session import create_session, generate_secure_token, set_auth_cookies
from security.bruteforce import reset_attempts
from utils import accounts
from utils.audit import record_login_attempt
from utils.auth_context import current_context

logger = logging.getLogger(__name__)

social_bp = Blueprint("social", __name__, url_prefix="/auth")

STATE_KEY = "oauth_state"
PROVIDER_KEY = "social_auth_provider"
INTENT_KEY = "social_auth_intent"


def _redirect_with(url: str, message: str, category: str):
    flash(message, category)
    flag = "success" if category == "success" else "error"
    return redirect(url + "?" + urlencode({flag: 1, "message": message}))


def _login_error(message: str):
    return _redirect_with(current_app.config.get("LOGIN_PAGE_URL", "/"), message, "error")


@social_bp.get("/social")
def social():
    action = request.args.get("action", "initiate")
    if action == "initiate":
        return initiate()
    if action == "callback":
        return callback()
    return _login_error("Invalid action")


def initiate():
    provider = get_provider(request.args.get("provider"))
    if provider is None:
        return _login_error("Unsupported provider")
    if not provider.is_configured():
        logger.error("OAuth login attempted for unconfigured provider %s", provider.name)
        return _login_error(f"{provider.label} login is not configured")

    intent = request.args.get("intent", "login")
    state = generate_secure_token(32)
    session[STATE_KEY] = state
    session[PROVIDER_KEY] = provider.name
    session[INTENT_KEY] = "register" if intent == "register" else "login"

    return redirect(authorization_url(provider, state))


def _check_state(submitted: str) -> bool:
    # popped so a state value is usable once
    expected = session.pop(STATE_KEY, None)
    if not submitted or not expected:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), submitted.encode("utf-8"))


def callback():
    provider = get_provider(request.args.get("provider") or session.get(PROVIDER_KEY))
    if provider is None:
        return _login_error("Missing provider")

    ctx = current_context()
    try:
        if not _check_state(request.args.get("state", "")):
            raise OAuthError("Invalid state parameter")
        if request.args.get("error"):
            raise OAuthError(f"{provider.label} denied the request: {request.args['error']}")
        code = request.args.get("code", "")
        if not code:
            raise OAuthError("Missing authorization code")

        profile = complete_login(provider, code)
    except OAuthError as exc:
        logger.warning("Social auth error (%s): %s", provider.name, exc)
        return _login_error(f"Login failed: {exc}")

    try:
        user = accounts.create_or_update_social_user(profile)
        reset_attempts(user)
        raw_token = create_session(user.id, ctx)
        record_login_attempt(ctx, user.email, True)
    except accounts.AccountLinkError as exc:
        db.session.rollback()
        return _login_error(f"Login failed: {exc}")
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Error processing social user data from %s", provider.name)
        return _login_error("Login failed: could not process user data")

    intent = session.pop(INTENT_KEY, "login")
    session.pop(PROVIDER_KEY, None)
    clear_token()

    message = "Registration successful!" if intent == "register" else "Login successful!"
    resp = _redirect_with(current_app.config.get("DASHBOARD_URL", "/"), message, "success")
    set_auth_cookies(resp, raw_token)
    logger.info("User %s logged in with %s", user.id, provider.name)
    return resp
