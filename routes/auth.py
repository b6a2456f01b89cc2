import ipaddress
import logging
import re
from functools import wraps

from flask import Blueprint, current_app, flash, get_flashed_messages, jsonify, request, session
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from models import db
from security import rate_limit
from security.bruteforce import is_locked, register_failure, reset_attempts
from security.csrf import clear_token, csrf_protected, generate_token
from security.password import needs_rehash, verify_password
from security.password_policy import policy_message, too_long_message, validate_password
from security.permissions import require_permission
from security.rate_limit import rate_limited
from security.session import (
    check_suspicious_activity,
    clear_auth_cookies,
    create_session,
    destroy_all_user_sessions,
    destroy_session,
    extend_session,
    get_session_stats,
    get_user_sessions,
    set_auth_cookies,
)
from utils import accounts
from utils.audit import record_login_attempt
from utils.auth_context import current_context, login_required
from utils.emailer import send_password_reset_email, send_verification_email
from utils.validation import clean, is_valid_email, is_valid_username, normalize_email, username_error

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

ACTIONS = {}

_FALSE_FLAGS = {"", "0", "false", "off", "no"}


def _action_key(name: str) -> str:
    return re.sub(r"[-_]", "", name or "").lower()


def action(name: str, methods=("POST",)):
    """
    Registers a handler on the front controller under `name`.
    Requests with any other method get 405.
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if request.method not in methods:
                return jsonify(error="Method not allowed"), 405
            return fn(*args, **kwargs)
        ACTIONS[_action_key(name)] = wrapper
        return wrapper
    return decorator


def _payload() -> dict:
    if request.form:
        return request.form.to_dict()
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _flag(data: dict, name: str) -> bool:
    if name not in data:
        return False
    value = data.get(name)
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in _FALSE_FLAGS


def _text(data: dict, name: str) -> str:
    value = data.get(name)
    return value if isinstance(value, str) else ""


@auth_bp.route("/api", methods=["GET", "POST"])
def dispatch():
    name = request.args.get("action") or request.form.get("action") or ""
    handler = ACTIONS.get(_action_key(name))
    if handler is None:
        return jsonify(error="Invalid action"), 400
    return handler()


@auth_bp.get("/csrf")
def csrf_token():
    token = generate_token(current_context())
    return jsonify(
        success=True,
        token=token,
        token_name=current_app.config.get("CSRF_TOKEN_NAME", "_token"),
    ), 200


@action("login")
@csrf_protected
@rate_limited("login", "RATE_LIMIT_LOGIN", message="Too many login attempts. Please try again later.")
def login():
    data = _payload()
    email = normalize_email(data.get("email"))
    password = _text(data, "password")
    remember = _flag(data, "remember_me")

    if not email or not password:
        return jsonify(error="Email and password are required"), 400
    if not is_valid_email(email):
        return jsonify(error="Invalid email format"), 400

    ctx = current_context()
    try:
        user = accounts.find_by_email(email)
        if not user:
            record_login_attempt(ctx, email, False)
            return jsonify(error="Invalid credentials"), 401

        locked, seconds_left = is_locked(user)
        if locked:
            return jsonify(
                error="Account is temporarily locked due to too many failed attempts",
                retry_after_seconds=seconds_left,
            ), 423

        if not verify_password(password, user.password_hash):
            fail_count, locked_now = register_failure(user)
            record_login_attempt(ctx, email, False)
            logger.info("Failed login for user %s (%s failures, locked=%s)", user.id, fail_count, locked_now)
            return jsonify(error="Invalid credentials"), 401

        if not user.email_verified:
            return jsonify(error="Please verify your email address before logging in"), 403

        if needs_rehash(user.password_hash):
            accounts.change_password(user, password)

        reset_attempts(user)
        record_login_attempt(ctx, email, True)
        raw_token = create_session(user.id, ctx, remember=remember)

        if check_suspicious_activity(user.id):
            logger.warning("User %s opened sessions from many IPs within the last hour", user.id)

    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Login error")
        return jsonify(error="An error occurred during login"), 500

    # the pre-login token is replaced by the one stored on the session row
    clear_token()

    resp = jsonify(
        success=True,
        message="Login successful",
        user=user.public_dict(),
        csrf_token=ctx.session.csrf_token,
    )
    set_auth_cookies(resp, raw_token, remember=remember)
    logger.info("User %s logged in from %s", user.id, ctx.ip)
    return resp, 200


def _validate_registration(data: dict) -> dict:
    errors = {}

    problem = username_error(data["username"])
    if problem:
        errors["username"] = problem

    if not data["email"]:
        errors["email"] = "Email is required"
    elif not is_valid_email(data["email"]):
        errors["email"] = "Invalid email format"

    if not data["password"]:
        errors["password"] = "Password is required"
    else:
        valid, problems = validate_password(data["password"])
        if not valid:
            too_long = too_long_message()
            errors["password"] = too_long if too_long in problems else policy_message()

    if data["password"] != data["password_confirm"]:
        errors["password_confirm"] = "Passwords do not match"

    for field in ("first_name", "last_name"):
        if len(data[field]) > accounts.PROFILE_FIELDS[field]:
            errors[field] = f"{field.replace('_', ' ').capitalize()} is too long"

    if not data["terms_accepted"]:
        errors["terms"] = "You must accept the terms and conditions"

    return errors


def _conflict(field: str, message: str):
    return jsonify(error=message, field=field, details={field: message}), 409


@action("register")
@csrf_protected
@rate_limited("register", "RATE_LIMIT_REGISTER", message="Too many registration attempts. Please try again later.")
def register():
    data = _payload()
    user_data = {
        "username": clean(data.get("username")),
        "email": normalize_email(data.get("email")),
        "password": _text(data, "password"),
        "password_confirm": _text(data, "password_confirm"),
        "first_name": clean(data.get("first_name")),
        "last_name": clean(data.get("last_name")),
        "terms_accepted": _flag(data, "terms_accepted"),
    }

    errors = _validate_registration(user_data)
    if errors:
        return jsonify(error="Validation failed", details=errors), 400

    try:
        if accounts.email_exists(user_data["email"]):
            return _conflict("email", "Email address is already registered")
        if accounts.username_exists(user_data["username"]):
            return _conflict("username", "Username is already taken")

        user = accounts.create_user(
            username=user_data["username"],
            email=user_data["email"],
            password=user_data["password"],
            first_name=user_data["first_name"],
            last_name=user_data["last_name"],
        )
    except IntegrityError:
        # lost a race against a concurrent registration
        db.session.rollback()
        if accounts.email_exists(user_data["email"]):
            return _conflict("email", "Email address is already registered")
        return _conflict("username", "Username is already taken")
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Registration error")
        return jsonify(error="An error occurred during registration"), 500

    sent, _ = send_verification_email(user)
    logger.info("User %s registered (verification email sent=%s)", user.id, sent)

    return jsonify(
        success=True,
        message="Registration successful. Please check your email to verify your account.",
        user_id=user.id,
    ), 201


@action("logout")
@csrf_protected
def logout():
    ctx = current_context()
    remember_token = request.cookies.get(current_app.config.get("REMEMBER_COOKIE_NAME", "remember_token"))
    user_id = ctx.user.id if ctx.user else None

    try:
        destroy_session(ctx.token)
        if remember_token and remember_token != ctx.token:
            destroy_session(remember_token)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Logout error")
        return jsonify(error="An error occurred during logout"), 500

    ctx.token = ctx.session = ctx.user = None
    session.clear()

    resp = jsonify(success=True, message="Logout successful")
    clear_auth_cookies(resp)
    logger.info("User %s logged out", user_id)
    return resp, 200


@action("getCurrentUser", methods=("GET", "POST"))
@login_required
def get_current_user():
    return jsonify(success=True, user=current_context().user.to_dict()), 200


@action("checkEmail")
def check_email():
    email = normalize_email(_payload().get("email"))
    if not email:
        return jsonify(error="Email is required"), 400
    if not is_valid_email(email):
        return jsonify(error="Invalid email format"), 400

    try:
        exists = accounts.email_exists(email)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Email check error")
        return jsonify(error="Check failed"), 500
    return jsonify(exists=exists), 200


@action("checkUsername")
def check_username():
    username = clean(_payload().get("username"))
    if not username:
        return jsonify(error="Username is required"), 400
    if not is_valid_username(username):
        return jsonify(error="Invalid username format"), 400

    try:
        exists = accounts.username_exists(username)
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Username check error")
        return jsonify(error="Check failed"), 500
    return jsonify(exists=exists), 200


@action("getFlashMessage", methods=("GET", "POST"))
def get_flash_message():
    messages = get_flashed_messages(with_categories=True)
    if not messages:
        return jsonify(message=None), 200
    category, message = messages[-1]
    return jsonify(message=message, type=category), 200


@action("verifyEmail", methods=("GET", "POST"))
def verify_email():
    token = clean(request.args.get("token") or _payload().get("token"))
    user = accounts.verify_email(token)
    if not user:
        return jsonify(error="Invalid or expired verification token"), 400

    flash("Your email address has been verified. You can now log in.", "success")
    logger.info("User %s verified their email", user.id)
    return jsonify(success=True, message="Email verified"), 200


@action("requestPasswordReset")
@csrf_protected
@rate_limited("password_reset", "RATE_LIMIT_PASSWORD_RESET")
def request_password_reset():
    email = normalize_email(_payload().get("email"))
    if not is_valid_email(email):
        return jsonify(error="Invalid email format"), 400

    user = accounts.find_by_email(email)
    if user:
        token = accounts.set_password_reset_token(user)
        send_password_reset_email(user, token)
        logger.info("Password reset requested for user %s", user.id)

    # same answer whether or not the account exists
    return jsonify(
        success=True,
        message="If that email is registered, a password reset link has been sent.",
    ), 200


@action("resetPassword")
@csrf_protected
def reset_password():
    data = _payload()
    token = clean(data.get("token"))
    password = _text(data, "password")

    valid, errors = validate_password(password)
    if not valid:
        return jsonify(error="Password does not meet policy", details=errors), 400
    if password != _text(data, "password_confirm"):
        return jsonify(error="Passwords do not match"), 400

    user = accounts.reset_password(token, password)
    if not user:
        return jsonify(error="Invalid or expired reset token"), 400

    revoked = destroy_all_user_sessions(user.id)
    logger.info("User %s reset their password (%s sessions revoked)", user.id, revoked)
    return jsonify(success=True, message="Password has been reset"), 200


@action("changePassword")
@login_required
@csrf_protected
def change_password():
    ctx = current_context()
    data = _payload()
    new_password = _text(data, "new_password")

    if not verify_password(_text(data, "current_password"), ctx.user.password_hash):
        return jsonify(error="Invalid current password"), 401

    valid, errors = validate_password(new_password)
    if not valid:
        return jsonify(error="Password does not meet policy", details=errors), 400

    accounts.change_password(ctx.user, new_password)
    revoked = destroy_all_user_sessions(ctx.user.id, keep=ctx.session)
    logger.info("User %s changed their password", ctx.user.id)
    return jsonify(success=True, message="Password updated", revoked_sessions=revoked), 200


@action("updateProfile")
@login_required
@csrf_protected
def update_profile():
    ctx = current_context()
    data = _payload()

    changes = {}
    for field, max_len in accounts.PROFILE_FIELDS.items():
        if field not in data:
            continue
        value = clean(data.get(field))
        if len(value) > max_len:
            return jsonify(error=f"Invalid {field}"), 400
        if field == "profile_picture" and value and not value.startswith(("https://", "http://")):
            return jsonify(error="Invalid profile_picture"), 400
        changes[field] = value

    if not accounts.update_profile(ctx.user, changes):
        return jsonify(error="No profile fields provided"), 400

    return jsonify(success=True, message="Profile updated", user=ctx.user.to_dict()), 200


@action("getSessions", methods=("GET",))
@login_required
def get_sessions():
    ctx = current_context()
    sessions = []
    for s in get_user_sessions(ctx.user.id):
        row = s.to_dict()
        row["current"] = s.id == ctx.session.id
        sessions.append(row)

    return jsonify(
        sessions=sessions,
        stats=get_session_stats(ctx.user.id),
        suspicious=check_suspicious_activity(ctx.user.id),
    ), 200


@action("extendSession")
@login_required
@csrf_protected
def extend_current_session():
    expires_at = extend_session(current_context().session)
    return jsonify(success=True, expires_at=expires_at.isoformat()), 200


@action("getRateLimitStats", methods=("GET",))
@require_permission("admin")
def get_rate_limit_stats():
    try:
        hours = int(request.args.get("hours", 24))
    except ValueError:
        return jsonify(error="Invalid hours"), 400
    return jsonify(stats=rate_limit.get_stats(hours)), 200


def _ip_from_payload(data: dict):
    ip = clean(data.get("ip"))
    try:
        ipaddress.ip_address(ip)
    except ValueError:
        return None
    return ip


@action("blockIp")
@require_permission("admin")
@csrf_protected
def block_ip():
    data = _payload()
    ip = _ip_from_payload(data)
    if not ip:
        return jsonify(error="Invalid IP address"), 400
    try:
        duration = int(data.get("duration") or current_app.config.get("BLOCK_IP_DEFAULT_SECONDS", 3600))
    except (TypeError, ValueError):
        return jsonify(error="Invalid duration"), 400
    if duration <= 0:
        return jsonify(error="Invalid duration"), 400

    until = rate_limit.block_ip(ip, duration)
    return jsonify(success=True, ip=ip, blocked_until=until.isoformat()), 200


@action("unblockIp")
@require_permission("admin")
@csrf_protected
def unblock_ip():
    ip = _ip_from_payload(_payload())
    if not ip:
        return jsonify(error="Invalid IP address"), 400
    return jsonify(success=True, ip=ip, unblocked=rate_limit.unblock_ip(ip)), 200
