from functools import wraps
from flask import current_app, jsonify

from utils.auth_context import current_context

ADMIN_PERMISSIONS = {"admin", "delete_user"}
USER_PERMISSIONS = {"edit_profile"}


def can(user, permission: str) -> bool:
    if user is None:
        return False
    if permission in USER_PERMISSIONS:
        return True
    if permission in ADMIN_PERMISSIONS:
        return user.username in current_app.config.get("ADMIN_USERNAMES", ["admin"])
    return False


def require_permission(permission: str):
    """
    Usage: @require_permission("admin")
    """
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            user = current_context().user
            if user is None:
                return jsonify(error="Authentication required"), 401
            if not can(user, permission):
                return jsonify(error="Insufficient permissions"), 403
            return fn(*args, **kwargs)
        return wrapper
    return decorator
