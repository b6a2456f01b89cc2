import re

_EMAIL_RE = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$")
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_]+$")

USERNAME_MIN_LEN = 3
USERNAME_MAX_LEN = 50


def clean(value) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def normalize_email(value) -> str:
    return clean(value).lower()


def is_valid_email(email: str) -> bool:
    return isinstance(email, str) and len(email) <= 255 and bool(_EMAIL_RE.match(email))


def is_valid_username(username: str) -> bool:
    return (
        isinstance(username, str)
        and USERNAME_MIN_LEN <= len(username) <= USERNAME_MAX_LEN
        and bool(_USERNAME_RE.match(username))
    )


def username_error(username: str):
    """Returns a human readable problem with the username, or None."""
    if not username:
        return "Username is required"
    if len(username) < USERNAME_MIN_LEN:
        return f"Username must be at least {USERNAME_MIN_LEN} characters"
    if len(username) > USERNAME_MAX_LEN:
        return f"Username must be at most {USERNAME_MAX_LEN} characters"
    if not _USERNAME_RE.match(username):
        return "Username can only contain letters, numbers, and underscores"
    return None


def slugify_username(value: str) -> str:
    base = re.sub(r"[^A-Za-z0-9_]", "_", value or "").strip("_")
    base = base[: USERNAME_MAX_LEN - 6]
    if len(base) < USERNAME_MIN_LEN:
        base = (base + "user")[:USERNAME_MAX_LEN - 6]
    return base
