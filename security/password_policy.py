import re
from typing import List, Tuple

from flask import current_app

from security.password import MAX_PASSWORD_BYTES, encoded_length

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")

_DEFAULTS = {
    "PASSWORD_MIN_LEN": 8,
    "PASSWORD_MAX_LEN": MAX_PASSWORD_BYTES,
}

POLICY_MESSAGE = "Password must be at least {min_len} characters and contain uppercase, lowercase, and number"
TOO_LONG_MESSAGE = "Password must be at most {max_len} bytes"


def _cfg(name: str):
    try:
        return current_app.config.get(name, _DEFAULTS[name])
    except RuntimeError:
        # outside app context (CLI helpers, unit tests)
        return _DEFAULTS[name]


def max_length() -> int:
    # never above what bcrypt can hash
    return min(int(_cfg("PASSWORD_MAX_LEN")), MAX_PASSWORD_BYTES)


def validate_password(pw: str) -> Tuple[bool, List[str]]:
    errors: List[str] = []

    if not isinstance(pw, str):
        return False, ["Password must be a string"]

    min_len = int(_cfg("PASSWORD_MIN_LEN"))

    if len(pw) < min_len:
        errors.append(f"Password must be at least {min_len} characters")
    # measured in UTF-8 bytes, the unit bcrypt limits
    if encoded_length(pw) > max_length():
        errors.append(too_long_message())
    if not _UPPER.search(pw):
        errors.append("Password must include at least 1 uppercase letter")
    if not _LOWER.search(pw):
        errors.append("Password must include at least 1 lowercase letter")
    if not _DIGIT.search(pw):
        errors.append("Password must include at least 1 number")

    return (len(errors) == 0), errors


def too_long_message() -> str:
    return TOO_LONG_MESSAGE.format(max_len=max_length())


def policy_message() -> str:
    return POLICY_MESSAGE.format(min_len=int(_cfg("PASSWORD_MIN_LEN")))
