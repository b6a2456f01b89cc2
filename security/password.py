import bcrypt
from flask import current_app

# bcrypt only looks at the first 72 bytes; bcrypt>=5 refuses longer input
MAX_PASSWORD_BYTES = 72


def _rounds() -> int:
    try:
        return int(current_app.config.get("BCRYPT_ROUNDS", 12))
    except RuntimeError:
        return 12


def encoded_length(plain_password: str) -> int:
    return len(plain_password.encode("utf-8"))


def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")
    if encoded_length(plain_password) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")

    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), bcrypt.gensalt(rounds=_rounds()))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """
    False for any mismatch, malformed hash or over-long input.
    Over-long input can never match since hash_password refuses it.
    """
    if not plain_password or not password_hash:
        return False
    if encoded_length(plain_password) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def needs_rehash(password_hash: str) -> bool:
    """True when the stored hash was made with a different cost than BCRYPT_ROUNDS."""
    # "$2b$12$<salt+hash>"
    parts = (password_hash or "").split("$")
    if len(parts) < 4 or not parts[2].isdigit():
        return True
    return int(parts[2]) != _rounds()
