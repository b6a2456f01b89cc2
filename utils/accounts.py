import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.social_provider import SocialProvider
from models.user import User
from security.password import hash_password
from security.session import generate_secure_token
from utils.validation import USERNAME_MAX_LEN, normalize_email, slugify_username

logger = logging.getLogger(__name__)

PROFILE_FIELDS = {
    "first_name": 100,
    "last_name": 100,
    "profile_picture": 500,
}


def find_by_email(email: str) -> Optional[User]:
    return User.query.filter_by(email=email, is_active=True).first()


def find_by_username(username: str) -> Optional[User]:
    return User.query.filter_by(username=username, is_active=True).first()


def find_by_id(user_id: int) -> Optional[User]:
    return User.query.filter_by(id=user_id, is_active=True).first()


def email_exists(email: str) -> bool:
    return db.session.query(User.id).filter(User.email == email).first() is not None


def username_exists(username: str) -> bool:
    return db.session.query(User.id).filter(User.username == username).first() is not None


def create_user(username: str, email: str, password: str, first_name=None, last_name=None,
                email_verified: bool = False) -> User:
    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        first_name=first_name or None,
        last_name=last_name or None,
        email_verified=email_verified,
        email_verification_token=None if email_verified else generate_secure_token(32),
    )
    db.session.add(user)
    db.session.commit()
    return user


def verify_email(token: str) -> Optional[User]:
    if not token:
        return None
    user = User.query.filter_by(email_verification_token=token, email_verified=False).first()
    if not user:
        return None
    user.email_verified = True
    user.email_verification_token = None
    db.session.commit()
    return user


def update_profile(user: User, data: dict) -> bool:
    """Applies whitelisted profile fields. Returns False when nothing changed."""
    changed = False
    for field in PROFILE_FIELDS:
        if field in data:
            setattr(user, field, data[field] or None)
            changed = True
    if changed:
        db.session.commit()
    return changed


def change_password(user: User, new_password: str):
    user.password_hash = hash_password(new_password)
    db.session.commit()


def set_password_reset_token(user: User) -> str:
    token = generate_secure_token(32)
    ttl = current_app.config.get("PASSWORD_RESET_TTL_SECONDS", 3600)
    user.password_reset_token = token
    user.password_reset_expires = datetime.utcnow() + timedelta(seconds=ttl)
    db.session.commit()
    return token


def reset_password(token: str, new_password: str) -> Optional[User]:
    if not token:
        return None
    user = (
        User.query
        .filter(
            User.password_reset_token == token,
            User.password_reset_expires > datetime.utcnow(),
        )
        .first()
    )
    if not user:
        return None
    user.password_hash = hash_password(new_password)
    user.password_reset_token = None
    user.password_reset_expires = None
    # a reset also clears any lockout
    user.failed_login_attempts = 0
    user.locked_until = None
    db.session.commit()
    return user


def unique_username(value: str) -> str:
    base = slugify_username(value)
    username = base
    i = 1
    while username_exists(username):
        i += 1
        username = f"{base}{i}"[:USERNAME_MAX_LEN]
    return username


class AccountLinkError(Exception):
    """Raised when an OAuth profile may not be attached to a local account."""


def create_or_update_social_user(profile: dict) -> User:
    """
    Finds or creates the local user for an OAuth profile and upserts the
    provider link. Runs as one transaction.

    Lookup order: an existing provider link, then an account with the same
    email. Linking by email requires a provider-verified email.
    """
    email = normalize_email(profile["email"])
    try:
        link = SocialProvider.query.filter_by(
            provider_name=profile["provider"],
            provider_id=profile["provider_id"],
        ).first()
        user = link.user if link is not None and link.user.is_active else None

        if user is None:
            user = find_by_email(email)
            if user is not None and not profile.get("email_verified"):
                logger.warning(
                    "Refusing to link unverified %s email to user %s", profile["provider"], user.id
                )
                raise AccountLinkError(
                    f"Your {profile['provider'].capitalize()} email is not verified"
                )

        if user is None:
            user = User(
                username=unique_username(profile.get("username") or email),
                email=email,
                # random local password, social users log in through the provider
                password_hash=hash_password(generate_secure_token(32)),
                first_name=profile.get("first_name") or None,
                last_name=profile.get("last_name") or None,
                profile_picture=profile.get("profile_picture") or None,
                email_verified=bool(profile.get("email_verified")),
            )
            db.session.add(user)
            db.session.flush()  # ensures user.id is available

        if link is None:
            link = SocialProvider(
                provider_name=profile["provider"],
                provider_id=profile["provider_id"],
            )
            db.session.add(link)

        link.user_id = user.id
        link.provider_email = email
        link.provider_data = json.dumps(profile)

        db.session.commit()
        return user
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not store social user for %s", profile.get("provider"))
        raise
