from datetime import datetime
from models.db import db

# columns never sent to the client
SENSITIVE_FIELDS = {
    "password_hash",
    "email_verification_token",
    "password_reset_token",
    "password_reset_expires",
}


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    username = db.Column(db.String(50), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=True)
    last_name = db.Column(db.String(100), nullable=True)
    profile_picture = db.Column(db.String(500), nullable=True)

    email_verified = db.Column(db.Boolean, default=False, nullable=False)
    email_verification_token = db.Column(db.String(128), nullable=True, index=True)
    password_reset_token = db.Column(db.String(128), nullable=True, index=True)
    password_reset_expires = db.Column(db.DateTime, nullable=True)

    # lockout state
    failed_login_attempts = db.Column(db.Integer, default=0, nullable=False)
    locked_until = db.Column(db.DateTime, nullable=True)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    last_login = db.Column(db.DateTime, nullable=True)

    sessions = db.relationship("UserSession", back_populates="user", cascade="all, delete-orphan")
    social_providers = db.relationship("SocialProvider", back_populates="user", cascade="all, delete-orphan")

    def to_dict(self) -> dict:
        data = {}
        for column in self.__table__.columns:
            if column.name in SENSITIVE_FIELDS:
                continue
            value = getattr(self, column.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            data[column.name] = value
        return data

    def public_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
        }
