from datetime import datetime
from models.db import db


class LoginAttempt(db.Model):
    __tablename__ = "login_attempts"

    id = db.Column(db.Integer, primary_key=True)

    ip_address = db.Column(db.String(64), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    success = db.Column(db.Boolean, default=False, nullable=False)
    user_agent = db.Column(db.String(255), nullable=True)

    attempted_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
