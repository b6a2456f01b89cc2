from datetime import datetime
from models.db import db


class SocialProvider(db.Model):
    __tablename__ = "social_providers"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    provider_name = db.Column(db.String(32), nullable=False)     # google, discord
    provider_id = db.Column(db.String(255), nullable=False)
    provider_email = db.Column(db.String(255), nullable=True)
    provider_data = db.Column(db.Text, nullable=True)             # raw profile JSON

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = db.relationship("User", back_populates="social_providers")

    __table_args__ = (
        db.UniqueConstraint("provider_name", "provider_id", name="uq_social_provider_identity"),
    )
