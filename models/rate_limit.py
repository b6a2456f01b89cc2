from models.db import db

# action_type of the synthetic row that bans an IP until window_start
BLOCKED_ACTION = "blocked"


class RateLimit(db.Model):
    __tablename__ = "rate_limits"

    id = db.Column(db.Integer, primary_key=True)
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    action_type = db.Column(db.String(50), nullable=False)

    attempts = db.Column(db.Integer, default=1, nullable=False)
    window_start = db.Column(db.DateTime, nullable=False, index=True)

    __table_args__ = (
        db.UniqueConstraint("ip_address", "action_type", name="uq_rate_limits_ip_action"),
    )
