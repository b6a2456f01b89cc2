import logging

import click
from flask import Flask, jsonify, request
from flask_migrate import Migrate
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException

from config import Config
from models import db
from routes import auth_bp, health_bp, social_bp
from security import rate_limit
from utils.auth_context import client_ip, load_request_context

logger = logging.getLogger(__name__)

migrate = Migrate()


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    configure_logging(app)

    # Register routes
    app.register_blueprint(health_bp)
    app.register_blueprint(auth_bp)
    app.register_blueprint(social_bp)

    # Database init; Flask-SQLAlchemy removes the scoped session after each request
    db.init_app(app)

    # Migrations
    migrate.init_app(app, db)

    @app.before_request
    def _cors_preflight():
        if request.method == "OPTIONS":
            return "", 204

    @app.before_request
    def _reject_blocked_ip():
        if request.path == "/health":
            return None
        ip = client_ip()
        try:
            blocked = rate_limit.is_blocked(ip)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("IP block check failed for %s, allowing request", ip)
            return None
        if blocked:
            return jsonify(error="Access denied"), 403

    @app.before_request
    def _load_context():
        load_request_context()

    @app.after_request
    def add_cors_headers(resp):
        origin = request.headers.get("Origin")
        if origin and origin in app.config.get("ALLOWED_ORIGINS", []):
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Credentials"] = "true"
            resp.headers.add("Vary", "Origin")
        resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Requested-With, X-CSRF-Token"
        return resp

    @app.after_request
    def add_security_headers(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["Referrer-Policy"] = "no-referrer"
        resp.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        return resp

    @app.errorhandler(SQLAlchemyError)
    def handle_db_error(exc):
        db.session.rollback()
        logger.error("Database error on %s %s", request.method, request.path, exc_info=exc)
        return jsonify(error="An internal error occurred"), 500

    @app.errorhandler(HTTPException)
    def handle_http_error(exc):
        return jsonify(error=exc.description), exc.code

    register_cli(app)

    return app


def configure_logging(app):
    level_name = str(app.config.get("LOG_LEVEL", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logging.getLogger().setLevel(level)

#-------------------------


def register_cli(app):
    from security.session import clean_expired_sessions
    from utils import accounts

    @app.cli.command("cleanup-sessions")
    def cleanup_sessions():
        """Delete expired sessions and lapsed IP blocks."""
        count = clean_expired_sessions()
        click.echo(f"Removed {count} expired session(s)")
        count = rate_limit.clean_expired_blocks()
        click.echo(f"Removed {count} expired IP block(s)")

    @app.cli.command("block-ip")
    @click.argument("ip")
    @click.option("--duration", default=3600, show_default=True, help="Seconds to block for.")
    def block_ip(ip, duration):
        """Block an IP address from the API."""
        until = rate_limit.block_ip(ip, duration)
        click.echo(f"{ip} blocked until {until.isoformat()}")

    @app.cli.command("unblock-ip")
    @click.argument("ip")
    def unblock_ip(ip):
        """Lift a block on an IP address."""
        if rate_limit.unblock_ip(ip):
            click.echo(f"{ip} unblocked")
        else:
            click.echo(f"{ip} was not blocked")

    @app.cli.command("verify-email")
    @click.argument("email")
    def verify_email(email):
        """Mark a user's email as verified (bootstrap)."""
        user = accounts.find_by_email(email.strip().lower())
        if not user:
            click.echo("User not found")
            return
        user.email_verified = True
        user.email_verification_token = None
        db.session.commit()
        click.echo(f"{user.email} verified")

#-------------------------


if __name__ == "__main__":
    app = create_app()
    # Run locally
    app.run(host="127.0.0.1", port=5002)
