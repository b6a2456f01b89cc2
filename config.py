import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as feed_auth.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "feed_auth.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

    # Public URLs
    APP_URL = os.getenv("APP_URL", "http://localhost:5002")
    LOGIN_PAGE_URL = os.getenv("LOGIN_PAGE_URL", "/auth/frontend/pages/login.html")
    DASHBOARD_URL = os.getenv("DASHBOARD_URL", "/dashboard")
    RESET_PASSWORD_PAGE_URL = os.getenv("RESET_PASSWORD_PAGE_URL", "/auth/frontend/pages/reset-password.html")

    # Comma separated list of origins allowed to call the API with credentials
    ALLOWED_ORIGINS = [
        o.strip()
        for o in os.getenv(
            "ALLOWED_ORIGINS",
            "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5500",
        ).split(",")
        if o.strip()
    ]

    # Cookie names for our auth token
    AUTH_COOKIE_NAME = "feed_session"
    REMEMBER_COOKIE_NAME = "remember_token"

    # 24 hours session lifetime, 30 days when "remember me" is ticked
    SESSION_LIFETIME_SECONDS = 24 * 60 * 60
    REMEMBER_LIFETIME_SECONDS = 30 * 24 * 60 * 60

    # Session/cookie security defaults (frontend is served cross-site)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "None")
    SESSION_COOKIE_SECURE = _env_bool("SESSION_COOKIE_SECURE", "true")

    # CSRF form field name (header X-CSRF-Token is accepted too)
    CSRF_TOKEN_NAME = "_token"

    # Brute-force protection
    MAX_LOGIN_ATTEMPTS = 5
    LOCKOUT_SECONDS = 15 * 60

    # Per-IP rate limits (attempts per window)
    RATE_LIMIT_WINDOW_SECONDS = 5 * 60
    RATE_LIMIT_LOGIN = 5
    RATE_LIMIT_REGISTER = 3
    RATE_LIMIT_PASSWORD_RESET = 3
    BLOCK_IP_DEFAULT_SECONDS = 60 * 60

    # Use X-Forwarded-For / X-Real-IP when behind a proxy
    TRUST_PROXY_HEADERS = _env_bool("TRUST_PROXY_HEADERS", "true")

    # More than this many distinct IPs creating sessions within an hour is flagged
    SUSPICIOUS_IP_THRESHOLD = 3

    # Password policy
    PASSWORD_MIN_LEN = 8
    PASSWORD_MAX_LEN = 72  # UTF-8 bytes, bcrypt's input limit
    BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))
    PASSWORD_RESET_TTL_SECONDS = 60 * 60

    # Usernames granted the "admin" permission
    ADMIN_USERNAMES = [
        u.strip() for u in os.getenv("ADMIN_USERNAMES", "admin").split(",") if u.strip()
    ]

    # OAuth providers
    GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_REDIRECT_URI = os.getenv(
        "GOOGLE_REDIRECT_URI",
        APP_URL + "/auth/social?action=callback&provider=google",
    )
    DISCORD_CLIENT_ID = os.getenv("DISCORD_CLIENT_ID", "")
    DISCORD_CLIENT_SECRET = os.getenv("DISCORD_CLIENT_SECRET", "")
    DISCORD_REDIRECT_URI = os.getenv(
        "DISCORD_REDIRECT_URI",
        APP_URL + "/auth/social?action=callback&provider=discord",
    )
    OAUTH_HTTP_TIMEOUT = int(os.getenv("OAUTH_HTTP_TIMEOUT", "10"))

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", "true")

    # Basic app settings
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    DEBUG = False
