import logging
import smtplib
from email.message import EmailMessage
from urllib.parse import urlencode

from flask import current_app

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, body: str):
    host = current_app.config.get("SMTP_HOST")
    port = current_app.config.get("SMTP_PORT", 587)
    username = current_app.config.get("SMTP_USERNAME")
    password = current_app.config.get("SMTP_PASSWORD")
    from_email = current_app.config.get("SMTP_FROM_EMAIL") or username
    use_tls = current_app.config.get("SMTP_USE_TLS", True)

    if not host or not from_email:
        logger.info("Email to %s not sent: SMTP is not configured", to_email)
        return False, "Email not configured"

    msg = EmailMessage()
    msg["From"] = from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.set_content(body)

    try:
        with smtplib.SMTP(host, port, timeout=10) as server:
            if use_tls:
                server.starttls()
            if username and password:
                server.login(username, password)
            server.send_message(msg)
        return True, None
    except (smtplib.SMTPException, OSError) as exc:
        logger.error("Sending email to %s failed: %s", to_email, exc)
        return False, str(exc)


def _action_link(action: str, token: str) -> str:
    base = current_app.config.get("APP_URL", "").rstrip("/")
    return f"{base}/auth/api?" + urlencode({"action": action, "token": token})


def send_verification_email(user):
    link = _action_link("verifyEmail", user.email_verification_token)
    body = (
        f"Hi {user.first_name or user.username},\n\n"
        "Please confirm your email address by opening the link below:\n\n"
        f"{link}\n"
    )
    return send_email(user.email, "Verify your email address", body)


def send_password_reset_email(user, token: str):
    base = current_app.config.get("APP_URL", "").rstrip("/")
    page = current_app.config.get("RESET_PASSWORD_PAGE_URL", "/reset-password")
    link = f"{base}{page}?" + urlencode({"token": token})
    body = (
        f"Hi {user.first_name or user.username},\n\n"
        "Someone asked to reset the password for your account. "
        "Use the token below (valid for one hour) or open the link:\n\n"
        f"{token}\n{link}\n\n"
        "If this wasn't you, you can ignore this email.\n"
    )
    return send_email(user.email, "Reset your password", body)
