"""
Google and Discord OAuth2 authorization-code flow.

Two outbound calls per login: the code exchange and the profile fetch.
Any failure raises OAuthError; nothing is retried.
"""
import logging
from dataclasses import dataclass
from urllib.parse import urlencode

import requests
from flask import current_app

logger = logging.getLogger(__name__)

USER_AGENT = "feed-auth/1.0"


class OAuthError(Exception):
    """Raised when any step of the provider flow fails."""


@dataclass(frozen=True)
class Provider:
    name: str
    label: str
    authorize_url: str
    token_url: str
    userinfo_url: str
    scope: str

    @property
    def _prefix(self) -> str:
        return self.name.upper()

    @property
    def client_id(self) -> str:
        return current_app.config.get(f"{self._prefix}_CLIENT_ID") or ""

    @property
    def client_secret(self) -> str:
        return current_app.config.get(f"{self._prefix}_CLIENT_SECRET") or ""

    @property
    def redirect_uri(self) -> str:
        return current_app.config.get(f"{self._prefix}_REDIRECT_URI") or ""

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


PROVIDERS = {
    "google": Provider(
        name="google",
        label="Google",
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://www.googleapis.com/oauth2/v3/userinfo",
        scope="openid email profile",
    ),
    "discord": Provider(
        name="discord",
        label="Discord",
        authorize_url="https://discord.com/api/oauth2/authorize",
        token_url="https://discord.com/api/oauth2/token",
        userinfo_url="https://discord.com/api/users/@me",
        scope="identify email",
    ),
}


def get_provider(name: str):
    return PROVIDERS.get((name or "").lower())


def authorization_url(provider: Provider, state: str) -> str:
    params = {
        "client_id": provider.client_id,
        "redirect_uri": provider.redirect_uri,
        "response_type": "code",
        "scope": provider.scope,
        "state": state,
    }
    return provider.authorize_url + "?" + urlencode(params)


def _request_json(method: str, url: str, **kwargs) -> dict:
    headers = kwargs.pop("headers", {})
    headers.setdefault("Accept", "application/json")
    headers.setdefault("User-Agent", USER_AGENT)
    timeout = current_app.config.get("OAUTH_HTTP_TIMEOUT", 10)

    try:
        resp = requests.request(method, url, headers=headers, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        raise OAuthError(f"HTTP request failed: {exc}") from exc

    if resp.status_code >= 400:
        raise OAuthError(f"HTTP request failed with status {resp.status_code}")

    try:
        data = resp.json()
    except ValueError as exc:
        raise OAuthError("Invalid JSON response") from exc

    if not isinstance(data, dict):
        raise OAuthError("Invalid JSON response")
    return data


def exchange_code(provider: Provider, code: str) -> dict:
    data = _request_json(
        "POST",
        provider.token_url,
        data={
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": provider.redirect_uri,
        },
    )
    if not data.get("access_token"):
        raise OAuthError(f"Could not obtain an access token from {provider.label}")
    return data


def fetch_profile(provider: Provider, access_token: str) -> dict:
    data = _request_json(
        "GET",
        provider.userinfo_url,
        headers={"Authorization": f"Bearer {access_token}"},
    )
    if not data.get("email"):
        raise OAuthError(f"Could not obtain user information from {provider.label}")
    return data


def normalize_profile(provider: Provider, info: dict) -> dict:
    """Maps a provider profile onto the fields used to create a local user."""
    if provider.name == "google":
        return {
            "provider": "google",
            "provider_id": str(info.get("sub") or info.get("id") or ""),
            "email": info["email"],
            "first_name": info.get("given_name") or "",
            "last_name": info.get("family_name") or "",
            "username": info["email"].split("@")[0],
            "profile_picture": info.get("picture") or "",
            "email_verified": bool(info.get("email_verified", False)),
        }

    user_id = str(info.get("id") or "")
    username = info.get("username") or ""
    discriminator = str(info.get("discriminator") or "")
    # new-style Discord accounts report discriminator "0"
    if discriminator and discriminator != "0":
        username = f"{username}_{discriminator[:2]}"
    avatar = info.get("avatar")
    return {
        "provider": "discord",
        "provider_id": user_id,
        "email": info["email"],
        "first_name": info.get("global_name") or info.get("username") or "",
        "last_name": "",
        "username": username,
        "profile_picture": f"https://cdn.discordapp.com/avatars/{user_id}/{avatar}.png" if avatar else "",
        "email_verified": bool(info.get("verified", False)),
    }


def complete_login(provider: Provider, code: str) -> dict:
    token = exchange_code(provider, code)
    info = fetch_profile(provider, token["access_token"])
    profile = normalize_profile(provider, info)
    if not profile["provider_id"]:
        raise OAuthError(f"{provider.label} did not return an account id")
    logger.info("OAuth profile fetched from %s for %s", provider.name, profile["email"])
    return profile
