"""Google OAuth helpers."""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from calsync.config import get_settings
from calsync.errors import CredentialRefreshError, ProviderUnavailableError

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


def get_oauth_credentials() -> tuple[str, str]:
    """Get the OAuth client id and secret from settings."""
    settings = get_settings()
    if not settings.google_client_id or not settings.google_client_secret:
        raise ValueError("Google OAuth client is not configured")
    return settings.google_client_id, settings.google_client_secret


def get_scopes() -> list[str]:
    """Requested OAuth scopes."""
    return get_settings().google_scopes.split()


def build_auth_url(
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    state: str,
    login_hint: Optional[str] = None,
    prompt: str = "consent"
) -> str:
    """Build Google OAuth authorization URL."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "access_type": "offline",
        "state": state,
        "prompt": prompt,
    }

    if login_hint:
        params["login_hint"] = login_hint

    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def _oauth_error_code(response: httpx.Response) -> str:
    """Extract the OAuth ``error`` code without echoing the response body."""
    try:
        return str(response.json().get("error", "unknown"))
    except ValueError:
        return "unknown"


async def exchange_code_for_tokens(code: str, redirect_uri: str) -> dict:
    """Exchange authorization code for tokens."""
    client_id, client_secret = get_oauth_credentials()
    settings = get_settings()

    try:
        async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "redirect_uri": redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
    except httpx.TransportError as e:
        logger.warning(f"Token endpoint unreachable: {type(e).__name__}")
        raise ProviderUnavailableError("Token endpoint unreachable") from e

    if response.status_code != 200:
        error_code = _oauth_error_code(response)
        logger.error(f"Token exchange failed: HTTP {response.status_code} ({error_code})")
        raise ValueError(f"Token exchange failed: {error_code}")

    return response.json()


async def refresh_access_token(
    refresh_token: str,
    client_id: Optional[str] = None,
    client_secret: Optional[str] = None
) -> dict:
    """
    Exchange a refresh token for a new access token.

    Any non-2xx answer from the token endpoint is a hard refresh failure.
    Transport errors are reported as a retryable provider outage.
    """
    if not client_id or not client_secret:
        client_id, client_secret = get_oauth_credentials()
    settings = get_settings()

    try:
        async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "refresh_token": refresh_token,
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "grant_type": "refresh_token",
                },
            )
    except httpx.TransportError as e:
        logger.warning(f"Token endpoint unreachable: {type(e).__name__}")
        raise ProviderUnavailableError("Token endpoint unreachable") from e

    if not response.is_success:
        error_code = _oauth_error_code(response)
        logger.error(f"Token refresh failed: HTTP {response.status_code} ({error_code})")
        raise CredentialRefreshError(f"Token refresh rejected: {error_code}")

    return response.json()


async def get_user_info(access_token: str) -> dict:
    """Get user info from Google."""
    settings = get_settings()

    try:
        async with httpx.AsyncClient(timeout=settings.provider_timeout_seconds) as client:
            response = await client.get(
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
    except httpx.TransportError as e:
        logger.warning(f"Userinfo endpoint unreachable: {type(e).__name__}")
        raise ProviderUnavailableError("Userinfo endpoint unreachable") from e

    if response.status_code != 200:
        logger.error(f"Failed to get user info: HTTP {response.status_code}")
        raise ValueError("Failed to get user info")

    return response.json()
