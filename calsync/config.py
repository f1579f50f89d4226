"""Application configuration management."""

import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    database_path: str = "/data/calsync.db"

    # Encryption
    encryption_key_file: str = "/secrets/encryption.key"

    # Server
    public_url: str = "http://localhost:3000"
    log_level: str = "info"

    # Session
    session_secret_key: Optional[str] = None  # Derived from encryption key if not set
    session_expire_days: int = 7

    # Google OAuth
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_path: str = "/auth/google/callback"
    google_scopes: str = (
        "openid "
        "https://www.googleapis.com/auth/userinfo.email "
        "https://www.googleapis.com/auth/calendar.readonly "
        "https://www.googleapis.com/auth/calendar.events"
    )

    # Rate limiting
    rate_limit_per_minute: int = 60

    # Sync settings
    token_refresh_skew_seconds: int = 60
    initial_sync_window_days: int = 30
    events_page_size: int = 2500
    provider_timeout_seconds: float = 30.0
    sync_interval_minutes: int = 15
    token_refresh_minutes: int = 30

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def get_redirect_uri() -> str:
    """Absolute OAuth callback URL."""
    settings = get_settings()
    return settings.public_url.rstrip("/") + settings.google_redirect_path


def get_encryption_key() -> bytes:
    """Load encryption key from file."""
    settings = get_settings()
    key_file = settings.encryption_key_file

    if not os.path.exists(key_file):
        raise RuntimeError(f"Encryption key file not found at {key_file}")

    with open(key_file, "rb") as f:
        key = f.read()
        # Only strip trailing newlines; binary keys may contain whitespace bytes
        while key and key[-1:] in (b'\n', b'\r'):
            key = key[:-1]

    if len(key) < 32:
        raise RuntimeError("Invalid encryption key: must be at least 32 bytes")

    return key


def get_session_secret() -> str:
    """Get session secret key, derived from encryption key if not set."""
    settings = get_settings()
    if settings.session_secret_key:
        return settings.session_secret_key

    import hashlib
    key = get_encryption_key()
    return hashlib.sha256(key + b"session_secret").hexdigest()
