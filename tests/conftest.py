"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["ENCRYPTION_KEY_FILE"] = "/tmp/calsync_test_encryption.key"
os.environ["PUBLIC_URL"] = "http://localhost:3000"
os.environ["SESSION_SECRET_KEY"] = "test-session-secret"
os.environ["GOOGLE_CLIENT_ID"] = "client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "client-secret"


@pytest.fixture
def test_encryption_key():
    """Install a fresh encryption key for the test."""
    from calsync.encryption import generate_encryption_key, init_encryption_manager

    key = generate_encryption_key()
    init_encryption_manager(key)
    yield key


@pytest_asyncio.fixture
async def test_db(test_encryption_key):
    """Create a fresh in-memory test database."""
    import calsync.database as db_module
    import calsync.sync.engine as engine_module
    from calsync.database import close_database, get_database

    db_module._db_connection = None
    engine_module._mapping_locks.clear()

    db = await get_database()

    yield db

    await close_database()
    db_module._db_connection = None


@pytest_asyncio.fixture
async def user_id(test_db):
    """Insert the default test user."""
    cursor = await test_db.execute(
        """INSERT INTO users (email, display_name)
           VALUES (?, ?)
           RETURNING id""",
        ("user@example.com", "User"),
    )
    row = await cursor.fetchone()
    await test_db.commit()
    return row["id"]


@pytest_asyncio.fixture
async def account(user_id):
    """Active Google account whose access token is valid for an hour."""
    from calsync.auth.accounts import get_connected_account, store_connected_account

    account_id = await store_connected_account(
        user_id=user_id,
        provider_account_id="google-123",
        email="person@gmail.com",
        access_token="access-token",
        refresh_token="refresh-token",
        expires_in=3600,
    )
    return await get_connected_account(account_id)


@pytest_asyncio.fixture
async def mapping(account):
    """Calendar mapping for the account's primary calendar."""
    from calsync.sync.store import create_calendar_mapping, create_local_calendar, get_calendar_mapping

    local_calendar_id = await create_local_calendar(account.user_id, "Personal")
    mapping_id = await create_calendar_mapping(
        connected_account_id=account.id,
        local_calendar_id=local_calendar_id,
        provider_calendar_id="primary",
        provider_calendar_name="Personal",
    )
    return await get_calendar_mapping(mapping_id)


@pytest.fixture
def provider_event():
    """Factory for provider event payloads as the events API returns them."""

    def _make(event_id: str, summary: str = "Meeting", status: str = "confirmed", etag: str = '"1"') -> dict:
        return {
            "id": event_id,
            "summary": summary,
            "status": status,
            "etag": etag,
            "start": {"dateTime": "2026-10-20T09:00:00Z", "timeZone": "UTC"},
            "end": {"dateTime": "2026-10-20T10:00:00Z", "timeZone": "UTC"},
        }

    return _make


@pytest.fixture
def auth_headers(user_id):
    """Bearer credential for the default test user."""
    from calsync.auth.session import create_session_token

    token = create_session_token(user_id, "user@example.com")
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def api_client(test_db):
    """HTTP client bound to the app. The lifespan is not run; ``test_db`` supplies the database."""
    from httpx import ASGITransport, AsyncClient

    from calsync.main import app, limiter

    limiter.reset()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
