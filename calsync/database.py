"""Database connection and schema management."""

import asyncio
import logging
from typing import Optional

import aiosqlite

from calsync.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- Application users (authentication itself is handled upstream)
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    display_name TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Authorized external accounts (tokens encrypted at rest)
CREATE TABLE IF NOT EXISTS connected_accounts (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    provider_account_id TEXT NOT NULL,
    email TEXT,
    access_token_encrypted BLOB NOT NULL,
    refresh_token_encrypted BLOB,
    token_expires_at TIMESTAMP,
    scope TEXT,
    is_active BOOLEAN DEFAULT TRUE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP,
    deactivated_at TIMESTAMP
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_connected_accounts_active
    ON connected_accounts(user_id, provider, provider_account_id)
    WHERE is_active = TRUE;

-- Local calendars
CREATE TABLE IF NOT EXISTS calendars (
    id INTEGER PRIMARY KEY,
    owner_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    color TEXT,
    is_default BOOLEAN DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_calendars_owner_name ON calendars(owner_id, name);

-- Local events
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY,
    calendar_id INTEGER NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    description TEXT,
    start_at TIMESTAMP NOT NULL,
    end_at TIMESTAMP NOT NULL,
    status TEXT NOT NULL DEFAULT 'scheduled',
    timezone TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP
);

-- Provider calendar <-> local calendar
CREATE TABLE IF NOT EXISTS calendar_mappings (
    id INTEGER PRIMARY KEY,
    connected_account_id INTEGER NOT NULL REFERENCES connected_accounts(id) ON DELETE CASCADE,
    local_calendar_id INTEGER NOT NULL REFERENCES calendars(id),
    provider_calendar_id TEXT NOT NULL,
    provider_calendar_name TEXT,
    sync_enabled BOOLEAN DEFAULT TRUE,
    sync_direction TEXT NOT NULL DEFAULT 'bidirectional',
    last_synced_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(connected_account_id, provider_calendar_id)
);

-- One checkpoint per calendar mapping
CREATE TABLE IF NOT EXISTS sync_state (
    id INTEGER PRIMARY KEY,
    calendar_mapping_id INTEGER NOT NULL REFERENCES calendar_mappings(id) ON DELETE CASCADE,
    sync_token TEXT,
    last_sync_at TIMESTAMP,
    sync_status TEXT NOT NULL DEFAULT 'idle',
    UNIQUE(calendar_mapping_id)
);

-- Provider event <-> local event
CREATE TABLE IF NOT EXISTS event_mappings (
    id INTEGER PRIMARY KEY,
    calendar_mapping_id INTEGER NOT NULL REFERENCES calendar_mappings(id) ON DELETE CASCADE,
    local_event_id INTEGER NOT NULL REFERENCES events(id) ON DELETE CASCADE,
    provider_event_id TEXT NOT NULL,
    provider_etag TEXT,
    last_synced_at TIMESTAMP,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(calendar_mapping_id, provider_event_id)
);

-- Audit log
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    user_id INTEGER REFERENCES users(id),
    connected_account_id INTEGER REFERENCES connected_accounts(id),
    calendar_mapping_id INTEGER REFERENCES calendar_mappings(id),
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    details TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_log_user ON sync_log(user_id, created_at);

-- Job locking
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);

-- OAuth state storage
CREATE TABLE IF NOT EXISTS oauth_states (
    state TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    next_url TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    expires_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_oauth_states_expiry ON oauth_states(expires_at);
"""


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")


async def write_sync_log(
    action: str,
    status: str,
    details: Optional[str] = None,
    user_id: Optional[int] = None,
    connected_account_id: Optional[int] = None,
    calendar_mapping_id: Optional[int] = None,
) -> None:
    """Append an audit row to the sync log."""
    db = await get_database()
    await db.execute(
        """INSERT INTO sync_log
           (user_id, connected_account_id, calendar_mapping_id, action, status, details)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, connected_account_id, calendar_mapping_id, action, status, details)
    )
    await db.commit()
