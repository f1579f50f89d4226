"""Local persistence used by discovery and sync.

Local calendars and events belong to the wider calendar application; the sync
engine only reaches them through the functions here.
"""

import logging
from datetime import datetime
from typing import Optional

from calsync.database import get_database
from calsync.sync.models import (
    LOCAL_STATUS_CANCELLED,
    SYNC_DIRECTION_BIDIRECTIONAL,
    CalendarMapping,
    CursorState,
    EventMapping,
    InvalidatedCursor,
    NoCursor,
    ValidCursor,
)

logger = logging.getLogger(__name__)

SYNC_STATUS_IDLE = "idle"
SYNC_STATUS_INVALIDATED = "invalidated"

DEFAULT_CALENDAR_COLOR = "#4FB3B3"


# ---------------------------------------------------------------------------
# Local calendars and events
# ---------------------------------------------------------------------------


async def find_local_calendar_by_name(owner_id: int, name: str) -> Optional[int]:
    """Id of the user's local calendar whose name matches exactly."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT id FROM calendars WHERE owner_id = ? AND name = ? ORDER BY id LIMIT 1",
        (owner_id, name)
    )
    row = await cursor.fetchone()
    return row["id"] if row else None


async def create_local_calendar(
    owner_id: int,
    name: str,
    description: Optional[str] = None,
    color: Optional[str] = None,
) -> int:
    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO calendars (owner_id, name, description, color, is_default)
           VALUES (?, ?, ?, ?, FALSE)
           RETURNING id""",
        (owner_id, name, description, color or DEFAULT_CALENDAR_COLOR)
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


async def upsert_local_calendar(
    owner_id: int,
    name: str,
    description: Optional[str] = None,
    color: Optional[str] = None,
) -> tuple[int, bool]:
    """Reuse a same-named local calendar or create one. Returns (id, created)."""
    existing = await find_local_calendar_by_name(owner_id, name)
    if existing is not None:
        return existing, False
    return await create_local_calendar(owner_id, name, description, color), True


async def get_local_event(event_id: int) -> Optional[dict]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM events WHERE id = ?", (event_id,))
    row = await cursor.fetchone()
    return dict(row) if row else None


async def insert_local_event(calendar_id: int, fields: dict) -> int:
    """Insert a local event. The caller commits."""
    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO events
           (calendar_id, title, description, start_at, end_at, status, timezone, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           RETURNING id""",
        (
            calendar_id,
            fields["title"],
            fields["description"],
            fields["start_at"],
            fields["end_at"],
            fields["status"],
            fields["timezone"],
            datetime.utcnow().isoformat(),
        )
    )
    row = await cursor.fetchone()
    return row["id"]


async def update_local_event(event_id: int, calendar_id: int, fields: dict) -> None:
    """Overwrite a local event's mutable fields. The caller commits."""
    db = await get_database()
    await db.execute(
        """UPDATE events SET
           calendar_id = ?, title = ?, description = ?, start_at = ?, end_at = ?,
           status = ?, timezone = ?, updated_at = ?
           WHERE id = ?""",
        (
            calendar_id,
            fields["title"],
            fields["description"],
            fields["start_at"],
            fields["end_at"],
            fields["status"],
            fields["timezone"],
            datetime.utcnow().isoformat(),
            event_id,
        )
    )


async def mark_local_event_cancelled(event_id: int) -> None:
    """The caller commits."""
    db = await get_database()
    await db.execute(
        "UPDATE events SET status = ?, updated_at = ? WHERE id = ?",
        (LOCAL_STATUS_CANCELLED, datetime.utcnow().isoformat(), event_id)
    )


# ---------------------------------------------------------------------------
# Calendar mappings
# ---------------------------------------------------------------------------


def _row_to_calendar_mapping(row) -> CalendarMapping:
    return CalendarMapping(
        id=row["id"],
        connected_account_id=row["connected_account_id"],
        local_calendar_id=row["local_calendar_id"],
        provider_calendar_id=row["provider_calendar_id"],
        provider_calendar_name=row["provider_calendar_name"],
        sync_enabled=bool(row["sync_enabled"]),
        sync_direction=row["sync_direction"],
        last_synced_at=row["last_synced_at"],
    )


async def get_calendar_mapping(mapping_id: int) -> Optional[CalendarMapping]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendar_mappings WHERE id = ?", (mapping_id,)
    )
    row = await cursor.fetchone()
    return _row_to_calendar_mapping(row) if row else None


async def find_calendar_mapping(
    connected_account_id: int,
    provider_calendar_id: str,
) -> Optional[CalendarMapping]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM calendar_mappings
           WHERE connected_account_id = ? AND provider_calendar_id = ?""",
        (connected_account_id, provider_calendar_id)
    )
    row = await cursor.fetchone()
    return _row_to_calendar_mapping(row) if row else None


async def list_calendar_mappings(
    connected_account_id: int,
    enabled_only: bool = False,
) -> list[CalendarMapping]:
    db = await get_database()
    query = "SELECT * FROM calendar_mappings WHERE connected_account_id = ?"
    if enabled_only:
        query += " AND sync_enabled = TRUE"
    cursor = await db.execute(query + " ORDER BY id", (connected_account_id,))
    rows = await cursor.fetchall()
    return [_row_to_calendar_mapping(row) for row in rows]


async def list_syncable_mapping_ids() -> list[int]:
    """Enabled mappings of active accounts, for the periodic job."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT cm.id FROM calendar_mappings cm
           JOIN connected_accounts ca ON cm.connected_account_id = ca.id
           WHERE ca.is_active = TRUE AND cm.sync_enabled = TRUE
           ORDER BY cm.id"""
    )
    rows = await cursor.fetchall()
    return [row["id"] for row in rows]


async def create_calendar_mapping(
    connected_account_id: int,
    local_calendar_id: int,
    provider_calendar_id: str,
    provider_calendar_name: Optional[str],
    sync_direction: str = SYNC_DIRECTION_BIDIRECTIONAL,
) -> int:
    """Create a sync-enabled mapping. Raises IntegrityError if already mapped."""
    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO calendar_mappings
           (connected_account_id, local_calendar_id, provider_calendar_id,
            provider_calendar_name, sync_enabled, sync_direction)
           VALUES (?, ?, ?, ?, TRUE, ?)
           RETURNING id""",
        (connected_account_id, local_calendar_id, provider_calendar_id,
         provider_calendar_name, sync_direction)
    )
    row = await cursor.fetchone()
    await db.commit()
    return row["id"]


async def set_mapping_sync_enabled(mapping_id: int, enabled: bool) -> None:
    db = await get_database()
    await db.execute(
        "UPDATE calendar_mappings SET sync_enabled = ? WHERE id = ?",
        (enabled, mapping_id)
    )
    await db.commit()


async def touch_calendar_mapping(mapping_id: int, synced_at: datetime) -> None:
    db = await get_database()
    await db.execute(
        "UPDATE calendar_mappings SET last_synced_at = ? WHERE id = ?",
        (synced_at.isoformat(), mapping_id)
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Event mappings
# ---------------------------------------------------------------------------


def _row_to_event_mapping(row) -> EventMapping:
    return EventMapping(
        id=row["id"],
        calendar_mapping_id=row["calendar_mapping_id"],
        local_event_id=row["local_event_id"],
        provider_event_id=row["provider_event_id"],
        provider_etag=row["provider_etag"],
        last_synced_at=row["last_synced_at"],
    )


async def get_event_mapping(
    calendar_mapping_id: int,
    provider_event_id: str,
) -> Optional[EventMapping]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM event_mappings
           WHERE calendar_mapping_id = ? AND provider_event_id = ?""",
        (calendar_mapping_id, provider_event_id)
    )
    row = await cursor.fetchone()
    return _row_to_event_mapping(row) if row else None


async def create_event_mapping(
    calendar_mapping_id: int,
    local_event_id: int,
    provider_event_id: str,
    provider_etag: Optional[str],
    synced_at: datetime,
) -> int:
    """The caller commits."""
    db = await get_database()
    cursor = await db.execute(
        """INSERT INTO event_mappings
           (calendar_mapping_id, local_event_id, provider_event_id,
            provider_etag, last_synced_at)
           VALUES (?, ?, ?, ?, ?)
           RETURNING id""",
        (calendar_mapping_id, local_event_id, provider_event_id,
         provider_etag, synced_at.isoformat())
    )
    row = await cursor.fetchone()
    return row["id"]


async def update_event_mapping(
    event_mapping_id: int,
    provider_etag: Optional[str],
    synced_at: datetime,
) -> None:
    """The caller commits."""
    db = await get_database()
    await db.execute(
        """UPDATE event_mappings SET provider_etag = ?, last_synced_at = ?
           WHERE id = ?""",
        (provider_etag, synced_at.isoformat(), event_mapping_id)
    )


async def count_event_mappings(calendar_mapping_id: int) -> int:
    db = await get_database()
    cursor = await db.execute(
        "SELECT COUNT(*) FROM event_mappings WHERE calendar_mapping_id = ?",
        (calendar_mapping_id,)
    )
    return (await cursor.fetchone())[0]


# ---------------------------------------------------------------------------
# Sync state (cursor checkpoint)
# ---------------------------------------------------------------------------


async def get_cursor_state(calendar_mapping_id: int) -> CursorState:
    """Load the checkpoint for a mapping as an explicit cursor state."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM sync_state WHERE calendar_mapping_id = ?",
        (calendar_mapping_id,)
    )
    row = await cursor.fetchone()

    if not row:
        return NoCursor()

    last_sync_at = datetime.fromisoformat(row["last_sync_at"]) if row["last_sync_at"] else None
    if row["sync_status"] == SYNC_STATUS_INVALIDATED:
        return InvalidatedCursor(last_sync_at=last_sync_at)
    if not row["sync_token"]:
        return NoCursor()
    return ValidCursor(token=row["sync_token"], last_sync_at=last_sync_at)


async def upsert_sync_state(
    calendar_mapping_id: int,
    sync_token: str,
    synced_at: datetime,
) -> None:
    """Replace the checkpoint wholesale with a fresh cursor."""
    db = await get_database()
    await db.execute(
        """INSERT INTO sync_state (calendar_mapping_id, sync_token, last_sync_at, sync_status)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(calendar_mapping_id) DO UPDATE SET
           sync_token = excluded.sync_token,
           last_sync_at = excluded.last_sync_at,
           sync_status = excluded.sync_status""",
        (calendar_mapping_id, sync_token, synced_at.isoformat(), SYNC_STATUS_IDLE)
    )
    await db.commit()


async def mark_cursor_invalidated(calendar_mapping_id: int) -> None:
    """Drop the cursor so the next pass falls back to the bounded window."""
    db = await get_database()
    await db.execute(
        """INSERT INTO sync_state (calendar_mapping_id, sync_token, sync_status)
           VALUES (?, NULL, ?)
           ON CONFLICT(calendar_mapping_id) DO UPDATE SET
           sync_token = NULL,
           sync_status = excluded.sync_status""",
        (calendar_mapping_id, SYNC_STATUS_INVALIDATED)
    )
    await db.commit()


async def clear_sync_state(calendar_mapping_id: int) -> None:
    """Forget the checkpoint entirely (manual full re-sync)."""
    db = await get_database()
    await db.execute(
        "DELETE FROM sync_state WHERE calendar_mapping_id = ?",
        (calendar_mapping_id,)
    )
    await db.commit()
