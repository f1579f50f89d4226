"""Sync trigger and status API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from calsync.auth.accounts import get_connected_account
from calsync.auth.session import User, get_current_user
from calsync.errors import NotFoundError
from calsync.sync.engine import sync_all_for_user, sync_mapping
from calsync.sync.models import CalendarMapping, InvalidatedCursor, NoCursor, SyncResult
from calsync.sync.store import (
    clear_sync_state,
    count_event_mappings,
    get_calendar_mapping,
    get_cursor_state,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class SyncResponse(BaseModel):
    """Outcome of one sync pass."""
    status: str = "ok"
    mapping_id: int
    imported: int
    updated: int
    cancelled: int
    skipped: int
    failed: int
    total_seen: int
    cursor_invalidated: bool


class SyncErrorEntry(BaseModel):
    mapping_id: int
    error: str
    retryable: bool


class SyncAllResponse(BaseModel):
    """Aggregate outcome of syncing all of a user's mappings."""
    status: str
    mappings_synced: int
    imported: int
    updated: int
    cancelled: int
    errors: list[SyncErrorEntry]


class SyncStateResponse(BaseModel):
    """Checkpoint state for a mapping. The cursor value itself is never exposed."""
    mapping_id: int
    cursor: str
    last_sync_at: Optional[str] = None
    last_synced_at: Optional[str] = None
    sync_enabled: bool
    event_count: int


async def get_owned_mapping(mapping_id: int, user: User) -> CalendarMapping:
    """Resolve a mapping owned by ``user``; anything else is reported as not found."""
    mapping = await get_calendar_mapping(mapping_id)
    if mapping:
        account = await get_connected_account(mapping.connected_account_id)
        if account and account.user_id == user.id:
            return mapping
    raise NotFoundError(f"Calendar mapping {mapping_id} not found")


def _sync_response(result: SyncResult) -> SyncResponse:
    return SyncResponse(
        mapping_id=result.mapping_id,
        imported=result.imported,
        updated=result.updated,
        cancelled=result.cancelled,
        skipped=result.skipped,
        failed=result.failed,
        total_seen=result.total_seen,
        cursor_invalidated=result.cursor_invalidated,
    )


@router.post("/mappings/{mapping_id}", response_model=SyncResponse)
async def trigger_mapping_sync(mapping_id: int, user: User = Depends(get_current_user)):
    """Run a sync pass for one calendar mapping."""
    await get_owned_mapping(mapping_id, user)
    result = await sync_mapping(mapping_id)
    return _sync_response(result)


@router.post("/all", response_model=SyncAllResponse)
async def trigger_sync_all(user: User = Depends(get_current_user)):
    """Sync every enabled mapping of the current user's active accounts."""
    totals = await sync_all_for_user(user.id)
    return SyncAllResponse(
        status="ok" if not totals["errors"] else "partial",
        mappings_synced=totals["mappings_synced"],
        imported=totals["imported"],
        updated=totals["updated"],
        cancelled=totals["cancelled"],
        errors=[SyncErrorEntry(**entry) for entry in totals["errors"]],
    )


@router.get("/mappings/{mapping_id}/state", response_model=SyncStateResponse)
async def get_mapping_sync_state(mapping_id: int, user: User = Depends(get_current_user)):
    """Show whether the next pass is incremental or a window fetch."""
    mapping = await get_owned_mapping(mapping_id, user)
    state = await get_cursor_state(mapping_id)

    if isinstance(state, NoCursor):
        cursor = "none"
    elif isinstance(state, InvalidatedCursor):
        cursor = "invalidated"
    else:
        cursor = "valid"

    last_sync_at = getattr(state, "last_sync_at", None)
    return SyncStateResponse(
        mapping_id=mapping_id,
        cursor=cursor,
        last_sync_at=last_sync_at.isoformat() if last_sync_at else None,
        last_synced_at=mapping.last_synced_at.isoformat() if mapping.last_synced_at else None,
        sync_enabled=mapping.sync_enabled,
        event_count=await count_event_mappings(mapping_id),
    )


@router.post("/mappings/{mapping_id}/reset")
async def reset_mapping_cursor(mapping_id: int, user: User = Depends(get_current_user)):
    """Forget the cursor so the next pass re-fetches the bounded window."""
    await get_owned_mapping(mapping_id, user)
    await clear_sync_state(mapping_id)
    logger.info(f"Cursor reset for mapping {mapping_id} by user {user.id}")
    return {"status": "ok", "message": "Next sync will fetch the full window"}
