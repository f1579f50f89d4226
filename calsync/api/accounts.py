"""Connected account and calendar mapping API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from calsync.api.sync import get_owned_mapping
from calsync.auth.accounts import (
    ConnectedAccount,
    deactivate_account,
    get_connected_account,
    list_connected_accounts,
)
from calsync.auth.session import User, get_current_user
from calsync.errors import NotFoundError
from calsync.sync.discovery import discover_calendars
from calsync.sync.models import DiscoveryResult
from calsync.sync.store import list_calendar_mappings, set_mapping_sync_enabled

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/accounts", tags=["accounts"])


class ConnectedAccountResponse(BaseModel):
    """Connected account without any token material."""
    id: int
    provider: str
    provider_account_id: str
    email: Optional[str] = None
    scope: Optional[str] = None
    is_active: bool
    token_expires_at: Optional[str] = None


class CalendarMappingResponse(BaseModel):
    id: int
    local_calendar_id: int
    provider_calendar_id: str
    provider_calendar_name: Optional[str] = None
    sync_enabled: bool
    sync_direction: str
    last_synced_at: Optional[str] = None


class UpdateMappingRequest(BaseModel):
    sync_enabled: bool


async def get_owned_account(account_id: int, user: User) -> ConnectedAccount:
    """Resolve an active account owned by ``user``."""
    account = await get_connected_account(account_id)
    if not account or account.user_id != user.id or not account.is_active:
        raise NotFoundError(f"Connected account {account_id} not found")
    return account


@router.get("", response_model=list[ConnectedAccountResponse])
async def list_accounts(user: User = Depends(get_current_user)):
    """List the current user's active connected accounts."""
    accounts = await list_connected_accounts(user.id)
    return [
        ConnectedAccountResponse(
            id=a.id,
            provider=a.provider,
            provider_account_id=a.provider_account_id,
            email=a.email,
            scope=a.scope,
            is_active=a.is_active,
            token_expires_at=a.token_expires_at.isoformat() if a.token_expires_at else None,
        )
        for a in accounts
    ]


@router.post("/{account_id}/discover", response_model=DiscoveryResult)
async def discover_account_calendars(account_id: int, user: User = Depends(get_current_user)):
    """Map the account's writable provider calendars to local calendars."""
    account = await get_owned_account(account_id, user)
    return await discover_calendars(account)


@router.get("/{account_id}/mappings", response_model=list[CalendarMappingResponse])
async def list_account_mappings(account_id: int, user: User = Depends(get_current_user)):
    """List calendar mappings of one account."""
    await get_owned_account(account_id, user)
    mappings = await list_calendar_mappings(account_id)
    return [
        CalendarMappingResponse(
            id=m.id,
            local_calendar_id=m.local_calendar_id,
            provider_calendar_id=m.provider_calendar_id,
            provider_calendar_name=m.provider_calendar_name,
            sync_enabled=m.sync_enabled,
            sync_direction=m.sync_direction,
            last_synced_at=m.last_synced_at.isoformat() if m.last_synced_at else None,
        )
        for m in mappings
    ]


@router.patch("/mappings/{mapping_id}")
async def update_mapping(
    mapping_id: int,
    request: UpdateMappingRequest,
    user: User = Depends(get_current_user),
):
    """Enable or disable scheduled sync for a mapping."""
    await get_owned_mapping(mapping_id, user)
    await set_mapping_sync_enabled(mapping_id, request.sync_enabled)
    return {"status": "ok", "sync_enabled": request.sync_enabled}


@router.delete("/{account_id}")
async def disconnect_account(account_id: int, user: User = Depends(get_current_user)):
    """Disconnect an account. The record is kept, only deactivated."""
    await get_owned_account(account_id, user)
    await deactivate_account(account_id)
    return {"status": "ok", "message": "Account disconnected"}
