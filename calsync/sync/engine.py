"""Incremental sync engine: pull provider changes for one calendar mapping."""

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from calsync.auth.accounts import get_connected_account, list_connected_accounts
from calsync.auth.tokens import ensure_valid_access_token
from calsync.config import get_settings
from calsync.database import write_sync_log
from calsync.errors import NotFoundError, SyncError
from calsync.sync.google_calendar import GoogleCalendarClient
from calsync.sync.models import ProviderEvent, SyncResult, ValidCursor
from calsync.sync.reconciler import reconcile, reconcile_cancellation
from calsync.sync.store import (
    get_calendar_mapping,
    get_cursor_state,
    list_calendar_mappings,
    mark_cursor_invalidated,
    touch_calendar_mapping,
    upsert_sync_state,
)

logger = logging.getLogger(__name__)

# Per-mapping locks: passes for the same mapping run one at a time.
_mapping_locks: dict[int, asyncio.Lock] = {}
_mapping_locks_guard = asyncio.Lock()


async def _get_mapping_lock(mapping_id: int) -> asyncio.Lock:
    """Get or create an asyncio lock for a specific calendar mapping."""
    async with _mapping_locks_guard:
        if mapping_id not in _mapping_locks:
            _mapping_locks[mapping_id] = asyncio.Lock()
        return _mapping_locks[mapping_id]


async def sync_mapping(mapping_id: int) -> SyncResult:
    """Run one sync pass for a calendar mapping, waiting for any pass already running."""
    lock = await _get_mapping_lock(mapping_id)
    if lock.locked():
        logger.info(f"Sync already in progress for mapping {mapping_id}, waiting")

    async with lock:
        return await _sync_mapping(mapping_id)


async def _sync_mapping(mapping_id: int) -> SyncResult:
    """Internal: perform one pass (must be called under the mapping lock)."""
    mapping = await get_calendar_mapping(mapping_id)
    if not mapping:
        raise NotFoundError(f"Calendar mapping {mapping_id} not found")

    account = await get_connected_account(mapping.connected_account_id)
    if not account or not account.is_active:
        raise NotFoundError(f"No active account for calendar mapping {mapping_id}")

    try:
        access_token = await ensure_valid_access_token(account)
        result = await _run_pass(mapping, access_token)
    except SyncError as e:
        logger.warning(f"Sync failed for mapping {mapping_id}: {e.reason}")
        await write_sync_log(
            action="sync",
            status="failure",
            details=json.dumps({"error": e.reason, "retryable": e.retryable}),
            user_id=account.user_id,
            connected_account_id=account.id,
            calendar_mapping_id=mapping_id,
        )
        raise
    except Exception:
        logger.exception(f"Unexpected error syncing mapping {mapping_id}")
        await write_sync_log(
            action="sync",
            status="failure",
            details=json.dumps({"error": "internal_error", "retryable": False}),
            user_id=account.user_id,
            connected_account_id=account.id,
            calendar_mapping_id=mapping_id,
        )
        raise

    await write_sync_log(
        action="sync",
        status="success",
        details=result.model_dump_json(),
        user_id=account.user_id,
        connected_account_id=account.id,
        calendar_mapping_id=mapping_id,
    )
    return result


async def _run_pass(mapping, access_token: str) -> SyncResult:
    settings = get_settings()
    result = SyncResult(mapping_id=mapping.id)
    client = GoogleCalendarClient(access_token)

    cursor_state = await get_cursor_state(mapping.id)
    if isinstance(cursor_state, ValidCursor):
        logger.info(f"Incremental sync for mapping {mapping.id}")
        page = client.list_events(mapping.provider_calendar_id, sync_token=cursor_state.token)
    else:
        # NoCursor or InvalidatedCursor: bounded initial window
        time_min = datetime.now(timezone.utc) - timedelta(days=settings.initial_sync_window_days)
        logger.info(
            f"Window sync for mapping {mapping.id} from {time_min.date()} "
            f"({type(cursor_state).__name__})"
        )
        page = client.list_events(mapping.provider_calendar_id, time_min=time_min)

    if page.get("sync_token_expired"):
        # Not an error: the next pass uses the bounded window.
        await mark_cursor_invalidated(mapping.id)
        result.cursor_invalidated = True
        return result

    items = page.get("events", [])
    result.total_seen = len(items)

    for item in items:
        try:
            event = ProviderEvent.model_validate(item)
        except ValidationError:
            logger.warning(f"Skipping malformed provider event in mapping {mapping.id}")
            result.skipped += 1
            continue

        try:
            if event.is_cancelled:
                outcome = await reconcile_cancellation(mapping, event)
            elif not event.is_reconcilable():
                result.skipped += 1
                continue
            else:
                outcome = await reconcile(mapping, event)
        except Exception as e:
            logger.error(f"Error reconciling event {event.id} in mapping {mapping.id}: {e}")
            result.failed += 1
            continue

        if outcome.action == "inserted":
            result.imported += 1
        elif outcome.action == "updated":
            result.updated += 1
        elif outcome.action == "cancelled":
            result.cancelled += 1
        else:
            result.skipped += 1

    now = datetime.utcnow()
    next_sync_token = page.get("next_sync_token")
    if next_sync_token:
        await upsert_sync_state(mapping.id, next_sync_token, now)
        result.checkpointed = True
    if result.failed:
        logger.warning(f"{result.failed} event(s) failed in mapping {mapping.id} and were skipped")

    await touch_calendar_mapping(mapping.id, now)

    logger.info(
        f"Sync completed for mapping {mapping.id}: {result.imported} imported, "
        f"{result.updated} updated, {result.cancelled} cancelled, {result.total_seen} seen"
    )
    return result


async def sync_all_for_user(user_id: int) -> dict:
    """
    Sync every enabled mapping of every active account a user owns.

    One failing mapping never stops the others; its error is collected.
    """
    totals = {"imported": 0, "updated": 0, "cancelled": 0, "mappings_synced": 0, "errors": []}

    for account in await list_connected_accounts(user_id):
        for mapping in await list_calendar_mappings(account.id, enabled_only=True):
            try:
                result = await sync_mapping(mapping.id)
            except SyncError as e:
                totals["errors"].append({
                    "mapping_id": mapping.id,
                    "error": e.reason,
                    "retryable": e.retryable,
                })
                continue
            except Exception:
                totals["errors"].append({
                    "mapping_id": mapping.id,
                    "error": "internal_error",
                    "retryable": False,
                })
                continue
            totals["imported"] += result.imported
            totals["updated"] += result.updated
            totals["cancelled"] += result.cancelled
            totals["mappings_synced"] += 1

    return totals
