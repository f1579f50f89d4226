"""Calendar discovery: map every writable provider calendar to a local calendar."""

import json
import logging

import aiosqlite

from calsync.auth.accounts import ConnectedAccount
from calsync.auth.tokens import ensure_valid_access_token
from calsync.database import write_sync_log
from calsync.sync.google_calendar import GoogleCalendarClient
from calsync.sync.models import SYNC_DIRECTION_BIDIRECTIONAL, DiscoveryResult
from calsync.sync.store import (
    create_calendar_mapping,
    find_calendar_mapping,
    upsert_local_calendar,
)

logger = logging.getLogger(__name__)

WRITABLE_ACCESS_ROLES = {"owner", "writer"}

DEFAULT_LOCAL_CALENDAR_NAME = "Google Calendar"
DEFAULT_MAPPING_NAME = "Untitled Calendar"


def is_discoverable(provider_calendar: dict) -> bool:
    """Writable calendars with a provider id; read-only and free/busy shares are skipped."""
    if not provider_calendar.get("id"):
        return False
    return provider_calendar.get("accessRole") in WRITABLE_ACCESS_ROLES


async def discover_calendars(account: ConnectedAccount) -> DiscoveryResult:
    """
    Create a calendar mapping for each eligible provider calendar.

    Safe to re-run: calendars already mapped for this account are left alone.
    A failure on one calendar is logged and the rest are still processed.
    Token and listing failures propagate to the caller.
    """
    result = DiscoveryResult(account_id=account.id)

    access_token = await ensure_valid_access_token(account)
    client = GoogleCalendarClient(access_token)
    provider_calendars = client.list_calendars()
    result.discovered = len(provider_calendars)

    for provider_calendar in provider_calendars:
        if not is_discoverable(provider_calendar):
            result.ineligible += 1
            continue

        provider_calendar_id = provider_calendar["id"]
        if await find_calendar_mapping(account.id, provider_calendar_id):
            result.already_mapped += 1
            continue

        summary = provider_calendar.get("summary")
        try:
            local_calendar_id, _created = await upsert_local_calendar(
                owner_id=account.user_id,
                name=summary or DEFAULT_LOCAL_CALENDAR_NAME,
                description=provider_calendar.get("description"),
                color=provider_calendar.get("backgroundColor"),
            )
            mapping_id = await create_calendar_mapping(
                connected_account_id=account.id,
                local_calendar_id=local_calendar_id,
                provider_calendar_id=provider_calendar_id,
                provider_calendar_name=summary or DEFAULT_MAPPING_NAME,
                sync_direction=SYNC_DIRECTION_BIDIRECTIONAL,
            )
        except aiosqlite.IntegrityError:
            # Mapped concurrently by another discovery run
            logger.info(f"Calendar {provider_calendar_id} already mapped for account {account.id}")
            result.already_mapped += 1
            continue
        except aiosqlite.Error as e:
            logger.error(f"Failed to map calendar {provider_calendar_id} for account {account.id}: {e}")
            result.failed += 1
            continue

        result.created += 1
        result.mapping_ids.append(mapping_id)

    logger.info(
        f"Discovery for account {account.id}: {result.discovered} discovered, "
        f"{result.created} created, {result.already_mapped} already mapped"
    )
    await write_sync_log(
        action="discover",
        status="success" if not result.failed else "partial",
        details=json.dumps({"discovered": result.discovered, "created": result.created,
                            "failed": result.failed}),
        user_id=account.user_id,
        connected_account_id=account.id,
    )
    return result
