"""Upsert provider events into local storage, keyed by event mapping."""

import logging
from datetime import datetime

from calsync.database import get_database
from calsync.sync.models import CalendarMapping, ProviderEvent, ReconcileOutcome
from calsync.sync.store import (
    create_event_mapping,
    get_event_mapping,
    insert_local_event,
    mark_local_event_cancelled,
    update_event_mapping,
    update_local_event,
)

logger = logging.getLogger(__name__)


async def reconcile(mapping: CalendarMapping, event: ProviderEvent) -> ReconcileOutcome:
    """
    Insert or update the local mirror of one provider event.

    Identity is the (calendar mapping, provider event id) pair and nothing
    else. An existing local event is overwritten with the provider's state,
    so local edits made between passes are lost. Replaying the same event
    yields the same single local event.

    The event must be reconcilable (id, start and end present).
    """
    now = datetime.utcnow()
    fields = event.local_fields()
    db = await get_database()

    try:
        existing = await get_event_mapping(mapping.id, event.id)
        if existing:
            await update_local_event(existing.local_event_id, mapping.local_calendar_id, fields)
            await update_event_mapping(existing.id, event.etag, now)
            await db.commit()
            return ReconcileOutcome(local_event_id=existing.local_event_id, action="updated")

        local_event_id = await insert_local_event(mapping.local_calendar_id, fields)
        await create_event_mapping(mapping.id, local_event_id, event.id, event.etag, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.debug(f"Imported provider event {event.id} as local event {local_event_id}")
    return ReconcileOutcome(local_event_id=local_event_id, action="inserted")


async def reconcile_cancellation(mapping: CalendarMapping, event: ProviderEvent) -> ReconcileOutcome:
    """
    Mirror a provider-side cancellation.

    A previously imported event is marked cancelled locally and its mapping
    kept as a tombstone, so a later re-appearance updates the same local
    event. Cancellations of events never imported are skipped.
    """
    if not event.id:
        return ReconcileOutcome(local_event_id=None, action="skipped")

    existing = await get_event_mapping(mapping.id, event.id)
    if not existing:
        return ReconcileOutcome(local_event_id=None, action="skipped")

    db = await get_database()
    try:
        await mark_local_event_cancelled(existing.local_event_id)
        await update_event_mapping(existing.id, event.etag, datetime.utcnow())
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(f"Provider event {event.id} cancelled; local event {existing.local_event_id} marked cancelled")
    return ReconcileOutcome(local_event_id=existing.local_event_id, action="cancelled")
