"""Calendar sync engine module."""

from calsync.sync.discovery import discover_calendars
from calsync.sync.engine import sync_all_for_user, sync_mapping
from calsync.sync.reconciler import reconcile

__all__ = [
    "discover_calendars",
    "reconcile",
    "sync_all_for_user",
    "sync_mapping",
]
