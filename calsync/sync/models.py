"""Data shapes shared by discovery, reconciliation and the sync engine."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

SYNC_DIRECTION_BIDIRECTIONAL = "bidirectional"
SYNC_DIRECTION_ONE_WAY = "one_way"

LOCAL_STATUS_SCHEDULED = "scheduled"
LOCAL_STATUS_CANCELLED = "cancelled"

UNTITLED_EVENT = "Untitled Event"


class EventTime(BaseModel):
    """Start or end of a provider event; all-day events only carry ``date``."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: Optional[str] = Field(default=None, alias="dateTime")
    date: Optional[str] = None
    time_zone: Optional[str] = Field(default=None, alias="timeZone")

    def instant(self) -> Optional[datetime]:
        """UTC instant, or None if neither field is usable.

        Naive values and all-day dates are taken as UTC midnight.
        """
        raw = self.date_time or self.date
        if not raw:
            return None
        try:
            value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ProviderEvent(BaseModel):
    """A provider event as returned by the events API. Every field may be missing."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    etag: Optional[str] = None
    start: Optional[EventTime] = None
    end: Optional[EventTime] = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def start_instant(self) -> Optional[datetime]:
        return self.start.instant() if self.start else None

    def end_instant(self) -> Optional[datetime]:
        return self.end.instant() if self.end else None

    def is_reconcilable(self) -> bool:
        """Has an id and both a start and an end instant."""
        return bool(self.id) and self.start_instant() is not None and self.end_instant() is not None

    def local_fields(self) -> dict:
        """Mutable local-event fields derived from this event."""
        return {
            "title": self.summary or UNTITLED_EVENT,
            "description": self.description or None,
            "start_at": self.start_instant().isoformat(),
            "end_at": self.end_instant().isoformat(),
            "status": LOCAL_STATUS_SCHEDULED,
            "timezone": self.start.time_zone if self.start else None,
        }


class CalendarMapping(BaseModel):
    """Provider calendar linked to a local calendar within one account."""
    id: int
    connected_account_id: int
    local_calendar_id: int
    provider_calendar_id: str
    provider_calendar_name: Optional[str] = None
    sync_enabled: bool = True
    sync_direction: str = SYNC_DIRECTION_BIDIRECTIONAL
    last_synced_at: Optional[datetime] = None


class EventMapping(BaseModel):
    """Provider event linked to a local event within one calendar mapping."""
    id: int
    calendar_mapping_id: int
    local_event_id: int
    provider_event_id: str
    provider_etag: Optional[str] = None
    last_synced_at: Optional[datetime] = None


# Cursor state for one calendar mapping.


@dataclass(frozen=True)
class NoCursor:
    """No checkpoint yet: fetch the bounded initial window."""


@dataclass(frozen=True)
class ValidCursor:
    """Fetch only changes after ``token``."""
    token: str
    last_sync_at: Optional[datetime] = None


@dataclass(frozen=True)
class InvalidatedCursor:
    """The provider rejected the last cursor: fetch the bounded window again."""
    last_sync_at: Optional[datetime] = None


CursorState = Union[NoCursor, ValidCursor, InvalidatedCursor]


@dataclass
class ReconcileOutcome:
    local_event_id: Optional[int]
    action: str  # inserted, updated, cancelled or skipped


class SyncResult(BaseModel):
    """Counters for one sync pass."""
    mapping_id: int
    imported: int = 0
    updated: int = 0
    cancelled: int = 0
    skipped: int = 0
    failed: int = 0
    total_seen: int = 0
    cursor_invalidated: bool = False
    checkpointed: bool = False


class DiscoveryResult(BaseModel):
    """Counters for one discovery run."""
    account_id: int
    discovered: int = 0
    created: int = 0
    already_mapped: int = 0
    ineligible: int = 0
    failed: int = 0
    mapping_ids: list[int] = Field(default_factory=list)
