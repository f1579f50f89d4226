"""Google Calendar API wrapper."""

import logging
from datetime import datetime
from typing import Optional

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calsync.config import get_settings
from calsync.errors import ProviderRequestError, ProviderUnavailableError

logger = logging.getLogger(__name__)

# Status codes worth retrying on a later pass
RETRYABLE_STATUSES = {401, 408, 429}

# Network-level failures raised by the discovery client and its http layer
TRANSPORT_ERRORS = (OSError, httplib2.HttpLib2Error, TransportError)


def _raise_for_http_error(e: HttpError, what: str) -> None:
    status = e.resp.status
    if status >= 500 or status in RETRYABLE_STATUSES:
        raise ProviderUnavailableError(f"{what} failed with HTTP {status}") from e
    raise ProviderRequestError(f"{what} failed with HTTP {status}") from e


class GoogleCalendarClient:
    """Wrapper around Google Calendar API."""

    def __init__(self, access_token: str):
        """Initialize with access token."""
        self.credentials = Credentials(token=access_token)
        self.service = build("calendar", "v3", credentials=self.credentials)
        self.settings = get_settings()

    def list_calendars(self) -> list[dict]:
        """List all calendars visible to the token."""
        calendars = []
        page_token = None
        try:
            while True:
                params = {}
                if page_token:
                    params["pageToken"] = page_token
                result = self.service.calendarList().list(**params).execute()
                calendars.extend(result.get("items", []))
                page_token = result.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            _raise_for_http_error(e, "Calendar listing")
        except RefreshError as e:
            # Token rejected with no refresh token to fall back on
            raise ProviderUnavailableError("Calendar listing rejected the access token") from e
        except TRANSPORT_ERRORS as e:
            raise ProviderUnavailableError(f"Calendar listing failed: {type(e).__name__}") from e

        return calendars

    def list_events(
        self,
        calendar_id: str,
        sync_token: Optional[str] = None,
        time_min: Optional[datetime] = None,
        max_results: Optional[int] = None,
    ) -> dict:
        """
        List events from a calendar, following every page.

        With ``sync_token`` only changes since that cursor are returned.
        Otherwise events from ``time_min`` onward are returned ordered by
        start time (the API refuses ``orderBy`` together with a sync token).
        Recurring events are always expanded into single instances.

        Returns a dict with ``events`` and ``next_sync_token`` (only sent on
        the final page). A rejected cursor returns ``sync_token_expired``
        instead of raising.
        """
        request_params = {
            "calendarId": calendar_id,
            "maxResults": max_results or self.settings.events_page_size,
            "singleEvents": True,
        }

        if sync_token:
            request_params["syncToken"] = sync_token
        else:
            if time_min is None:
                raise ValueError("time_min is required without a sync token")
            request_params["timeMin"] = time_min.isoformat().replace("+00:00", "Z")
            request_params["orderBy"] = "startTime"

        all_events = []
        page_token = None
        result = {}

        try:
            while True:
                if page_token:
                    request_params["pageToken"] = page_token

                result = self.service.events().list(**request_params).execute()
                all_events.extend(result.get("items", []))

                page_token = result.get("nextPageToken")
                if not page_token:
                    break
        except HttpError as e:
            if sync_token and e.resp.status == 410:
                logger.info(f"Sync token rejected for calendar {calendar_id}")
                return {"events": [], "next_sync_token": None, "sync_token_expired": True}
            _raise_for_http_error(e, "Event listing")
        except RefreshError as e:
            # Token rejected with no refresh token to fall back on
            raise ProviderUnavailableError("Event listing rejected the access token") from e
        except TRANSPORT_ERRORS as e:
            raise ProviderUnavailableError(f"Event listing failed: {type(e).__name__}") from e

        return {
            "events": all_events,
            "next_sync_token": result.get("nextSyncToken"),
            "sync_token_expired": False,
        }
