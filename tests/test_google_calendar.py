"""Tests for the Google Calendar API wrapper."""

from __future__ import annotations

from datetime import datetime, timezone
from types import SimpleNamespace

import httplib2
import pytest
from google.auth import exceptions as auth_exceptions

from calsync.errors import ProviderRequestError, ProviderUnavailableError


class FakeHttpError(Exception):
    def __init__(self, status: int):
        self.resp = SimpleNamespace(status=status)


class FakeListApi:
    """Serves queued pages (or errors) for ``list(**kwargs).execute()``."""

    def __init__(self, pages: list):
        self.pages = list(pages)
        self.calls: list[dict] = []

    def list(self, **kwargs):
        self.calls.append(dict(kwargs))
        page = self.pages.pop(0)

        def _execute():
            if isinstance(page, Exception):
                raise page
            return page

        return SimpleNamespace(execute=_execute)


def _client(events_api=None, calendar_list_api=None):
    from calsync.config import get_settings
    from calsync.sync.google_calendar import GoogleCalendarClient

    client = object.__new__(GoogleCalendarClient)
    client.settings = get_settings()
    client.service = SimpleNamespace(
        events=lambda: events_api,
        calendarList=lambda: calendar_list_api,
    )
    return client


@pytest.fixture(autouse=True)
def fake_http_error(monkeypatch):
    from calsync.sync import google_calendar as module

    monkeypatch.setattr(module, "HttpError", FakeHttpError)


def test_window_request_parameters():
    """Without a cursor the request is bounded by timeMin and ordered by start."""
    api = FakeListApi([{"items": [{"id": "a"}], "nextSyncToken": "T1"}])
    client = _client(events_api=api)

    result = client.list_events(
        "cal-1", time_min=datetime(2026, 9, 19, tzinfo=timezone.utc)
    )

    assert result == {"events": [{"id": "a"}], "next_sync_token": "T1", "sync_token_expired": False}
    params = api.calls[0]
    assert params["timeMin"] == "2026-09-19T00:00:00Z"
    assert params["orderBy"] == "startTime"
    assert params["singleEvents"] is True
    assert params["maxResults"] == 2500
    assert "syncToken" not in params


def test_cursor_request_parameters():
    api = FakeListApi([{"items": [], "nextSyncToken": "T2"}])
    client = _client(events_api=api)

    client.list_events("cal-1", sync_token="T1")

    params = api.calls[0]
    assert params["syncToken"] == "T1"
    assert "timeMin" not in params
    assert "orderBy" not in params


def test_window_request_requires_time_min():
    client = _client(events_api=FakeListApi([]))
    with pytest.raises(ValueError):
        client.list_events("cal-1")


def test_pagination_collects_all_pages_and_final_cursor():
    api = FakeListApi([
        {"items": [{"id": "a"}], "nextPageToken": "p2"},
        {"items": [{"id": "b"}], "nextSyncToken": "T9"},
    ])
    client = _client(events_api=api)

    result = client.list_events("cal-1", sync_token="T1")

    assert [e["id"] for e in result["events"]] == ["a", "b"]
    assert result["next_sync_token"] == "T9"
    assert api.calls[1]["pageToken"] == "p2"


def test_gone_on_cursor_is_reported_not_raised():
    client = _client(events_api=FakeListApi([FakeHttpError(410)]))

    result = client.list_events("cal-1", sync_token="stale")

    assert result["sync_token_expired"] is True
    assert result["events"] == []


@pytest.mark.parametrize("status", [500, 503, 429, 401])
def test_transient_statuses_are_retryable(status):
    client = _client(events_api=FakeListApi([FakeHttpError(status)]))
    with pytest.raises(ProviderUnavailableError):
        client.list_events("cal-1", sync_token="T1")


def test_other_client_errors_are_not_retryable():
    client = _client(events_api=FakeListApi([FakeHttpError(403)]))
    with pytest.raises(ProviderRequestError) as excinfo:
        client.list_events("cal-1", sync_token="T1")
    assert excinfo.value.retryable is False


def test_network_error_is_retryable():
    client = _client(events_api=FakeListApi([TimeoutError("read timed out")]))
    with pytest.raises(ProviderUnavailableError):
        client.list_events("cal-1", sync_token="T1")


@pytest.mark.parametrize(
    "error",
    [
        httplib2.ServerNotFoundError("Unable to find the server at www.googleapis.com"),
        auth_exceptions.TransportError("connection reset"),
        auth_exceptions.RefreshError("The credentials do not contain the necessary fields"),
    ],
)
def test_client_library_failures_are_retryable(error):
    """DNS, transport and rejected-token failures from the client libraries."""
    client = _client(events_api=FakeListApi([error]))
    with pytest.raises(ProviderUnavailableError) as excinfo:
        client.list_events("cal-1", sync_token="T1")
    assert excinfo.value.retryable is True
    assert excinfo.value.__cause__ is error


@pytest.mark.parametrize(
    "error",
    [
        httplib2.ServerNotFoundError("Unable to find the server at www.googleapis.com"),
        auth_exceptions.RefreshError("The credentials do not contain the necessary fields"),
    ],
)
def test_list_calendars_maps_client_library_failures(error):
    client = _client(calendar_list_api=FakeListApi([error]))
    with pytest.raises(ProviderUnavailableError):
        client.list_calendars()


def test_list_calendars_paginates():
    api = FakeListApi([
        {"items": [{"id": "primary"}], "nextPageToken": "p2"},
        {"items": [{"id": "work"}]},
    ])
    client = _client(calendar_list_api=api)

    assert [c["id"] for c in client.list_calendars()] == ["primary", "work"]
    assert api.calls[0] == {}
    assert api.calls[1] == {"pageToken": "p2"}


def test_list_calendars_maps_errors():
    client = _client(calendar_list_api=FakeListApi([FakeHttpError(502)]))
    with pytest.raises(ProviderUnavailableError):
        client.list_calendars()
