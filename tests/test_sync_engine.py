"""Tests for the incremental sync engine."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime
from types import SimpleNamespace

import pytest

from calsync.database import get_database
from calsync.errors import CredentialRefreshError, NotFoundError, ProviderUnavailableError
from calsync.sync.models import InvalidatedCursor, NoCursor, ValidCursor


class FakeGoogleCalendarClient:
    """Serves queued ``list_events`` responses and records the requests."""

    responses: list = []
    calls: list[dict] = []

    def __init__(self, access_token: str):
        self.access_token = access_token

    def list_events(self, calendar_id, sync_token=None, time_min=None, max_results=None) -> dict:
        FakeGoogleCalendarClient.calls.append(
            {"calendar_id": calendar_id, "sync_token": sync_token, "time_min": time_min}
        )
        response = FakeGoogleCalendarClient.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _page(events=None, next_sync_token=None, expired=False) -> dict:
    return {
        "events": events or [],
        "next_sync_token": next_sync_token,
        "sync_token_expired": expired,
    }


@pytest.fixture(autouse=True)
def fake_client(monkeypatch):
    FakeGoogleCalendarClient.responses = []
    FakeGoogleCalendarClient.calls = []
    monkeypatch.setattr("calsync.sync.engine.GoogleCalendarClient", FakeGoogleCalendarClient)
    return FakeGoogleCalendarClient


async def _event_mapping_ids(mapping_id: int) -> list[str]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT provider_event_id FROM event_mappings WHERE calendar_mapping_id = ? ORDER BY provider_event_id",
        (mapping_id,),
    )
    return [row["provider_event_id"] for row in await cursor.fetchall()]


async def _sync_log_rows() -> list:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM sync_log WHERE action = 'sync' ORDER BY id")
    return await cursor.fetchall()


@pytest.mark.asyncio
async def test_first_sync_imports_window_and_stores_cursor(test_db, mapping, provider_event, fake_client):
    from calsync.sync.engine import sync_mapping
    from calsync.sync.store import get_cursor_state

    fake_client.responses = [
        _page(
            [provider_event("A"), provider_event("B"), provider_event("C", status="cancelled")],
            next_sync_token="T1",
        )
    ]

    result = await sync_mapping(mapping.id)

    assert result.imported == 2
    assert result.updated == 0
    assert result.total_seen == 3
    assert result.checkpointed is True
    assert result.cursor_invalidated is False

    call = fake_client.calls[0]
    assert call["calendar_id"] == "primary"
    assert call["sync_token"] is None
    assert call["time_min"] is not None

    state = await get_cursor_state(mapping.id)
    assert isinstance(state, ValidCursor)
    assert state.token == "T1"
    assert await _event_mapping_ids(mapping.id) == ["A", "B"]


@pytest.mark.asyncio
async def test_incremental_sync_uses_cursor_and_updates(test_db, mapping, provider_event, fake_client):
    from calsync.sync.engine import sync_mapping
    from calsync.sync.store import get_cursor_state

    fake_client.responses = [
        _page([provider_event("A"), provider_event("B")], next_sync_token="T1"),
        _page([provider_event("A", summary="Renamed", etag='"2"')], next_sync_token="T2"),
    ]

    await sync_mapping(mapping.id)
    result = await sync_mapping(mapping.id)

    assert result.imported == 0
    assert result.updated == 1
    assert fake_client.calls[1]["sync_token"] == "T1"
    assert fake_client.calls[1]["time_min"] is None

    state = await get_cursor_state(mapping.id)
    assert state.token == "T2"

    db = await get_database()
    cursor = await db.execute(
        """SELECT e.title FROM events e
           JOIN event_mappings em ON em.local_event_id = e.id
           WHERE em.provider_event_id = 'A'"""
    )
    assert (await cursor.fetchone())["title"] == "Renamed"
    cursor = await db.execute("SELECT COUNT(*) FROM events")
    assert (await cursor.fetchone())[0] == 2


@pytest.mark.asyncio
async def test_replaying_same_batch_is_idempotent(test_db, mapping, provider_event, fake_client):
    from calsync.sync.engine import sync_mapping

    batch = [provider_event("A"), provider_event("B")]
    fake_client.responses = [_page(batch, next_sync_token="T1"), _page(batch, next_sync_token="T1")]

    await sync_mapping(mapping.id)
    result = await sync_mapping(mapping.id)

    assert result.imported == 0
    assert result.updated == 2
    assert await _event_mapping_ids(mapping.id) == ["A", "B"]


@pytest.mark.asyncio
async def test_cancelled_event_marks_imported_event_cancelled(test_db, mapping, provider_event, fake_client):
    from calsync.sync.engine import sync_mapping

    fake_client.responses = [
        _page([provider_event("A")], next_sync_token="T1"),
        _page([{"id": "A", "status": "cancelled"}], next_sync_token="T2"),
    ]

    await sync_mapping(mapping.id)
    result = await sync_mapping(mapping.id)

    assert result.cancelled == 1
    assert result.total_seen == 1

    db = await get_database()
    cursor = await db.execute("SELECT status FROM events")
    assert (await cursor.fetchone())["status"] == "cancelled"
    assert await _event_mapping_ids(mapping.id) == ["A"]


@pytest.mark.asyncio
async def test_expired_cursor_is_invalidated_then_window_refetched(test_db, mapping, provider_event, fake_client):
    from calsync.sync.engine import sync_mapping
    from calsync.sync.store import get_cursor_state, upsert_sync_state

    await upsert_sync_state(mapping.id, "T-old", datetime.utcnow())
    fake_client.responses = [
        _page(expired=True),
        _page([provider_event("A")], next_sync_token="T-fresh"),
    ]

    result = await sync_mapping(mapping.id)

    assert result.cursor_invalidated is True
    assert result.checkpointed is False
    assert result.imported == 0
    assert fake_client.calls[0]["sync_token"] == "T-old"
    assert isinstance(await get_cursor_state(mapping.id), InvalidatedCursor)

    result = await sync_mapping(mapping.id)

    assert result.imported == 1
    assert fake_client.calls[1]["sync_token"] is None
    assert fake_client.calls[1]["time_min"] is not None
    state = await get_cursor_state(mapping.id)
    assert isinstance(state, ValidCursor)
    assert state.token == "T-fresh"


@pytest.mark.asyncio
async def test_missing_next_token_leaves_state_untouched(test_db, mapping, provider_event, fake_client):
    from calsync.sync.engine import sync_mapping
    from calsync.sync.store import get_cursor_state

    fake_client.responses = [_page([provider_event("A")])]

    result = await sync_mapping(mapping.id)

    assert result.imported == 1
    assert result.checkpointed is False
    assert isinstance(await get_cursor_state(mapping.id), NoCursor)


@pytest.mark.asyncio
async def test_events_without_times_are_skipped(test_db, mapping, provider_event, fake_client):
    from calsync.sync.engine import sync_mapping

    fake_client.responses = [
        _page([provider_event("A"), {"id": "B", "status": "confirmed"}], next_sync_token="T1")
    ]

    result = await sync_mapping(mapping.id)

    assert result.imported == 1
    assert result.skipped == 1
    assert result.total_seen == 2
    assert await _event_mapping_ids(mapping.id) == ["A"]


@pytest.mark.asyncio
async def test_event_failure_is_skipped_and_cursor_advances(test_db, mapping, provider_event, fake_client, monkeypatch):
    from calsync.sync import engine
    from calsync.sync.store import get_cursor_state, upsert_sync_state

    real_reconcile = engine.reconcile

    async def flaky_reconcile(mapping, event):
        if event.id == "B":
            raise RuntimeError("constraint violated")
        return await real_reconcile(mapping, event)

    monkeypatch.setattr(engine, "reconcile", flaky_reconcile)
    await upsert_sync_state(mapping.id, "T1", datetime.utcnow())
    fake_client.responses = [
        _page([provider_event("A"), provider_event("B"), provider_event("C")], next_sync_token="T2")
    ]

    result = await engine.sync_mapping(mapping.id)

    assert result.imported == 2
    assert result.failed == 1
    assert result.checkpointed is True
    assert (await get_cursor_state(mapping.id)).token == "T2"
    assert await _event_mapping_ids(mapping.id) == ["A", "C"]


@pytest.mark.asyncio
async def test_credential_failure_leaves_state_and_logs(test_db, mapping, fake_client, mocker):
    from calsync.sync.engine import sync_mapping
    from calsync.sync.store import get_cursor_state, upsert_sync_state

    refuse = mocker.patch(
        "calsync.sync.engine.ensure_valid_access_token",
        mocker.AsyncMock(side_effect=CredentialRefreshError("Token refresh rejected: invalid_grant")),
    )
    await upsert_sync_state(mapping.id, "T1", datetime.utcnow())

    with pytest.raises(CredentialRefreshError):
        await sync_mapping(mapping.id)

    refuse.assert_awaited_once()
    assert fake_client.calls == []
    assert (await get_cursor_state(mapping.id)).token == "T1"

    rows = await _sync_log_rows()
    assert rows[-1]["status"] == "failure"
    assert json.loads(rows[-1]["details"]) == {"error": "credential_refresh_failed", "retryable": False}


@pytest.mark.asyncio
async def test_provider_outage_leaves_state_untouched(test_db, mapping, fake_client):
    from calsync.sync.engine import sync_mapping
    from calsync.sync.store import get_cursor_state

    fake_client.responses = [ProviderUnavailableError("Google Calendar returned 503")]

    with pytest.raises(ProviderUnavailableError) as exc_info:
        await sync_mapping(mapping.id)

    assert exc_info.value.retryable is True
    assert isinstance(await get_cursor_state(mapping.id), NoCursor)
    assert await _event_mapping_ids(mapping.id) == []


@pytest.mark.asyncio
async def test_unknown_mapping_raises_not_found(test_db):
    from calsync.sync.engine import sync_mapping

    with pytest.raises(NotFoundError):
        await sync_mapping(9999)


@pytest.mark.asyncio
async def test_inactive_account_raises_not_found(test_db, mapping, fake_client):
    from calsync.auth.accounts import deactivate_account
    from calsync.sync.engine import sync_mapping

    await deactivate_account(mapping.connected_account_id)

    with pytest.raises(NotFoundError):
        await sync_mapping(mapping.id)
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_success_is_recorded_in_sync_log(test_db, mapping, provider_event, fake_client):
    from calsync.sync.engine import sync_mapping

    fake_client.responses = [_page([provider_event("A")], next_sync_token="T1")]

    await sync_mapping(mapping.id)

    rows = await _sync_log_rows()
    assert rows[-1]["status"] == "success"
    assert rows[-1]["calendar_mapping_id"] == mapping.id
    assert json.loads(rows[-1]["details"])["imported"] == 1


@pytest.mark.asyncio
async def test_passes_for_same_mapping_do_not_overlap(test_db, mapping, monkeypatch):
    from calsync.sync import engine
    from calsync.sync.models import SyncResult

    active = 0
    peak = 0

    async def slow_pass(mapping, access_token):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return SyncResult(mapping_id=mapping.id)

    monkeypatch.setattr(engine, "_run_pass", slow_pass)

    results = await asyncio.gather(*(engine.sync_mapping(mapping.id) for _ in range(3)))

    assert len(results) == 3
    assert peak == 1


@pytest.mark.asyncio
async def test_sync_all_collects_errors_and_continues(test_db, mapping, account, provider_event, fake_client):
    from calsync.sync.engine import sync_all_for_user
    from calsync.sync.store import create_calendar_mapping, create_local_calendar

    work_calendar = await create_local_calendar(account.user_id, "Work")
    await create_calendar_mapping(
        connected_account_id=mapping.connected_account_id,
        local_calendar_id=work_calendar,
        provider_calendar_id="work@example.com",
        provider_calendar_name="Work",
    )
    fake_client.responses = [
        _page([provider_event("A")], next_sync_token="T1"),
        ProviderUnavailableError("Google Calendar returned 503"),
    ]

    totals = await sync_all_for_user(account.user_id)

    assert totals["mappings_synced"] == 1
    assert totals["imported"] == 1
    assert len(totals["errors"]) == 1
    assert totals["errors"][0]["error"] == "provider_unavailable"
    assert totals["errors"][0]["retryable"] is True


@pytest.mark.asyncio
async def test_sync_all_skips_disabled_mappings(test_db, mapping, account, fake_client):
    from calsync.sync.engine import sync_all_for_user
    from calsync.sync.store import set_mapping_sync_enabled

    await set_mapping_sync_enabled(mapping.id, False)

    totals = await sync_all_for_user(account.user_id)

    assert totals["mappings_synced"] == 0
    assert fake_client.calls == []


@pytest.mark.asyncio
async def test_dns_failure_is_retryable_and_logged(test_db, mapping, monkeypatch):
    import httplib2

    from calsync.sync.engine import sync_mapping
    from calsync.sync.google_calendar import GoogleCalendarClient
    from calsync.sync.store import get_cursor_state, upsert_sync_state

    def unreachable():
        raise httplib2.ServerNotFoundError("Unable to find the server at www.googleapis.com")

    events_api = SimpleNamespace(list=lambda **kwargs: SimpleNamespace(execute=unreachable))
    service = SimpleNamespace(events=lambda: events_api)
    monkeypatch.setattr("calsync.sync.google_calendar.build", lambda *args, **kwargs: service)
    monkeypatch.setattr("calsync.sync.engine.GoogleCalendarClient", GoogleCalendarClient)
    await upsert_sync_state(mapping.id, "T1", datetime.utcnow())

    with pytest.raises(ProviderUnavailableError):
        await sync_mapping(mapping.id)

    assert (await get_cursor_state(mapping.id)).token == "T1"
    rows = await _sync_log_rows()
    assert json.loads(rows[-1]["details"]) == {"error": "provider_unavailable", "retryable": True}


@pytest.mark.asyncio
async def test_sync_all_continues_past_unexpected_error(test_db, mapping, account, provider_event, fake_client):
    from calsync.sync.engine import sync_all_for_user
    from calsync.sync.store import create_calendar_mapping, create_local_calendar

    work_calendar = await create_local_calendar(account.user_id, "Work")
    await create_calendar_mapping(
        connected_account_id=account.id,
        local_calendar_id=work_calendar,
        provider_calendar_id="work@example.com",
        provider_calendar_name="Work",
    )
    fake_client.responses = [
        RuntimeError("unexpected"),
        _page([provider_event("A")], next_sync_token="T1"),
    ]

    totals = await sync_all_for_user(account.user_id)

    assert totals["mappings_synced"] == 1
    assert totals["imported"] == 1
    assert totals["errors"] == [{"mapping_id": mapping.id, "error": "internal_error", "retryable": False}]

    rows = await _sync_log_rows()
    assert [row["status"] for row in rows] == ["failure", "success"]
