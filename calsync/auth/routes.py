"""OAuth routes for connecting an external calendar account."""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse

from calsync.auth.accounts import get_connected_account, store_connected_account
from calsync.auth.google import (
    build_auth_url,
    exchange_code_for_tokens,
    get_oauth_credentials,
    get_scopes,
    get_user_info,
)
from calsync.auth.session import User, get_current_user
from calsync.config import get_redirect_uri
from calsync.database import get_database
from calsync.utils.tasks import create_background_task

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth/google", tags=["auth"])


async def store_oauth_state(state: str, user_id: int, next_url: Optional[str] = None, ttl_minutes: int = 10) -> None:
    """Store OAuth state in database with TTL."""
    db = await get_database()
    expires_at = (datetime.utcnow() + timedelta(minutes=ttl_minutes)).isoformat()
    await db.execute(
        """INSERT INTO oauth_states (state, user_id, next_url, expires_at)
           VALUES (?, ?, ?, ?)""",
        (state, user_id, next_url, expires_at)
    )
    await db.commit()


async def consume_oauth_state(state: Optional[str]) -> Optional[dict]:
    """Retrieve and delete an unexpired OAuth state (single use)."""
    if not state:
        return None

    db = await get_database()
    cursor = await db.execute(
        """SELECT user_id, next_url FROM oauth_states
           WHERE state = ? AND expires_at > ?""",
        (state, datetime.utcnow().isoformat())
    )
    row = await cursor.fetchone()

    await db.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
    await db.commit()

    if row:
        return {"user_id": row["user_id"], "next": row["next_url"]}
    return None


async def cleanup_expired_oauth_states() -> None:
    """Clean up expired OAuth states."""
    db = await get_database()
    await db.execute(
        "DELETE FROM oauth_states WHERE expires_at < ?",
        (datetime.utcnow().isoformat(),)
    )
    await db.commit()


async def _discover_after_connect(account_id: int) -> None:
    from calsync.sync.discovery import discover_calendars

    account = await get_connected_account(account_id)
    if account:
        await discover_calendars(account)


@router.get("/connect")
async def connect_google(next: Optional[str] = None, user: User = Depends(get_current_user)):
    """Start the OAuth flow for connecting a Google account."""
    try:
        client_id, _ = get_oauth_credentials()
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OAuth credentials not configured"
        )

    # Only same-site relative redirects
    if next and (not next.startswith("/") or next.startswith("//")):
        next = None

    state = secrets.token_urlsafe(32)
    await store_oauth_state(state, user.id, next_url=next)
    await cleanup_expired_oauth_states()

    auth_url = build_auth_url(
        client_id=client_id,
        redirect_uri=get_redirect_uri(),
        scopes=get_scopes(),
        state=state,
        login_hint=user.email,
    )
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    """Complete the OAuth flow: store the account and start discovery."""
    if error:
        logger.warning(f"OAuth consent returned error: {error}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Authorization failed: {error}",
        )

    state_data = await consume_oauth_state(state)
    if not state_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired OAuth state",
        )

    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing authorization code",
        )

    try:
        tokens = await exchange_code_for_tokens(code, get_redirect_uri())
        user_info = await get_user_info(tokens["access_token"])
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    account_id = await store_connected_account(
        user_id=state_data["user_id"],
        provider_account_id=user_info["id"],
        email=user_info.get("email"),
        access_token=tokens["access_token"],
        refresh_token=tokens.get("refresh_token"),
        expires_in=tokens.get("expires_in"),
        scope=tokens.get("scope"),
    )

    create_background_task(_discover_after_connect(account_id), f"discover_account_{account_id}")

    if state_data["next"]:
        return RedirectResponse(url=state_data["next"], status_code=status.HTTP_302_FOUND)
    return {"status": "ok", "account_id": account_id}
