"""Credential store for connected external accounts."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from calsync.database import get_database
from calsync.encryption import decrypt_optional, decrypt_value, encrypt_optional, encrypt_value

logger = logging.getLogger(__name__)

PROVIDER_GOOGLE = "google"


class ConnectedAccount(BaseModel):
    """One authorized external account, with decrypted tokens.

    Only in-process callers see this model; API responses use
    ``ConnectedAccountResponse`` which carries no token material.
    """
    id: int
    user_id: int
    provider: str
    provider_account_id: str
    email: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    is_active: bool = True


def _row_to_account(row) -> ConnectedAccount:
    return ConnectedAccount(
        id=row["id"],
        user_id=row["user_id"],
        provider=row["provider"],
        provider_account_id=row["provider_account_id"],
        email=row["email"],
        access_token=decrypt_value(row["access_token_encrypted"]),
        refresh_token=decrypt_optional(row["refresh_token_encrypted"]),
        token_expires_at=row["token_expires_at"],
        scope=row["scope"],
        is_active=bool(row["is_active"]),
    )


async def store_connected_account(
    user_id: int,
    provider_account_id: str,
    access_token: str,
    refresh_token: Optional[str] = None,
    expires_in: Optional[int] = None,
    scope: Optional[str] = None,
    email: Optional[str] = None,
    provider: str = PROVIDER_GOOGLE,
) -> int:
    """
    Create or reactivate the account for (user, provider, provider account).

    A previously disconnected row for the same tuple is reactivated rather
    than duplicated. A missing refresh token keeps the stored one, since
    the provider only issues it on first consent.
    """
    db = await get_database()
    now = datetime.utcnow()

    expiry = None
    if expires_in:
        expiry = (now + timedelta(seconds=expires_in)).isoformat()

    cursor = await db.execute(
        """SELECT id FROM connected_accounts
           WHERE user_id = ? AND provider = ? AND provider_account_id = ?
           ORDER BY is_active DESC, id DESC
           LIMIT 1""",
        (user_id, provider, provider_account_id)
    )
    existing = await cursor.fetchone()

    access_encrypted = encrypt_value(access_token)
    refresh_encrypted = encrypt_optional(refresh_token)

    if existing:
        await db.execute(
            """UPDATE connected_accounts SET
               access_token_encrypted = ?,
               refresh_token_encrypted = COALESCE(?, refresh_token_encrypted),
               token_expires_at = ?, scope = COALESCE(?, scope),
               email = COALESCE(?, email),
               is_active = TRUE, deactivated_at = NULL, updated_at = ?
               WHERE id = ?""",
            (access_encrypted, refresh_encrypted, expiry, scope, email,
             now.isoformat(), existing["id"])
        )
        await db.commit()
        return existing["id"]

    cursor = await db.execute(
        """INSERT INTO connected_accounts
           (user_id, provider, provider_account_id, email,
            access_token_encrypted, refresh_token_encrypted,
            token_expires_at, scope, is_active, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, TRUE, ?)
           RETURNING id""",
        (user_id, provider, provider_account_id, email, access_encrypted,
         refresh_encrypted, expiry, scope, now.isoformat())
    )
    row = await cursor.fetchone()
    await db.commit()
    logger.info(f"Connected {provider} account {row['id']} for user {user_id}")
    return row["id"]


async def get_connected_account(account_id: int) -> Optional[ConnectedAccount]:
    """Get an account by id, active or not."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM connected_accounts WHERE id = ?", (account_id,)
    )
    row = await cursor.fetchone()
    if row:
        return _row_to_account(row)
    return None


async def list_connected_accounts(user_id: int, active_only: bool = True) -> list[ConnectedAccount]:
    """List a user's connected accounts."""
    db = await get_database()
    query = "SELECT * FROM connected_accounts WHERE user_id = ?"
    if active_only:
        query += " AND is_active = TRUE"
    cursor = await db.execute(query + " ORDER BY id", (user_id,))
    rows = await cursor.fetchall()
    return [_row_to_account(row) for row in rows]


async def list_accounts_expiring_before(threshold: datetime) -> list[ConnectedAccount]:
    """Active accounts whose access token expires before ``threshold``."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM connected_accounts
           WHERE is_active = TRUE
             AND refresh_token_encrypted IS NOT NULL
             AND token_expires_at IS NOT NULL AND token_expires_at < ?""",
        (threshold.isoformat(),)
    )
    rows = await cursor.fetchall()
    return [_row_to_account(row) for row in rows]


async def update_account_tokens(
    account_id: int,
    access_token: str,
    expires_at: Optional[datetime],
    refresh_token: Optional[str] = None,
) -> None:
    """Persist refreshed tokens in a single-row write.

    Concurrent refreshes are tolerated: whichever write lands last wins.
    """
    db = await get_database()
    await db.execute(
        """UPDATE connected_accounts SET
           access_token_encrypted = ?,
           refresh_token_encrypted = COALESCE(?, refresh_token_encrypted),
           token_expires_at = ?, updated_at = ?
           WHERE id = ?""",
        (
            encrypt_value(access_token),
            encrypt_optional(refresh_token),
            expires_at.isoformat() if expires_at else None,
            datetime.utcnow().isoformat(),
            account_id,
        )
    )
    await db.commit()


async def deactivate_account(account_id: int) -> bool:
    """Soft-disconnect an account. Returns False if it was not active."""
    db = await get_database()
    now = datetime.utcnow().isoformat()
    cursor = await db.execute(
        """UPDATE connected_accounts SET is_active = FALSE, deactivated_at = ?, updated_at = ?
           WHERE id = ? AND is_active = TRUE""",
        (now, now, account_id)
    )
    await db.commit()
    if cursor.rowcount:
        logger.info(f"Deactivated connected account {account_id}")
        return True
    return False
