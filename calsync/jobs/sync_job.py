"""Periodic sync and token refresh jobs."""

import logging
import socket
from datetime import datetime, timedelta

import aiosqlite

from calsync.config import get_settings
from calsync.database import get_database
from calsync.errors import CredentialRefreshError, SyncError

logger = logging.getLogger(__name__)


async def run_periodic_sync() -> None:
    """Run a sync pass for every enabled mapping of every active account."""
    if not await acquire_job_lock("periodic_sync"):
        logger.debug("Periodic sync already running, skipping")
        return

    try:
        from calsync.sync.engine import sync_mapping
        from calsync.sync.store import list_syncable_mapping_ids

        mapping_ids = await list_syncable_mapping_ids()
        logger.info(f"Running periodic sync for {len(mapping_ids)} mappings")

        failures = 0
        for mapping_id in mapping_ids:
            try:
                await sync_mapping(mapping_id)
            except SyncError as e:
                failures += 1
                logger.error(f"Periodic sync of mapping {mapping_id} failed: {e.reason}")
            except Exception as e:
                failures += 1
                logger.error(f"Error syncing mapping {mapping_id}: {e}")

        logger.info(f"Periodic sync completed ({failures} failed)")

    finally:
        await release_job_lock("periodic_sync")


async def refresh_expiring_tokens() -> None:
    """Proactively refresh access tokens that expire before the next run."""
    settings = get_settings()
    threshold = datetime.utcnow() + timedelta(minutes=settings.token_refresh_minutes)

    from calsync.auth.accounts import list_accounts_expiring_before
    from calsync.auth.tokens import ensure_valid_access_token

    expiring = await list_accounts_expiring_before(threshold)
    if not expiring:
        return

    logger.info(f"Refreshing {len(expiring)} expiring tokens")

    for account in expiring:
        try:
            await ensure_valid_access_token(account)
        except CredentialRefreshError:
            logger.warning(f"Account {account.id} needs to be re-authorized")
        except SyncError as e:
            logger.error(f"Failed to refresh token for account {account.id}: {e.reason}")
        except Exception as e:
            logger.error(f"Error refreshing token for account {account.id}: {e}")


async def acquire_job_lock(job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    db = await get_database()
    now = datetime.utcnow()
    cutoff = (now - timedelta(minutes=timeout_minutes)).isoformat()

    # Stale locks from crashed workers
    await db.execute(
        "DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?",
        (job_name, cutoff)
    )
    await db.commit()

    try:
        await db.execute(
            """INSERT INTO job_locks (job_name, locked_at, locked_by)
               VALUES (?, ?, ?)""",
            (job_name, now.isoformat(), socket.gethostname())
        )
        await db.commit()
        return True
    except aiosqlite.IntegrityError:
        return False


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()
