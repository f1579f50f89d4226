"""Access token lifecycle: hand out a usable token, refreshing it when close to expiry."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from calsync.auth.accounts import ConnectedAccount, update_account_tokens
from calsync.auth.google import refresh_access_token
from calsync.config import get_settings
from calsync.errors import CredentialRefreshError

logger = logging.getLogger(__name__)


def token_needs_refresh(account: ConnectedAccount, now: Optional[datetime] = None) -> bool:
    """True when the stored token expires within the refresh skew.

    A token without a recorded expiry is treated as valid.
    """
    if account.token_expires_at is None:
        return False
    now = now or datetime.utcnow()
    skew = timedelta(seconds=get_settings().token_refresh_skew_seconds)
    return account.token_expires_at <= now + skew


async def ensure_valid_access_token(account: ConnectedAccount) -> str:
    """
    Return an access token that is valid for at least the refresh skew.

    The fast path returns the stored token without any network call. Otherwise
    the refresh token is exchanged and the new token and expiry are written
    back to the credential store; ``account`` is updated in place.

    Raises:
        CredentialRefreshError: no refresh token, or the provider rejected it.
            The account stays active; the user has to re-authorize.
        ProviderUnavailableError: the token endpoint could not be reached.
    """
    if not token_needs_refresh(account):
        return account.access_token

    if not account.refresh_token:
        logger.warning(f"Account {account.id} has an expired token and no refresh token")
        raise CredentialRefreshError("No refresh token available; reconnect the account")

    logger.info(f"Refreshing access token for account {account.id}")
    tokens = await refresh_access_token(account.refresh_token)

    access_token = tokens.get("access_token")
    if not access_token:
        raise CredentialRefreshError("Token endpoint returned no access token")

    expires_in = tokens.get("expires_in")
    expires_at = None
    if expires_in:
        expires_at = datetime.utcnow() + timedelta(seconds=int(expires_in))

    new_refresh = tokens.get("refresh_token")
    await update_account_tokens(account.id, access_token, expires_at, refresh_token=new_refresh)

    account.access_token = access_token
    account.token_expires_at = expires_at
    if new_refresh:
        account.refresh_token = new_refresh

    return access_token
