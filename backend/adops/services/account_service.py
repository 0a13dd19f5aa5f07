"""
Account Service — the credential store the scheduler and keyword engine
read from, plus OAuth token refresh for Amazon Ads (Login with Amazon).

An "account" here is a Credential row; its id is the account id used as a
lock key, schedule owner and foreign key throughout.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adops.config import get_settings
from adops.crypto import decrypt_value, encrypt_value
from adops.mcp_client import AmazonAdsMCP
from adops.models import AccountSyncSchedule, ActivityLog, Credential, CredentialStatus, ScheduleSyncType
from adops.services.frequency import resolve_frequency_ms
from adops.utils import utcnow

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.amazon.com/auth/o2/token"

# Refresh 5 minutes before actual expiry to avoid race conditions
REFRESH_BUFFER = timedelta(minutes=5)


class AuthenticationError(Exception):
    """Credentials are missing, expired or were rejected by Login with Amazon."""

    def __init__(self, credential_id, message: str):
        super().__init__(message)
        self.credential_id = credential_id


# ══════════════════════════════════════════════════════════════════════
#  CREDENTIAL STORE
# ══════════════════════════════════════════════════════════════════════

async def list_active_accounts(db: AsyncSession) -> list[uuid.UUID]:
    """Ids of credentials the scheduler should sync."""
    result = await db.execute(
        select(Credential.id)
        .where(Credential.status == CredentialStatus.ACTIVE.value)
        .order_by(Credential.created_at)
    )
    return list(result.scalars().all())


async def get_credentials(db: AsyncSession, credential_id: uuid.UUID) -> Credential:
    """Load a usable credential or raise AuthenticationError."""
    result = await db.execute(select(Credential).where(Credential.id == credential_id))
    cred = result.scalar_one_or_none()
    if cred is None:
        raise AuthenticationError(credential_id, f"Credential {credential_id} not found")
    if cred.status != CredentialStatus.ACTIVE.value:
        raise AuthenticationError(credential_id, f"Credential '{cred.name}' is {cred.status}")
    return cred


# ══════════════════════════════════════════════════════════════════════
#  TOKEN REFRESH
# ══════════════════════════════════════════════════════════════════════

async def refresh_access_token(client_id: str, client_secret: str, refresh_token: str) -> dict:
    """Exchange a refresh token for a new access token via Amazon LwA."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=30,
        )
        response.raise_for_status()
        return response.json()


def _token_is_expired(cred: Credential, now: Optional[datetime] = None) -> bool:
    if not cred.token_expires_at:
        # No expiry tracked; refresh whenever we are able to
        return cred.client_secret is not None and cred.refresh_token is not None
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    expires_at = cred.token_expires_at
    if expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    return now >= expires_at - REFRESH_BUFFER


async def ensure_fresh_token(cred: Credential, db: AsyncSession) -> Credential:
    """
    Refresh the access token if it is expired or about to expire.
    A rejected refresh marks the credential expired and raises
    AuthenticationError; the caller's run for this account ends there.
    """
    if not cred.client_secret or not cred.refresh_token or not _token_is_expired(cred):
        return cred

    logger.info(f"Token expired for credential '{cred.name}', refreshing...")
    try:
        token_data = await refresh_access_token(
            client_id=cred.client_id,
            client_secret=decrypt_value(cred.client_secret),
            refresh_token=decrypt_value(cred.refresh_token),
        )
    except httpx.HTTPStatusError as e:
        logger.error(f"Token refresh failed for '{cred.name}': {e.response.status_code} {e.response.text[:200]}")
        cred.status = CredentialStatus.EXPIRED.value
        await db.flush()
        raise AuthenticationError(cred.id, f"Token refresh rejected ({e.response.status_code})") from e
    except httpx.HTTPError as e:
        logger.error(f"Token refresh failed for '{cred.name}': {e}")
        raise AuthenticationError(cred.id, f"Token refresh failed: {e}") from e

    cred.access_token = encrypt_value(token_data["access_token"])
    expires_in = token_data.get("expires_in", 3600)
    cred.token_expires_at = utcnow() + timedelta(seconds=expires_in)
    cred.status = CredentialStatus.ACTIVE.value
    if "refresh_token" in token_data:
        cred.refresh_token = encrypt_value(token_data["refresh_token"])
    await db.flush()
    logger.info(f"Token refreshed for '{cred.name}', expires in {expires_in}s")
    return cred


async def get_client_for_account(db: AsyncSession, credential_id: uuid.UUID) -> AmazonAdsMCP:
    """
    Main entry point for remote access: load the credential, refresh its
    token when needed and build an MCP client for it.
    """
    cred = await get_credentials(db, credential_id)
    cred = await ensure_fresh_token(cred, db)
    return AmazonAdsMCP(
        client_id=cred.client_id,
        access_token=decrypt_value(cred.access_token),
        region=cred.region or get_settings().mcp_region,
        profile_id=cred.profile_id,
        account_id=cred.account_id,
    )


# ══════════════════════════════════════════════════════════════════════
#  DEFAULT SCHEDULE
# ══════════════════════════════════════════════════════════════════════

async def ensure_default_schedule(db: AsyncSession, credential_id: uuid.UUID) -> Optional[AccountSyncSchedule]:
    """
    Create the account's sync schedule after its first successful
    authorization. Returns the new schedule, or None if one exists.
    """
    existing = await db.execute(
        select(AccountSyncSchedule).where(AccountSyncSchedule.credential_id == credential_id)
    )
    if existing.scalar_one_or_none() is not None:
        return None

    frequency = get_settings().default_sync_frequency
    resolve_frequency_ms(frequency)
    schedule = AccountSyncSchedule(
        credential_id=credential_id,
        sync_type=ScheduleSyncType.ALL.value,
        frequency=frequency,
        is_enabled=True,
    )
    db.add(schedule)
    db.add(ActivityLog(
        credential_id=credential_id,
        action="sync_schedule_created",
        category="sync",
        description=f"Default sync schedule created ({frequency})",
        entity_type="sync_schedule",
        entity_id=str(credential_id),
    ))
    await db.flush()
    logger.info(f"Default sync schedule ({frequency}) created for account {credential_id}")
    return schedule
