"""
Credentials Router — the Amazon Ads accounts the scheduler syncs.

Secrets are Fernet-encrypted at rest and never returned. Storing a
client_secret together with a refresh_token turns on automatic token
refresh. A successful connection test authorizes the account and gives it
its default sync schedule.
"""

from datetime import datetime, timedelta
from typing import Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adops.crypto import encrypt_value
from adops.database import get_db
from adops.mcp_client import MCPError
from adops.models import ActivityLog, Credential, CredentialStatus
from adops.services.account_service import AuthenticationError, ensure_default_schedule, get_client_for_account
from adops.utils import utcnow

router = APIRouter()

SECRET_FIELDS = ("client_secret", "access_token", "refresh_token")
# Login with Amazon access tokens are valid for one hour
ACCESS_TOKEN_LIFETIME = timedelta(hours=1)


# ── Schemas ──────────────────────────────────────────────────────────
class CredentialCreate(BaseModel):
    name: str
    client_id: str
    access_token: str
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    profile_id: Optional[str] = None
    account_id: Optional[str] = None
    region: Literal["na", "eu", "fe"] = "na"


class CredentialUpdate(BaseModel):
    name: Optional[str] = None
    access_token: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    profile_id: Optional[str] = None
    account_id: Optional[str] = None
    region: Optional[Literal["na", "eu", "fe"]] = None


class CredentialOut(BaseModel):
    id: UUID
    name: str
    client_id: str
    profile_id: Optional[str] = None
    account_id: Optional[str] = None
    region: Optional[str] = None
    status: str
    has_client_secret: bool
    has_refresh_token: bool
    auto_refresh_enabled: bool
    token_expires_at: Optional[datetime] = None
    last_tested_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def of(cls, cred: Credential) -> "CredentialOut":
        return cls(
            id=cred.id,
            name=cred.name,
            client_id=cred.client_id,
            profile_id=cred.profile_id,
            account_id=cred.account_id,
            region=cred.region,
            status=cred.status,
            has_client_secret=bool(cred.client_secret),
            has_refresh_token=bool(cred.refresh_token),
            auto_refresh_enabled=bool(cred.client_secret and cred.refresh_token),
            token_expires_at=cred.token_expires_at,
            last_tested_at=cred.last_tested_at,
            created_at=cred.created_at,
            updated_at=cred.updated_at,
        )


# ── Helpers ───────────────────────────────────────────────────────────
async def _load(db: AsyncSession, cred_id: UUID) -> Credential:
    cred = await db.get(Credential, cred_id)
    if cred is None:
        raise HTTPException(status_code=404, detail="Credential not found")
    return cred


def _audit(db: AsyncSession, cred_id: Optional[UUID], action: str, description: str, **extra) -> None:
    db.add(ActivityLog(
        credential_id=cred_id,
        action=action,
        category="settings",
        description=description,
        entity_type="credential",
        entity_id=str(extra.pop("entity_id", cred_id)),
        **extra,
    ))


# ── Endpoints ────────────────────────────────────────────────────────
@router.get("", response_model=list[CredentialOut])
async def list_credentials(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Credential).order_by(Credential.created_at.desc()))
    return [CredentialOut.of(c) for c in result.scalars().all()]


@router.post("", response_model=CredentialOut)
async def create_credential(payload: CredentialCreate, db: AsyncSession = Depends(get_db)):
    values = payload.model_dump()
    for field in SECRET_FIELDS:
        values[field] = encrypt_value(values[field])
    cred = Credential(**values)
    if cred.client_secret and cred.refresh_token:
        cred.token_expires_at = utcnow() + ACCESS_TOKEN_LIFETIME
    db.add(cred)
    await db.flush()

    mode = "auto-refresh" if cred.token_expires_at else "manual tokens"
    _audit(db, cred.id, "credential_created", f"Added account {cred.name} ({mode})")
    await db.flush()
    await db.refresh(cred)
    return CredentialOut.of(cred)


@router.put("/{cred_id}", response_model=CredentialOut)
async def update_credential(cred_id: UUID, payload: CredentialUpdate, db: AsyncSession = Depends(get_db)):
    cred = await _load(db, cred_id)
    changes = payload.model_dump(exclude_none=True)
    for field, value in changes.items():
        setattr(cred, field, encrypt_value(value) if field in SECRET_FIELDS else value)
    if any(field in changes for field in SECRET_FIELDS):
        # new secrets give an expired or failing account another try
        cred.status = CredentialStatus.ACTIVE.value
    cred.updated_at = utcnow()

    _audit(db, cred.id, "credential_updated", f"Updated account {cred.name}", details={"fields": sorted(changes)})
    await db.flush()
    await db.refresh(cred)
    return CredentialOut.of(cred)


@router.delete("/{cred_id}")
async def delete_credential(cred_id: UUID, db: AsyncSession = Depends(get_db)):
    cred = await _load(db, cred_id)
    # the log row outlives the credential, so it is not linked to it
    _audit(db, None, "credential_deleted", f"Deleted account {cred.name}", entity_id=cred_id)
    await db.delete(cred)
    return {"status": "deleted"}


@router.post("/{cred_id}/test")
async def test_credential(cred_id: UUID, db: AsyncSession = Depends(get_db)):
    """Connect to the MCP server with this account's credentials."""
    cred = await _load(db, cred_id)
    cred.status = CredentialStatus.ACTIVE.value

    outcome: dict = {"status": "connected"}
    try:
        client = await get_client_for_account(db, cred.id)
        outcome["tools_available"] = len(await client.list_tools())
    except AuthenticationError as e:
        cred.status = CredentialStatus.EXPIRED.value
        outcome = {"status": "error", "error": str(e)}
    except MCPError as e:
        cred.status = CredentialStatus.ERROR.value
        outcome = {"status": "error", "error": str(e)}

    cred.last_tested_at = cred.updated_at = utcnow()
    outcome["auto_refresh_enabled"] = bool(cred.client_secret and cred.refresh_token)
    if cred.token_expires_at:
        outcome["token_expires_at"] = cred.token_expires_at.isoformat()

    connected = outcome["status"] == "connected"
    if connected:
        outcome["schedule_created"] = await ensure_default_schedule(db, cred.id) is not None

    _audit(
        db, cred.id, "credential_tested", f"Connection test for {cred.name}: {outcome['status']}",
        details=outcome, status="success" if connected else "error",
    )
    return outcome
