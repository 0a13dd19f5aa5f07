"""
Scheduler Router — scheduler status, operator triggers and per-account
custom sync schedules.
"""

from uuid import UUID
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adops.database import get_db
from adops.models import AccountSyncSchedule, ActivityLog, Credential, ScheduleSyncType, SyncLog
from adops.services.frequency import UnknownFrequency, parse_preferred_time, resolve_frequency
from adops.services.scheduler_service import SchedulerStatus, SyncScheduler
from adops.services.sync_service import SYNC_TYPES
from adops.services.sync_tiers import SyncTier
from adops.utils import utcnow

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────
class ManualSyncRequest(BaseModel):
    sync_types: list[str] = Field(default_factory=lambda: ["full_sync"])

    @field_validator("sync_types")
    @classmethod
    def _known_types(cls, value: list[str]) -> list[str]:
        unknown = [t for t in value if t not in SYNC_TYPES]
        if unknown:
            raise ValueError(f"Unknown sync types: {', '.join(unknown)}")
        if not value:
            raise ValueError("At least one sync type is required")
        return value


class ScheduleUpsert(BaseModel):
    sync_type: ScheduleSyncType = ScheduleSyncType.ALL
    frequency: str
    preferred_time: Optional[str] = None
    preferred_day_of_week: Optional[int] = Field(default=None, ge=0, le=6)
    is_enabled: bool = True

    @field_validator("preferred_time")
    @classmethod
    def _valid_time(cls, value: Optional[str]) -> Optional[str]:
        parse_preferred_time(value)
        return value


def _schedule_to_response(schedule: AccountSyncSchedule) -> dict:
    return {
        "id": schedule.id,
        "credential_id": schedule.credential_id,
        "sync_type": schedule.sync_type,
        "frequency": schedule.frequency,
        "preferred_time": schedule.preferred_time,
        "preferred_day_of_week": schedule.preferred_day_of_week,
        "is_enabled": schedule.is_enabled,
        "last_run_at": schedule.last_run_at,
        "next_run_at": schedule.next_run_at,
        "updated_at": schedule.updated_at,
    }


# ── Helpers ───────────────────────────────────────────────────────────
def _get_scheduler(request: Request) -> SyncScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Sync scheduler is not running")
    return scheduler


async def _require_credential(db: AsyncSession, account_id: UUID) -> Credential:
    cred = await db.get(Credential, account_id)
    if cred is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return cred


async def _get_schedule(db: AsyncSession, account_id: UUID) -> Optional[AccountSyncSchedule]:
    result = await db.execute(
        select(AccountSyncSchedule).where(AccountSyncSchedule.credential_id == account_id)
    )
    return result.scalar_one_or_none()


# ── Status & triggers ────────────────────────────────────────────────
@router.get("/status", response_model=SchedulerStatus)
async def get_status(scheduler: SyncScheduler = Depends(_get_scheduler)):
    return scheduler.get_status()


@router.post("/tiers/{tier}/run", status_code=202)
async def run_tier(tier: SyncTier, scheduler: SyncScheduler = Depends(_get_scheduler)):
    if not scheduler.run_tier_now(tier):
        raise HTTPException(status_code=409, detail=f"Tier {tier.value} is already running")
    return {"status": "started", "tier": tier.value}


@router.post("/accounts/{account_id}/sync")
async def trigger_sync(
    account_id: UUID,
    payload: Optional[ManualSyncRequest] = None,
    scheduler: SyncScheduler = Depends(_get_scheduler),
    db: AsyncSession = Depends(get_db),
):
    """Run a sync for one account now and wait for the outcome."""
    await _require_credential(db, account_id)
    sync_types = (payload or ManualSyncRequest()).sync_types
    ok = await scheduler.trigger_manual_sync(account_id, sync_types)

    result = await db.execute(
        select(SyncLog)
        .where(SyncLog.credential_id == account_id, SyncLog.trigger == "manual")
        .order_by(SyncLog.started_at.desc())
        .limit(1)
    )
    log = result.scalar_one_or_none()
    return {
        "status": "completed" if ok else "failed",
        "sync_types": sync_types,
        "stats": log.stats if log else None,
        "error": log.error_message if log and not ok else None,
    }


@router.get("/accounts/{account_id}/logs")
async def list_sync_logs(account_id: UUID, limit: int = 20, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(SyncLog)
        .where(SyncLog.credential_id == account_id)
        .order_by(SyncLog.started_at.desc())
        .limit(min(max(limit, 1), 100))
    )
    return [
        {
            "id": log.id,
            "trigger": log.trigger,
            "sync_types": log.sync_types,
            "status": log.status,
            "stats": log.stats,
            "error_message": log.error_message,
            "started_at": log.started_at,
            "completed_at": log.completed_at,
        }
        for log in result.scalars().all()
    ]


# ── Custom schedules ─────────────────────────────────────────────────
@router.get("/accounts/{account_id}/schedule")
async def get_schedule(account_id: UUID, db: AsyncSession = Depends(get_db)):
    schedule = await _get_schedule(db, account_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="No sync schedule for this account")
    return _schedule_to_response(schedule)


@router.put("/accounts/{account_id}/schedule")
async def upsert_schedule(account_id: UUID, payload: ScheduleUpsert, db: AsyncSession = Depends(get_db)):
    await _require_credential(db, account_id)
    try:
        interval = resolve_frequency(payload.frequency)
    except UnknownFrequency as e:
        raise HTTPException(status_code=400, detail=str(e))

    schedule = await _get_schedule(db, account_id)
    if schedule is None:
        schedule = AccountSyncSchedule(credential_id=account_id)
        db.add(schedule)

    schedule.sync_type = payload.sync_type.value
    schedule.frequency = payload.frequency
    schedule.preferred_time = payload.preferred_time
    schedule.preferred_day_of_week = payload.preferred_day_of_week
    schedule.is_enabled = payload.is_enabled
    schedule.next_run_at = (schedule.last_run_at + interval) if schedule.last_run_at else None
    schedule.updated_at = utcnow()

    db.add(ActivityLog(
        credential_id=account_id,
        action="sync_schedule_updated",
        category="sync",
        description=f"Sync schedule set to {payload.frequency} ({payload.sync_type.value})",
        entity_type="sync_schedule",
        entity_id=str(account_id),
        details=payload.model_dump(mode="json"),
    ))
    await db.flush()
    await db.refresh(schedule)
    return _schedule_to_response(schedule)


@router.delete("/accounts/{account_id}/schedule")
async def delete_schedule(account_id: UUID, db: AsyncSession = Depends(get_db)):
    schedule = await _get_schedule(db, account_id)
    if schedule is None:
        raise HTTPException(status_code=404, detail="No sync schedule for this account")
    await db.delete(schedule)
    db.add(ActivityLog(
        credential_id=account_id,
        action="sync_schedule_deleted",
        category="sync",
        description="Sync schedule removed",
        entity_type="sync_schedule",
        entity_id=str(account_id),
    ))
    return {"status": "deleted"}
