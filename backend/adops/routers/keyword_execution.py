"""
Keyword Execution Router — config, preview, manual runs, history and
rollback for automated keyword pause/enable.
"""

from uuid import UUID
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adops.database import get_db
from adops.models import (
    ActivityLog, Credential, ExecutionMode, ExecutionType, KeywordExecutionConfig,
    KeywordExecutionDetail, KeywordExecutionRecord, KeywordRollbackRecord,
)
from adops.mcp_client import MCPError
from adops.services.account_service import AuthenticationError
from adops.services.keyword_execution_service import get_config, preview_keyword_actions, run_keyword_execution
from adops.services.rollback_service import RollbackIneligible, rollback_execution
from adops.utils import safe_error_detail, utcnow

router = APIRouter()


# ── Schemas ──────────────────────────────────────────────────────────
class ConfigUpsert(BaseModel):
    is_enabled: Optional[bool] = None
    execution_mode: Optional[ExecutionMode] = None
    acos_threshold: Optional[float] = Field(default=None, ge=0)
    spend_threshold: Optional[float] = Field(default=None, ge=0)
    clicks_threshold: Optional[int] = Field(default=None, ge=0)
    lookback_days: Optional[int] = Field(default=None, ge=1, le=90)
    max_daily_pauses: Optional[int] = Field(default=None, ge=0)
    max_daily_enables: Optional[int] = Field(default=None, ge=0)
    exclude_top_performers: Optional[bool] = None
    top_performer_threshold: Optional[float] = Field(default=None, ge=0)
    rollback_window_hours: Optional[int] = Field(default=None, ge=1, le=720)


class RollbackRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)


def _config_to_response(config: KeywordExecutionConfig) -> dict:
    return {
        "id": config.id,
        "credential_id": config.credential_id,
        "is_enabled": config.is_enabled,
        "execution_mode": config.execution_mode,
        "acos_threshold": config.acos_threshold,
        "spend_threshold": config.spend_threshold,
        "clicks_threshold": config.clicks_threshold,
        "lookback_days": config.lookback_days,
        "max_daily_pauses": config.max_daily_pauses,
        "max_daily_enables": config.max_daily_enables,
        "exclude_top_performers": config.exclude_top_performers,
        "top_performer_threshold": config.top_performer_threshold,
        "rollback_window_hours": config.rollback_window_hours,
        "updated_at": config.updated_at,
    }


def _record_to_response(record: KeywordExecutionRecord) -> dict:
    return {
        "id": record.id,
        "credential_id": record.credential_id,
        "execution_type": record.execution_type,
        "dry_run": record.dry_run,
        "status": record.status,
        "total_keywords": record.total_keywords,
        "paused_count": record.paused_count,
        "enabled_count": record.enabled_count,
        "skipped_count": record.skipped_count,
        "failed_count": record.failed_count,
        "error_message": record.error_message,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
    }


async def _require_credential(db: AsyncSession, account_id: UUID) -> None:
    if await db.get(Credential, account_id) is None:
        raise HTTPException(status_code=404, detail="Account not found")


# ── Config ───────────────────────────────────────────────────────────
@router.get("/accounts/{account_id}/config")
async def get_execution_config(account_id: UUID, db: AsyncSession = Depends(get_db)):
    config = await get_config(db, account_id)
    if config is None:
        raise HTTPException(status_code=404, detail="Keyword execution is not configured for this account")
    return _config_to_response(config)


@router.put("/accounts/{account_id}/config")
async def upsert_execution_config(account_id: UUID, payload: ConfigUpsert, db: AsyncSession = Depends(get_db)):
    await _require_credential(db, account_id)
    config = await get_config(db, account_id)
    if config is None:
        config = KeywordExecutionConfig(
            credential_id=account_id,
            is_enabled=False,
            execution_mode=ExecutionMode.MANUAL.value,
            acos_threshold=50.0,
            spend_threshold=20.0,
            clicks_threshold=20,
            lookback_days=14,
            max_daily_pauses=10,
            max_daily_enables=5,
            exclude_top_performers=False,
            top_performer_threshold=20.0,
            rollback_window_hours=24,
        )
        db.add(config)

    changes = payload.model_dump(exclude_none=True, mode="json")
    for key, value in changes.items():
        setattr(config, key, value)
    config.updated_at = utcnow()

    db.add(ActivityLog(
        credential_id=account_id,
        action="keyword_execution_config_updated",
        category="keyword_execution",
        description=f"Keyword auto-execution {'enabled' if config.is_enabled else 'disabled'} ({config.execution_mode})",
        entity_type="keyword_execution_config",
        entity_id=str(account_id),
        details=changes,
    ))
    await db.flush()
    await db.refresh(config)
    return _config_to_response(config)


# ── Preview & run ────────────────────────────────────────────────────
@router.get("/accounts/{account_id}/preview")
async def preview(account_id: UUID, db: AsyncSession = Depends(get_db)):
    """Keywords the engine would pause or enable right now."""
    await _require_credential(db, account_id)
    actions = await preview_keyword_actions(db, account_id)
    return {
        "credential_id": account_id,
        "pause": sum(1 for a in actions if a["action"] == "pause" and not a["held"]),
        "enable": sum(1 for a in actions if a["action"] == "enable" and not a["held"]),
        "held": sum(1 for a in actions if a["held"]),
        "actions": actions,
    }


@router.post("/accounts/{account_id}/run")
async def run_now(account_id: UUID, db: AsyncSession = Depends(get_db)):
    await _require_credential(db, account_id)
    record = await run_keyword_execution(db, account_id, ExecutionType.MANUAL.value)
    return _record_to_response(record)


@router.get("/accounts/{account_id}/history")
async def history(account_id: UUID, limit: int = 20, db: AsyncSession = Depends(get_db)):
    result = await db.execute(
        select(KeywordExecutionRecord)
        .where(KeywordExecutionRecord.credential_id == account_id)
        .order_by(KeywordExecutionRecord.started_at.desc())
        .limit(min(max(limit, 1), 100))
    )
    return [_record_to_response(r) for r in result.scalars().all()]


# ── Execution details & rollback ─────────────────────────────────────
@router.get("/executions/{execution_id}/details")
async def execution_details(execution_id: UUID, db: AsyncSession = Depends(get_db)):
    record = await db.get(KeywordExecutionRecord, execution_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Execution not found")

    details = await db.execute(
        select(KeywordExecutionDetail)
        .where(KeywordExecutionDetail.execution_id == execution_id)
        .order_by(KeywordExecutionDetail.created_at)
    )
    rollbacks = await db.execute(
        select(KeywordRollbackRecord)
        .where(KeywordRollbackRecord.execution_id == execution_id)
        .order_by(KeywordRollbackRecord.created_at)
    )
    return {
        "execution": _record_to_response(record),
        "details": [
            {
                "keyword_id": d.keyword_id,
                "keyword_text": d.keyword_text,
                "action_type": d.action_type,
                "status": d.status,
                "status_before": d.status_before,
                "status_after": d.status_after,
                "reason": d.reason,
                "spend": d.spend,
                "sales": d.sales,
                "clicks": d.clicks,
                "acos": d.acos,
                "error_message": d.error_message,
            }
            for d in details.scalars().all()
        ],
        "rollbacks": [
            {
                "id": r.id,
                "reason": r.reason,
                "rolled_back_count": r.rolled_back_count,
                "errors": r.errors,
                "created_at": r.created_at,
            }
            for r in rollbacks.scalars().all()
        ],
    }


@router.post("/executions/{execution_id}/rollback")
async def rollback(execution_id: UUID, payload: RollbackRequest, db: AsyncSession = Depends(get_db)):
    try:
        record = await rollback_execution(db, execution_id, payload.reason)
    except LookupError:
        raise HTTPException(status_code=404, detail="Execution not found")
    except RollbackIneligible as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AuthenticationError as e:
        await db.commit()
        raise HTTPException(status_code=401, detail=str(e))
    except MCPError as e:
        raise HTTPException(status_code=502, detail=safe_error_detail(e, "Failed to communicate with Amazon Ads API."))
    return {
        "id": record.id,
        "execution_id": record.execution_id,
        "rolled_back_count": record.rolled_back_count,
        "errors": record.errors,
    }
