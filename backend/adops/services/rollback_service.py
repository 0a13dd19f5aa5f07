"""
Rollback Processor — reverses the keyword state changes of one execution.

Only completed executions that changed at least one keyword can be rolled
back, only within the account's rollback window, and only once
successfully. Each successful detail is inverted (pause -> enable,
enable -> pause); the outcome is a new KeywordRollbackRecord. The
execution record and its details are left as they were.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from adops.config import Settings, get_settings
from adops.mcp_client import AmazonAdsMCP
from adops.models import (
    ActivityLog, DetailStatus, ExecutionStatus, KeywordAction,
    KeywordExecutionDetail, KeywordExecutionRecord, KeywordRollbackRecord, Target,
)
from adops.services.account_service import get_client_for_account
from adops.services.backoff import with_backoff
from adops.services.keyword_execution_service import ClientFactory, get_config
from adops.services.locks import account_locks
from adops.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_ROLLBACK_WINDOW_HOURS = 24


class RollbackIneligible(Exception):
    """The execution cannot be rolled back; raised before any remote call."""


def check_eligibility(
    execution: KeywordExecutionRecord,
    window_hours: int = DEFAULT_ROLLBACK_WINDOW_HOURS,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Reason the execution is ineligible, or None if it can be rolled back."""
    if execution.status != ExecutionStatus.COMPLETED.value:
        return f"Execution is {execution.status}, only completed executions can be rolled back"
    if not (execution.paused_count > 0 or execution.enabled_count > 0):
        return "Execution did not change any keywords"
    finished = execution.completed_at or execution.started_at
    if finished is not None and (now or utcnow()) - finished > timedelta(hours=window_hours):
        return f"Execution finished more than {window_hours} hours ago and is outside the rollback window"
    return None


async def rollback_execution(
    db: AsyncSession,
    execution_id: uuid.UUID,
    reason: str,
    *,
    client: Optional[AmazonAdsMCP] = None,
    client_factory: ClientFactory = get_client_for_account,
    settings: Optional[Settings] = None,
) -> KeywordRollbackRecord:
    """
    Checks, remote calls and the rollback record all happen under the
    account lock, and the record is committed before the lock is released.
    Concurrent rollbacks of one execution therefore restore it once; the
    later ones see the committed record and raise RollbackIneligible.
    """
    settings = settings or get_settings()

    execution = await db.get(KeywordExecutionRecord, execution_id)
    if execution is None:
        raise LookupError(f"Keyword execution {execution_id} not found")
    credential_id = execution.credential_id

    async with account_locks.hold(credential_id):
        config = await get_config(db, credential_id)
        window_hours = config.rollback_window_hours if config else DEFAULT_ROLLBACK_WINDOW_HOURS
        problem = check_eligibility(execution, window_hours)
        if problem:
            raise RollbackIneligible(problem)

        prior = await db.execute(
            select(KeywordRollbackRecord.id).where(
                KeywordRollbackRecord.execution_id == execution_id,
                KeywordRollbackRecord.rolled_back_count > 0,
            )
        )
        if prior.first() is not None:
            raise RollbackIneligible("Execution has already been rolled back")

        result = await db.execute(
            select(KeywordExecutionDetail)
            .where(
                KeywordExecutionDetail.execution_id == execution_id,
                KeywordExecutionDetail.status == DetailStatus.SUCCESS.value,
            )
            .order_by(KeywordExecutionDetail.created_at)
        )
        details = result.scalars().all()

        if client is None:
            client = await client_factory(db, credential_id)

        rolled_back = 0
        errors: list[str] = []
        for detail in details:
            restore_state = "ENABLED" if detail.action_type == KeywordAction.PAUSE.value else "PAUSED"
            try:
                await with_backoff(
                    lambda kid=detail.keyword_id, state=restore_state: client.set_target_state(kid, state),
                    max_attempts=settings.backoff_max_attempts,
                    base_delay_ms=settings.backoff_base_delay_ms,
                    description=f"rollback set_target_state({detail.keyword_id}, {restore_state})",
                )
            except Exception as e:
                logger.warning(f"Rollback of keyword {detail.keyword_id} failed: {e}")
                errors.append(f"{detail.keyword_id}: {e}")
                continue
            rolled_back += 1
            await db.execute(
                update(Target)
                .where(Target.credential_id == credential_id, Target.amazon_target_id == detail.keyword_id)
                .values(state=restore_state, updated_at=utcnow())
            )

        record = KeywordRollbackRecord(
            execution_id=execution_id,
            credential_id=credential_id,
            reason=reason,
            rolled_back_count=rolled_back,
            errors=errors,
        )
        db.add(record)
        db.add(ActivityLog(
            credential_id=credential_id,
            action="keyword_execution_rollback",
            category="keyword_execution",
            description=f"Rolled back {rolled_back} of {len(details)} keyword changes: {reason}",
            entity_type="keyword_execution",
            entity_id=str(execution_id),
            status="success" if not errors else "error",
            details={"errors": errors[:20]},
        ))
        await db.commit()

    logger.info(f"Rollback of execution {execution_id}: {rolled_back} restored, {len(errors)} errors")
    return record
