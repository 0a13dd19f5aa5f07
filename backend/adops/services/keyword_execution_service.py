"""
Keyword Auto-Execution Engine

Reads aggregated keyword performance, decides per keyword whether to
pause, enable or leave it alone, pushes the state change to Amazon Ads and
records one KeywordExecutionRecord (plus a detail row per action) per run.

Decision rules, evaluated in order:
  PAUSE   an enabled keyword when ACoS > acos_threshold,
          or spend > spend_threshold with zero sales,
          or clicks > clicks_threshold with zero sales
  ENABLE  a paused keyword when ACoS < acos_threshold and sales > 0
  SKIP    everything else (no remote call)

Before anything is pushed the safety rails apply: top performers can be
exempted from pausing, and pauses and enables are capped per day. Capped
decisions are stored as "skipped" details.

In "manual" execution mode nothing is sent to Amazon: the run is a dry run
whose details are stored as "skipped" for operator review.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Awaitable, Callable, Optional, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from adops.config import Settings, get_settings
from adops.mcp_client import AmazonAdsMCP
from adops.models import (
    ActivityLog, DetailStatus, ExecutionMode, ExecutionStatus, ExecutionType,
    KeywordAction, KeywordExecutionConfig, KeywordExecutionDetail,
    KeywordExecutionRecord, Target, TargetPerformanceDaily,
)
from adops.services.account_service import AuthenticationError, get_client_for_account
from adops.services.backoff import OperationCancelled, with_backoff
from adops.services.locks import account_locks
from adops.services.metrics import compute_acos
from adops.utils import utcnow

logger = logging.getLogger(__name__)

ClientFactory = Callable[[AsyncSession, uuid.UUID], Awaitable[AmazonAdsMCP]]

ACTIONABLE_STATES = ("enabled", "paused")


@dataclass(frozen=True)
class KeywordSnapshot:
    id: str
    keyword_text: Optional[str]
    status: str
    acos: Optional[float]
    spend: float
    clicks: int
    sales: float
    impressions: int = 0
    orders: int = 0


@dataclass(frozen=True)
class KeywordDecision:
    action: KeywordAction
    reason: str


class Thresholds(Protocol):
    acos_threshold: float
    spend_threshold: float
    clicks_threshold: float


# ══════════════════════════════════════════════════════════════════════
#  DECISION
# ══════════════════════════════════════════════════════════════════════

def decide_keyword_action(snapshot: KeywordSnapshot, config: Thresholds) -> KeywordDecision:
    status = (snapshot.status or "").lower()

    if status == "enabled":
        if snapshot.acos is not None and snapshot.acos > config.acos_threshold:
            return KeywordDecision(
                KeywordAction.PAUSE,
                f"ACoS {snapshot.acos:.1f}% above threshold {config.acos_threshold:g}%",
            )
        if snapshot.sales == 0 and snapshot.spend > config.spend_threshold:
            return KeywordDecision(
                KeywordAction.PAUSE,
                f"Spend {snapshot.spend:.2f} above {config.spend_threshold:g} with no sales",
            )
        if snapshot.sales == 0 and snapshot.clicks > config.clicks_threshold:
            return KeywordDecision(
                KeywordAction.PAUSE,
                f"{snapshot.clicks} clicks above {config.clicks_threshold:g} with no sales",
            )
    elif status == "paused":
        if snapshot.sales > 0 and snapshot.acos is not None and snapshot.acos < config.acos_threshold:
            return KeywordDecision(
                KeywordAction.ENABLE,
                f"ACoS {snapshot.acos:.1f}% below threshold {config.acos_threshold:g}% with sales",
            )

    return KeywordDecision(KeywordAction.SKIP, "Within thresholds")


# ══════════════════════════════════════════════════════════════════════
#  DATA
# ══════════════════════════════════════════════════════════════════════

async def get_config(db: AsyncSession, credential_id: uuid.UUID) -> Optional[KeywordExecutionConfig]:
    result = await db.execute(
        select(KeywordExecutionConfig).where(KeywordExecutionConfig.credential_id == credential_id)
    )
    return result.scalar_one_or_none()


async def load_keyword_snapshots(
    db: AsyncSession,
    credential_id: uuid.UUID,
    lookback_days: int,
    today: Optional[date] = None,
) -> list[KeywordSnapshot]:
    """Enabled and paused keywords with metrics summed over the lookback window."""
    end = today or utcnow().date()
    start = end - timedelta(days=max(lookback_days, 1) - 1)

    perf = (
        select(
            TargetPerformanceDaily.amazon_target_id.label("target_id"),
            func.sum(TargetPerformanceDaily.spend).label("spend"),
            func.sum(TargetPerformanceDaily.sales).label("sales"),
            func.sum(TargetPerformanceDaily.clicks).label("clicks"),
            func.sum(TargetPerformanceDaily.impressions).label("impressions"),
            func.sum(TargetPerformanceDaily.orders).label("orders"),
        )
        .where(
            TargetPerformanceDaily.credential_id == credential_id,
            TargetPerformanceDaily.date >= start.isoformat(),
            TargetPerformanceDaily.date <= end.isoformat(),
        )
        .group_by(TargetPerformanceDaily.amazon_target_id)
        .subquery()
    )

    result = await db.execute(
        select(
            Target.amazon_target_id,
            Target.expression_value,
            Target.state,
            perf.c.spend,
            perf.c.sales,
            perf.c.clicks,
            perf.c.impressions,
            perf.c.orders,
        )
        .outerjoin(perf, perf.c.target_id == Target.amazon_target_id)
        .where(
            Target.credential_id == credential_id,
            func.upper(Target.target_type) == "KEYWORD",
            func.lower(Target.state).in_(ACTIONABLE_STATES),
        )
        .order_by(Target.amazon_target_id)
    )

    snapshots = []
    for row in result.all():
        spend = float(row.spend or 0)
        sales = float(row.sales or 0)
        snapshots.append(KeywordSnapshot(
            id=row.amazon_target_id,
            keyword_text=row.expression_value,
            status=row.state.lower(),
            acos=compute_acos(spend, sales),
            spend=spend,
            clicks=int(row.clicks or 0),
            sales=sales,
            impressions=int(row.impressions or 0),
            orders=int(row.orders or 0),
        ))
    return snapshots


async def preview_keyword_actions(db: AsyncSession, credential_id: uuid.UUID) -> list[dict]:
    """
    Pause/enable decisions for the current data, without touching anything.
    Decisions the daily caps would hold back are listed with held=True.
    """
    config = await get_config(db, credential_id)
    if config is None:
        return []
    snapshots = await load_keyword_snapshots(db, credential_id, config.lookback_days)
    decisions = [(s, decide_keyword_action(s, config)) for s in snapshots]
    actionable = [(s, d) for s, d in decisions if d.action is not KeywordAction.SKIP]
    to_apply, held = apply_safety_rails(actionable, config, await count_actions_today(db, credential_id))

    preview = []
    for is_held, pairs in ((False, to_apply), (True, held)):
        for snapshot, decision in pairs:
            preview.append({
                "keyword_id": snapshot.id,
                "keyword_text": snapshot.keyword_text,
                "status": snapshot.status,
                "action": decision.action.value,
                "reason": decision.reason,
                "held": is_held,
                "spend": round(snapshot.spend, 2),
                "sales": round(snapshot.sales, 2),
                "clicks": snapshot.clicks,
                "acos": round(snapshot.acos, 2) if snapshot.acos is not None else None,
            })
    return preview


# ══════════════════════════════════════════════════════════════════════
#  SAFETY RAILS
# ══════════════════════════════════════════════════════════════════════

async def count_actions_today(
    db: AsyncSession, credential_id: uuid.UUID, now: Optional[datetime] = None,
) -> dict[str, int]:
    """Pauses and enables already pushed to Amazon for the account since midnight UTC."""
    midnight = datetime.combine((now or utcnow()).date(), time.min)
    result = await db.execute(
        select(KeywordExecutionDetail.action_type, func.count())
        .join(KeywordExecutionRecord, KeywordExecutionRecord.id == KeywordExecutionDetail.execution_id)
        .where(
            KeywordExecutionRecord.credential_id == credential_id,
            KeywordExecutionDetail.status == DetailStatus.SUCCESS.value,
            KeywordExecutionDetail.created_at >= midnight,
        )
        .group_by(KeywordExecutionDetail.action_type)
    )
    return {action: count for action, count in result.all()}


def apply_safety_rails(
    decisions: list[tuple[KeywordSnapshot, KeywordDecision]],
    config: KeywordExecutionConfig,
    done_today: Optional[dict[str, int]] = None,
) -> tuple[list[tuple[KeywordSnapshot, KeywordDecision]], list[tuple[KeywordSnapshot, KeywordDecision]]]:
    """
    Split pause/enable decisions into (to_apply, held).

    With exclude_top_performers set, keywords whose ACoS is at or under
    top_performer_threshold are never paused and drop out entirely.
    Pauses and enables are capped per UTC day, counting what earlier runs
    already pushed. The costliest pauses and best-selling enables go first;
    the rest are held and carry the cap in their reason.
    """
    done_today = done_today or {}
    pauses, enables = [], []
    for snapshot, decision in decisions:
        if decision.action is KeywordAction.PAUSE:
            if config.exclude_top_performers and snapshot.acos and snapshot.acos <= config.top_performer_threshold:
                continue
            pauses.append((snapshot, decision))
        elif decision.action is KeywordAction.ENABLE:
            enables.append((snapshot, decision))
    pauses.sort(key=lambda pair: pair[0].spend, reverse=True)
    enables.sort(key=lambda pair: pair[0].sales, reverse=True)

    to_apply, held = [], []
    for action, candidates, cap in (
        (KeywordAction.PAUSE, pauses, config.max_daily_pauses),
        (KeywordAction.ENABLE, enables, config.max_daily_enables),
    ):
        room = max(cap - done_today.get(action.value, 0), 0)
        to_apply.extend(candidates[:room])
        held.extend(
            (snapshot, KeywordDecision(action, f"Daily {action.value} limit of {cap} reached; {decision.reason}"))
            for snapshot, decision in candidates[room:]
        )
    return to_apply, held


# ══════════════════════════════════════════════════════════════════════
#  EXECUTION
# ══════════════════════════════════════════════════════════════════════

def _finalize(record: KeywordExecutionRecord, status: ExecutionStatus, error: Optional[str] = None) -> None:
    record.skipped_count = record.total_keywords - record.paused_count - record.enabled_count
    record.status = status.value
    record.error_message = error
    record.completed_at = utcnow()


def _detail(record: KeywordExecutionRecord, snapshot: KeywordSnapshot, decision: KeywordDecision) -> KeywordExecutionDetail:
    return KeywordExecutionDetail(
        execution_id=record.id,
        keyword_id=snapshot.id,
        keyword_text=snapshot.keyword_text,
        action_type=decision.action.value,
        status_before=snapshot.status,
        status_after=snapshot.status,
        reason=decision.reason,
        spend=snapshot.spend,
        sales=snapshot.sales,
        clicks=snapshot.clicks,
        acos=snapshot.acos,
    )


async def _apply_decisions(
    db: AsyncSession,
    record: KeywordExecutionRecord,
    decisions: list[tuple[KeywordSnapshot, KeywordDecision]],
    client: Optional[AmazonAdsMCP],
    settings: Settings,
    stop_event: Optional[asyncio.Event],
) -> int:
    """Push each decision (or record it as a dry run). Returns attempted remote calls."""
    attempted = 0
    for snapshot, decision in decisions:
        detail = _detail(record, snapshot, decision)
        db.add(detail)

        if record.dry_run:
            detail.status = DetailStatus.SKIPPED.value
            continue

        new_state = "PAUSED" if decision.action is KeywordAction.PAUSE else "ENABLED"
        attempted += 1
        try:
            await with_backoff(
                lambda sid=snapshot.id, state=new_state: client.set_target_state(sid, state),
                max_attempts=settings.backoff_max_attempts,
                base_delay_ms=settings.backoff_base_delay_ms,
                stop_event=stop_event,
                description=f"set_target_state({snapshot.id}, {new_state})",
            )
        except OperationCancelled:
            detail.status = DetailStatus.SKIPPED.value
            detail.error_message = "Cancelled by shutdown"
            raise
        except Exception as e:
            logger.warning(f"Keyword {snapshot.id} {decision.action.value} failed: {e}")
            detail.status = DetailStatus.FAILED.value
            detail.error_message = str(e)[:1000]
            record.failed_count += 1
            continue

        detail.status = DetailStatus.SUCCESS.value
        detail.status_after = new_state.lower()
        if decision.action is KeywordAction.PAUSE:
            record.paused_count += 1
        else:
            record.enabled_count += 1
        await db.execute(
            update(Target)
            .where(Target.credential_id == record.credential_id, Target.amazon_target_id == snapshot.id)
            .values(state=new_state, updated_at=utcnow())
        )
    return attempted


async def run_keyword_execution(
    db: AsyncSession,
    credential_id: uuid.UUID,
    execution_type: str = ExecutionType.MANUAL.value,
    *,
    client: Optional[AmazonAdsMCP] = None,
    client_factory: ClientFactory = get_client_for_account,
    settings: Optional[Settings] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> KeywordExecutionRecord:
    """
    Run the engine once for an account. Never raises: every failure ends
    up on the returned record (status "failed" with error_message).

    The run is committed while the account lock is still held, so a sync
    or rollback waiting on the same account sees its keyword changes.
    """
    settings = settings or get_settings()
    config = await get_config(db, credential_id)

    record = KeywordExecutionRecord(
        credential_id=credential_id,
        config_id=config.id if config else None,
        execution_type=execution_type,
        status=ExecutionStatus.RUNNING.value,
        dry_run=bool(config and config.execution_mode == ExecutionMode.MANUAL.value),
        total_keywords=0,
        paused_count=0,
        enabled_count=0,
        skipped_count=0,
        failed_count=0,
    )
    db.add(record)

    if config is None or not config.is_enabled:
        _finalize(record, ExecutionStatus.FAILED, "Keyword auto-execution is not enabled for this account")
        await db.commit()
        return record

    # the running record is committed first; no write transaction is held while waiting for the lock
    await db.commit()

    held: list[tuple[KeywordSnapshot, KeywordDecision]] = []
    async with account_locks.hold(credential_id):
        try:
            snapshots = await load_keyword_snapshots(db, credential_id, config.lookback_days)
            record.total_keywords = len(snapshots)
            decisions = [(s, decide_keyword_action(s, config)) for s in snapshots]
            actionable = [(s, d) for s, d in decisions if d.action is not KeywordAction.SKIP]
            to_apply, held = apply_safety_rails(actionable, config, await count_actions_today(db, credential_id))

            for snapshot, decision in held:
                detail = _detail(record, snapshot, decision)
                detail.status = DetailStatus.SKIPPED.value
                db.add(detail)

            if to_apply and not record.dry_run and client is None:
                client = await client_factory(db, credential_id)

            attempted = await _apply_decisions(db, record, to_apply, client, settings, stop_event)

            if attempted and record.failed_count == attempted:
                _finalize(record, ExecutionStatus.FAILED, f"All {attempted} keyword updates failed")
            else:
                _finalize(record, ExecutionStatus.COMPLETED)
        except AuthenticationError as e:
            logger.warning(f"Keyword execution for {credential_id} could not authenticate: {e}")
            _finalize(record, ExecutionStatus.FAILED, f"Authentication failed: {e}")
        except OperationCancelled:
            _finalize(record, ExecutionStatus.FAILED, "Cancelled by shutdown")
        except Exception as e:
            logger.exception(f"Keyword execution for {credential_id} failed")
            _finalize(record, ExecutionStatus.FAILED, str(e)[:1000])

        db.add(ActivityLog(
            credential_id=credential_id,
            action="keyword_execution",
            category="keyword_execution",
            description=(
                f"{record.execution_type} keyword run{' (dry run)' if record.dry_run else ''}: "
                f"{record.paused_count} paused, {record.enabled_count} enabled, "
                f"{record.skipped_count} skipped of {record.total_keywords}"
            ),
            entity_type="keyword_execution",
            entity_id=str(record.id),
            status="success" if record.status == ExecutionStatus.COMPLETED.value else "error",
            details={"failed": record.failed_count, "error": record.error_message, "held": len(held)},
        ))
        await db.commit()

    logger.info(
        f"Keyword execution {record.id} for {credential_id}: {record.status} "
        f"(paused={record.paused_count}, enabled={record.enabled_count}, "
        f"skipped={record.skipped_count}, failed={record.failed_count})"
    )
    return record
