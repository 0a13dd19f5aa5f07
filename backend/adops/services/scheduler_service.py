"""
Sync Scheduler — drives tiered entity syncs, per-account custom schedules
and scheduled keyword auto-execution from one fixed APScheduler tick.

Each tick:
  1. dispatches every tier whose interval has elapsed and that has no pass
     in flight; a pass syncs all active accounts concurrently
  2. dispatches each due AccountSyncSchedule
  3. starts a "scheduled" keyword execution for accounts whose config is
     enabled and whose last scheduled run is older than the configured
     interval

Work is spawned as background tasks so a slow account never delays the
tick. Per-account failures are counted and recorded in the bounded error
history; nothing raised by an account run escapes the scheduler.
"""

import asyncio
import logging
import uuid
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Coroutine, Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from adops.config import Settings, get_settings
from adops.database import async_session
from adops.mcp_client import AmazonAdsMCP
from adops.models import (
    AccountSyncSchedule, Credential, CredentialStatus, ExecutionStatus,
    ExecutionType, KeywordExecutionConfig, KeywordExecutionRecord, SyncLog,
)
from adops.services.account_service import AuthenticationError, get_client_for_account, list_active_accounts
from adops.services.backoff import OperationCancelled
from adops.services.frequency import is_schedule_due, resolve_frequency
from adops.services.keyword_execution_service import run_keyword_execution
from adops.services.locks import account_locks, tier_locks
from adops.services.sync_service import SCHEDULE_SYNC_TYPES, AccountSync, touches_keyword_data
from adops.services.sync_tiers import SyncTier
from adops.utils import utcnow

logger = logging.getLogger(__name__)

TICK_JOB_ID = "adops-sync-tick"
SHUTDOWN_GRACE_SECONDS = 30

SessionFactory = Callable[[], AsyncSession]
ClientFactory = Callable[[AsyncSession, uuid.UUID], Awaitable[AmazonAdsMCP]]


class SchedulerStatus(BaseModel):
    """Immutable snapshot of scheduler state."""
    model_config = ConfigDict(frozen=True)

    is_running: bool
    last_run_time: Optional[datetime] = None
    next_run_time: Optional[datetime] = None
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    errors: tuple[str, ...] = ()
    current_tier: Optional[str] = None
    tier_last_run: dict[str, Optional[datetime]]


class SyncScheduler:
    """Owns all scheduler state; get_status() hands out snapshots of it."""

    def __init__(
        self,
        session_factory: SessionFactory = async_session,
        client_factory: ClientFactory = get_client_for_account,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._settings = settings or get_settings()
        self._clock = clock

        self._stop_event = asyncio.Event()
        self._apscheduler: Optional[AsyncIOScheduler] = None
        self._background: set[asyncio.Task] = set()
        self._tier_tasks: dict[SyncTier, asyncio.Task] = {}
        self._keyword_tasks: dict[uuid.UUID, asyncio.Task] = {}

        self._is_running = False
        self._last_run_time: Optional[datetime] = None
        self._next_run_time: Optional[datetime] = None
        self._total_syncs = 0
        self._successful_syncs = 0
        self._failed_syncs = 0
        self._errors: deque[str] = deque(maxlen=self._settings.scheduler_error_history)
        self._current_tier: Optional[SyncTier] = None
        self._tier_last_run: dict[SyncTier, Optional[datetime]] = {tier: None for tier in SyncTier}

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self) -> None:
        """Start the tick job. Must be called from a running event loop."""
        if self._is_running:
            logger.info("Sync scheduler already running")
            return
        tick_seconds = self._settings.scheduler_tick_seconds
        self._stop_event.clear()
        self._apscheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._apscheduler.add_job(
            self.tick,
            IntervalTrigger(seconds=tick_seconds),
            id=TICK_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(timezone.utc),
        )
        self._apscheduler.start()
        self._is_running = True
        self._next_run_time = self._clock()
        logger.info(f"Sync scheduler started (tick every {tick_seconds}s)")

    async def shutdown(self) -> None:
        """
        Stop ticking and ask in-flight work to stop at its next remote-call
        boundary. Work still running after the grace period is cancelled.
        """
        self._stop_event.set()
        if self._apscheduler is not None:
            self._apscheduler.shutdown(wait=False)
            self._apscheduler = None
        pending = [t for t in self._background if not t.done()]
        if pending:
            logger.info(f"Waiting for {len(pending)} sync task(s) to stop...")
            _, still_running = await asyncio.wait(pending, timeout=SHUTDOWN_GRACE_SECONDS)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        self._is_running = False
        self._next_run_time = None
        logger.info("Sync scheduler stopped")

    @property
    def stop_event(self) -> asyncio.Event:
        return self._stop_event

    # ── Status ────────────────────────────────────────────────────────

    def get_status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self._is_running,
            last_run_time=self._last_run_time,
            next_run_time=self._next_run_time,
            total_syncs=self._total_syncs,
            successful_syncs=self._successful_syncs,
            failed_syncs=self._failed_syncs,
            errors=tuple(self._errors),
            current_tier=self._current_tier.value if self._current_tier else None,
            tier_last_run={tier.value: last for tier, last in self._tier_last_run.items()},
        )

    def _record_error(self, message: str) -> None:
        self._errors.append(f"{self._clock().isoformat()} {message}")

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── Tick ──────────────────────────────────────────────────────────

    async def tick(self) -> None:
        now = self._clock()
        self._last_run_time = now
        self._next_run_time = now + timedelta(seconds=self._settings.scheduler_tick_seconds)
        if self._stop_event.is_set():
            return

        for tier in SyncTier:
            if self._tier_in_flight(tier):
                continue
            if tier.is_due(self._tier_last_run[tier], now):
                self._tier_tasks[tier] = self._spawn(self.run_tier(tier, now), name=f"sync-tier-{tier.value}")

        try:
            await self._dispatch_custom_schedules(now)
        except Exception as e:
            logger.exception("Custom schedule dispatch failed")
            self._record_error(f"Custom schedule dispatch failed: {e}")

        try:
            await self._dispatch_keyword_executions(now)
        except Exception as e:
            logger.exception("Keyword execution dispatch failed")
            self._record_error(f"Keyword execution dispatch failed: {e}")

    def _tier_in_flight(self, tier: SyncTier) -> bool:
        task = self._tier_tasks.get(tier)
        return task is not None and not task.done()

    # ── Tier passes ───────────────────────────────────────────────────

    async def run_tier(self, tier: SyncTier, dispatched_at: Optional[datetime] = None) -> None:
        """Sync every active account for one tier. tier_last_run is set when the pass ends."""
        dispatched_at = dispatched_at or self._clock()
        self._current_tier = tier
        logger.info(f"Tier {tier.value} pass started ({tier.description})")
        try:
            async with self._session_factory() as db:
                accounts = await list_active_accounts(db)
            await asyncio.gather(*(self._run_account_tier(account_id, tier) for account_id in accounts))
            logger.info(f"Tier {tier.value} pass finished for {len(accounts)} account(s)")
        except Exception as e:
            logger.exception(f"Tier {tier.value} pass failed")
            self._record_error(f"Tier {tier.value} pass failed: {e}")
        finally:
            self._tier_last_run[tier] = dispatched_at
            if self._current_tier is tier:
                self._current_tier = None

    def run_tier_now(self, tier: SyncTier) -> bool:
        """Operator trigger. False if a pass for this tier is already running."""
        if self._tier_in_flight(tier):
            return False
        self._tier_tasks[tier] = self._spawn(self.run_tier(tier), name=f"sync-tier-{tier.value}-manual")
        return True

    async def _run_account_tier(self, account_id: uuid.UUID, tier: SyncTier) -> None:
        async with tier_locks.try_hold((account_id, tier.value)) as acquired:
            if not acquired:
                logger.info(f"Tier {tier.value} already running for account {account_id}; skipped")
                return
            await self._run_account_sync(account_id, tier.sync_types, trigger=f"tier:{tier.value}")

    # ── One account ───────────────────────────────────────────────────

    async def _run_account_sync(self, account_id: uuid.UUID, sync_types: Iterable[str], trigger: str) -> bool:
        """Run and count one account sync. Returns success; never raises."""
        sync_types = tuple(sync_types)
        self._total_syncs += 1
        try:
            if touches_keyword_data(sync_types):
                async with account_locks.hold(account_id):
                    await self._sync_account(account_id, sync_types, trigger)
            else:
                await self._sync_account(account_id, sync_types, trigger)
        except OperationCancelled:
            self._failed_syncs += 1
            logger.info(f"Account {account_id} {trigger} sync cancelled by shutdown")
            return False
        except Exception as e:
            self._failed_syncs += 1
            logger.warning(f"Account {account_id} {trigger} sync failed: {e}")
            self._record_error(f"Account {account_id} {trigger} sync failed: {e}")
            return False
        self._successful_syncs += 1
        return True

    async def _sync_account(self, account_id: uuid.UUID, sync_types: tuple[str, ...], trigger: str) -> dict:
        async with self._session_factory() as db:
            log = SyncLog(credential_id=account_id, trigger=trigger, sync_types=list(sync_types))
            db.add(log)
            await db.commit()
            try:
                client = await self._client_factory(db, account_id)
                stats = await AccountSync(db, account_id, client, self._settings, self._stop_event).run(sync_types)
            except Exception as e:
                if isinstance(e, AuthenticationError):
                    # keep the credential status change made during refresh
                    await db.commit()
                else:
                    await db.rollback()
                log.status = ExecutionStatus.FAILED.value
                log.error_message = str(e)[:1000]
                log.completed_at = utcnow()
                await db.commit()
                raise
            log.status = ExecutionStatus.COMPLETED.value
            log.stats = stats
            log.completed_at = utcnow()
            await db.commit()
            return stats

    async def trigger_manual_sync(self, account_id: uuid.UUID, sync_types: Iterable[str] = ("full_sync",)) -> bool:
        """Sync one account now. False if a manual sync for it is already running or it failed."""
        async with tier_locks.try_hold((account_id, "manual")) as acquired:
            if not acquired:
                return False
            return await self._run_account_sync(account_id, sync_types, trigger="manual")

    # ── Custom schedules ──────────────────────────────────────────────

    async def _dispatch_custom_schedules(self, now: datetime) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AccountSyncSchedule)
                .join(Credential, Credential.id == AccountSyncSchedule.credential_id)
                .where(
                    AccountSyncSchedule.is_enabled.is_(True),
                    Credential.status == CredentialStatus.ACTIVE.value,
                )
            )
            schedules = result.scalars().all()

        for schedule in schedules:
            try:
                due = is_schedule_due(schedule, now)
            except ValueError as e:
                self._record_error(f"Schedule for account {schedule.credential_id} is invalid: {e}")
                continue
            if not due or tier_locks.locked((schedule.credential_id, "schedule")):
                continue
            self._spawn(
                self._run_custom_schedule(schedule.id, schedule.credential_id, schedule.sync_type, now),
                name=f"sync-schedule-{schedule.credential_id}",
            )

    async def _run_custom_schedule(
        self, schedule_id: uuid.UUID, account_id: uuid.UUID, sync_type: str, dispatched_at: datetime
    ) -> None:
        async with tier_locks.try_hold((account_id, "schedule")) as acquired:
            if not acquired:
                return
            sync_types = SCHEDULE_SYNC_TYPES.get(sync_type, SCHEDULE_SYNC_TYPES["all"])
            await self._run_account_sync(account_id, sync_types, trigger="schedule")
            try:
                async with self._session_factory() as db:
                    schedule = await db.get(AccountSyncSchedule, schedule_id)
                    if schedule is None:
                        return
                    schedule.last_run_at = dispatched_at
                    schedule.next_run_at = dispatched_at + resolve_frequency(schedule.frequency)
                    await db.commit()
            except Exception as e:
                logger.exception(f"Could not advance schedule {schedule_id}")
                self._record_error(f"Could not advance schedule for account {account_id}: {e}")

    # ── Scheduled keyword execution ───────────────────────────────────

    async def _dispatch_keyword_executions(self, now: datetime) -> None:
        interval = timedelta(minutes=self._settings.keyword_execution_interval_minutes)
        last_scheduled = (
            select(
                KeywordExecutionRecord.credential_id,
                func.max(KeywordExecutionRecord.started_at).label("last_started"),
            )
            .where(KeywordExecutionRecord.execution_type == ExecutionType.SCHEDULED.value)
            .group_by(KeywordExecutionRecord.credential_id)
            .subquery()
        )
        async with self._session_factory() as db:
            result = await db.execute(
                select(KeywordExecutionConfig.credential_id, last_scheduled.c.last_started)
                .join(Credential, Credential.id == KeywordExecutionConfig.credential_id)
                .outerjoin(last_scheduled, last_scheduled.c.credential_id == KeywordExecutionConfig.credential_id)
                .where(
                    KeywordExecutionConfig.is_enabled.is_(True),
                    Credential.status == CredentialStatus.ACTIVE.value,
                )
            )
            rows = result.all()

        for account_id, last_started in rows:
            if last_started is not None and now - last_started < interval:
                continue
            task = self._keyword_tasks.get(account_id)
            if task is not None and not task.done():
                continue
            self._keyword_tasks[account_id] = self._spawn(
                self._run_scheduled_keyword_execution(account_id), name=f"keyword-exec-{account_id}"
            )

    async def _run_scheduled_keyword_execution(self, account_id: uuid.UUID) -> None:
        try:
            async with self._session_factory() as db:
                record = await run_keyword_execution(
                    db,
                    account_id,
                    ExecutionType.SCHEDULED.value,
                    client_factory=self._client_factory,
                    settings=self._settings,
                    stop_event=self._stop_event,
                )
        except Exception as e:
            logger.exception(f"Scheduled keyword execution for account {account_id} failed")
            self._record_error(f"Keyword execution for account {account_id} failed: {e}")
            return
        if record.status == ExecutionStatus.FAILED.value:
            self._record_error(f"Keyword execution for account {account_id} failed: {record.error_message}")
