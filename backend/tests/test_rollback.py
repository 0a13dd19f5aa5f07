"""
Tests for rolling back keyword executions.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from adops.mcp_client import TransportError
from adops.models import KeywordExecutionRecord, KeywordRollbackRecord, Target
from adops.services.keyword_execution_service import run_keyword_execution
from adops.services.rollback_service import RollbackIneligible, check_eligibility, rollback_execution

from adops.utils import utcnow

from conftest import FakeAdsClient, add_config, add_credential, add_keyword


async def _executed(db, settings, mode="auto", **config):
    cred = await add_credential(db)
    await add_config(db, cred.id, mode=mode, **config)
    await add_keyword(db, cred.id, "pause-me", spend=30.0, sales=40.0)
    await add_keyword(db, cred.id, "enable-me", state="PAUSED", spend=10.0, sales=100.0)
    await add_keyword(db, cred.id, "leave-me", spend=5.0, sales=50.0)
    record = await run_keyword_execution(db, cred.id, client=FakeAdsClient(), settings=settings)
    return cred, record


def test_eligibility_rules():
    completed = KeywordExecutionRecord(status="completed", paused_count=1, enabled_count=0)
    assert check_eligibility(completed) is None
    assert check_eligibility(KeywordExecutionRecord(status="failed", paused_count=1, enabled_count=0))
    assert check_eligibility(KeywordExecutionRecord(status="running", paused_count=1, enabled_count=0))
    assert check_eligibility(KeywordExecutionRecord(status="completed", paused_count=0, enabled_count=0))


def test_eligibility_window():
    now = utcnow()
    finished = KeywordExecutionRecord(status="completed", paused_count=1, enabled_count=0, completed_at=now - timedelta(hours=30))
    assert "rollback window" in check_eligibility(finished, window_hours=24, now=now)
    assert check_eligibility(finished, window_hours=48, now=now) is None


@pytest.mark.anyio
async def test_rollback_inverts_each_change(db, settings):
    cred, execution = await _executed(db, settings)
    client = FakeAdsClient()

    rollback = await rollback_execution(db, execution.id, "thresholds too aggressive", client=client, settings=settings)

    assert rollback.rolled_back_count == 2
    assert rollback.errors == []
    assert sorted(client.state_calls) == [("enable-me", "PAUSED"), ("pause-me", "ENABLED")]
    restored = (await db.execute(select(Target).where(Target.amazon_target_id == "pause-me"))).scalar_one()
    assert restored.state == "ENABLED"

    # the execution itself is left untouched
    await db.refresh(execution)
    assert execution.status == "completed"
    assert execution.paused_count == 1


@pytest.mark.anyio
async def test_second_rollback_is_rejected(db, settings):
    _, execution = await _executed(db, settings)
    await rollback_execution(db, execution.id, "first", client=FakeAdsClient(), settings=settings)

    client = FakeAdsClient()
    with pytest.raises(RollbackIneligible, match="already"):
        await rollback_execution(db, execution.id, "second", client=client, settings=settings)
    assert client.state_calls == []


@pytest.mark.anyio
async def test_dry_run_cannot_be_rolled_back(db, settings):
    _, execution = await _executed(db, settings, mode="manual")
    client = FakeAdsClient()
    with pytest.raises(RollbackIneligible):
        await rollback_execution(db, execution.id, "nothing changed", client=client, settings=settings)
    assert client.state_calls == []


@pytest.mark.anyio
async def test_unknown_execution(db, settings):
    with pytest.raises(LookupError):
        await rollback_execution(db, uuid.uuid4(), "missing", client=FakeAdsClient(), settings=settings)


@pytest.mark.anyio
async def test_failed_restores_are_collected(db, settings):
    _, execution = await _executed(db, settings)
    client = FakeAdsClient()
    client.fail_targets["pause-me"] = TransportError("gone", status_code=404)

    rollback = await rollback_execution(db, execution.id, "partial", client=client, settings=settings)

    assert rollback.rolled_back_count == 1
    assert len(rollback.errors) == 1
    assert rollback.errors[0].startswith("pause-me")
    records = (await db.execute(
        select(KeywordRollbackRecord).where(KeywordRollbackRecord.execution_id == execution.id)
    )).scalars().all()
    assert len(records) == 1


@pytest.mark.anyio
async def test_rollback_outside_window_is_rejected(db, settings):
    _, execution = await _executed(db, settings)
    execution.completed_at = utcnow() - timedelta(hours=25)
    await db.commit()

    client = FakeAdsClient()
    with pytest.raises(RollbackIneligible, match="rollback window"):
        await rollback_execution(db, execution.id, "too late", client=client, settings=settings)
    assert client.state_calls == []


@pytest.mark.anyio
async def test_rollback_window_comes_from_config(db, settings):
    _, execution = await _executed(db, settings, rollback_window_hours=72)
    execution.completed_at = utcnow() - timedelta(hours=48)
    await db.commit()

    rollback = await rollback_execution(db, execution.id, "within three days", client=FakeAdsClient(), settings=settings)
    assert rollback.rolled_back_count == 2


@pytest.mark.anyio
async def test_concurrent_rollbacks_restore_once(db, session_factory, settings):
    _, execution = await _executed(db, settings)

    class SlowClient(FakeAdsClient):
        async def set_target_state(self, target_id, state):
            await asyncio.sleep(0.01)
            return await super().set_target_state(target_id, state)

    client = SlowClient()

    async def attempt(reason):
        async with session_factory() as session:
            return await rollback_execution(session, execution.id, reason, client=client, settings=settings)

    results = await asyncio.gather(attempt("first"), attempt("second"), return_exceptions=True)

    assert sum(isinstance(r, RollbackIneligible) for r in results) == 1
    assert sum(isinstance(r, KeywordRollbackRecord) for r in results) == 1
    assert len(client.state_calls) == 2
    async with session_factory() as session:
        restored = (await session.execute(
            select(KeywordRollbackRecord).where(
                KeywordRollbackRecord.execution_id == execution.id,
                KeywordRollbackRecord.rolled_back_count > 0,
            )
        )).scalars().all()
    assert len(restored) == 1
