"""
Tests for keyword pause/enable decisions and execution runs.
"""

from types import SimpleNamespace

import pytest
from sqlalchemy import select

from adops.mcp_client import RateLimitError, TransportError
from adops.models import (
    ActivityLog, KeywordAction, KeywordExecutionDetail, Target,
)
from adops.services.account_service import AuthenticationError
from adops.services.keyword_execution_service import (
    KeywordDecision, KeywordSnapshot, apply_safety_rails, decide_keyword_action, load_keyword_snapshots,
    preview_keyword_actions, run_keyword_execution,
)

from conftest import FakeAdsClient, add_config, add_credential, add_keyword, client_factory_for

THRESHOLDS = SimpleNamespace(acos_threshold=50.0, spend_threshold=20.0, clicks_threshold=20)


def _snapshot(status="enabled", acos=None, spend=0.0, clicks=0, sales=0.0):
    return KeywordSnapshot(id="k1", keyword_text="shoes", status=status, acos=acos, spend=spend, clicks=clicks, sales=sales)


# ── Decisions ────────────────────────────────────────────────────────

def test_pause_on_high_acos():
    decision = decide_keyword_action(_snapshot(acos=75.0, spend=30.0, sales=40.0), THRESHOLDS)
    assert decision.action is KeywordAction.PAUSE
    assert "ACoS" in decision.reason


def test_pause_on_spend_without_sales():
    decision = decide_keyword_action(_snapshot(spend=25.0), THRESHOLDS)
    assert decision.action is KeywordAction.PAUSE


def test_pause_on_clicks_without_sales():
    decision = decide_keyword_action(_snapshot(spend=5.0, clicks=21), THRESHOLDS)
    assert decision.action is KeywordAction.PAUSE


def test_enable_paused_keyword_with_good_acos():
    decision = decide_keyword_action(_snapshot(status="paused", acos=10.0, spend=10.0, sales=100.0), THRESHOLDS)
    assert decision.action is KeywordAction.ENABLE


def test_paused_keyword_without_sales_stays_paused():
    decision = decide_keyword_action(_snapshot(status="paused", spend=10.0), THRESHOLDS)
    assert decision.action is KeywordAction.SKIP


def test_enabled_keyword_within_thresholds_is_skipped():
    decision = decide_keyword_action(_snapshot(acos=10.0, spend=5.0, sales=50.0, clicks=3), THRESHOLDS)
    assert decision.action is KeywordAction.SKIP


def test_thresholds_are_strict():
    assert decide_keyword_action(_snapshot(acos=50.0, spend=10.0, sales=20.0), THRESHOLDS).action is KeywordAction.SKIP
    assert decide_keyword_action(_snapshot(spend=20.0), THRESHOLDS).action is KeywordAction.SKIP


def test_archived_keyword_is_skipped():
    decision = decide_keyword_action(_snapshot(status="archived", acos=90.0, spend=90.0, sales=100.0), THRESHOLDS)
    assert decision.action is KeywordAction.SKIP


# ── Snapshots ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_snapshots_sum_metrics_and_skip_archived(db):
    cred = await add_credential(db)
    await add_keyword(db, cred.id, "k1", spend=10.0, sales=40.0, clicks=5)
    await add_keyword(db, cred.id, "k2", state="ARCHIVED", spend=10.0)
    await add_keyword(db, cred.id, "k3", state="PAUSED")

    snapshots = {s.id: s for s in await load_keyword_snapshots(db, cred.id, 14)}
    assert set(snapshots) == {"k1", "k3"}
    assert snapshots["k1"].acos == pytest.approx(25.0)
    assert snapshots["k3"].acos is None
    assert snapshots["k3"].status == "paused"


# ── Runs ─────────────────────────────────────────────────────────────

async def _seed_hundred_keywords(db, credential_id):
    for i in range(5):
        await add_keyword(db, credential_id, f"pause-{i}", spend=30.0, sales=40.0, clicks=10)
    for i in range(3):
        await add_keyword(db, credential_id, f"enable-{i}", state="PAUSED", spend=10.0, sales=100.0, clicks=8)
    for i in range(80):
        await add_keyword(db, credential_id, f"steady-{i}", spend=5.0, sales=50.0, clicks=3)
    for i in range(12):
        await add_keyword(db, credential_id, f"idle-{i}")


@pytest.mark.anyio
async def test_hundred_keyword_run(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id)
    await _seed_hundred_keywords(db, cred.id)
    client = FakeAdsClient()

    record = await run_keyword_execution(db, cred.id, "scheduled", client=client, settings=settings)

    assert record.status == "completed"
    assert record.execution_type == "scheduled"
    assert record.total_keywords == 100
    assert (record.paused_count, record.enabled_count, record.skipped_count) == (5, 3, 92)
    assert record.failed_count == 0
    assert record.paused_count + record.enabled_count + record.skipped_count == record.total_keywords
    assert record.completed_at is not None

    assert sorted(c[1] for c in client.state_calls) == ["ENABLED"] * 3 + ["PAUSED"] * 5
    paused = (await db.execute(select(Target).where(Target.amazon_target_id == "pause-0"))).scalar_one()
    assert paused.state == "PAUSED"

    details = (await db.execute(
        select(KeywordExecutionDetail).where(KeywordExecutionDetail.execution_id == record.id)
    )).scalars().all()
    assert len(details) == 8
    assert all(d.status == "success" for d in details)

    logs = (await db.execute(select(ActivityLog).where(ActivityLog.action == "keyword_execution"))).scalars().all()
    assert len(logs) == 1


@pytest.mark.anyio
async def test_manual_mode_is_a_dry_run(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id, mode="manual")
    await _seed_hundred_keywords(db, cred.id)
    client = FakeAdsClient()

    record = await run_keyword_execution(db, cred.id, client=client, settings=settings)

    assert record.status == "completed"
    assert record.dry_run is True
    assert (record.paused_count, record.enabled_count, record.skipped_count) == (0, 0, 100)
    assert client.state_calls == []
    details = (await db.execute(
        select(KeywordExecutionDetail).where(KeywordExecutionDetail.execution_id == record.id)
    )).scalars().all()
    assert len(details) == 8
    assert {d.status for d in details} == {"skipped"}


@pytest.mark.anyio
async def test_disabled_config_records_failed_run(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id, enabled=False)
    record = await run_keyword_execution(db, cred.id, client=FakeAdsClient(), settings=settings)
    assert record.status == "failed"
    assert "not enabled" in record.error_message
    assert record.total_keywords == 0


@pytest.mark.anyio
async def test_missing_config_records_failed_run(db, settings):
    cred = await add_credential(db)
    record = await run_keyword_execution(db, cred.id, client=FakeAdsClient(), settings=settings)
    assert record.status == "failed"
    assert record.config_id is None


@pytest.mark.anyio
async def test_partial_failure_still_completes(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id)
    await add_keyword(db, cred.id, "bad-1", spend=30.0, sales=40.0)
    await add_keyword(db, cred.id, "bad-2", spend=30.0, sales=40.0)
    client = FakeAdsClient()
    client.fail_targets["bad-1"] = TransportError("target not found", status_code=404)

    record = await run_keyword_execution(db, cred.id, client=client, settings=settings)

    assert record.status == "completed"
    assert record.paused_count == 1
    assert record.failed_count == 1
    assert record.skipped_count == 1
    failed = (await db.execute(
        select(KeywordExecutionDetail).where(KeywordExecutionDetail.keyword_id == "bad-1")
    )).scalar_one()
    assert failed.status == "failed"
    assert "target not found" in failed.error_message


@pytest.mark.anyio
async def test_all_updates_failing_fails_the_run(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id)
    await add_keyword(db, cred.id, "k1", spend=30.0, sales=40.0)
    client = FakeAdsClient()
    client.fail_targets["k1"] = RateLimitError("throttled")

    record = await run_keyword_execution(db, cred.id, client=client, settings=settings)

    assert record.status == "failed"
    assert record.failed_count == 1
    # retried up to backoff_max_attempts
    assert len(client.state_calls) == settings.backoff_max_attempts


@pytest.mark.anyio
async def test_authentication_failure_is_recorded(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id)
    await add_keyword(db, cred.id, "k1", spend=30.0, sales=40.0)

    async def rejecting_factory(session, credential_id):
        raise AuthenticationError(credential_id, "Token refresh rejected (401)")

    record = await run_keyword_execution(db, cred.id, client_factory=rejecting_factory, settings=settings)
    assert record.status == "failed"
    assert "Authentication failed" in record.error_message


@pytest.mark.anyio
async def test_no_actionable_keywords_needs_no_client(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id)
    await add_keyword(db, cred.id, "k1", spend=5.0, sales=50.0)

    async def unused_factory(session, credential_id):
        raise AssertionError("client should not be built")

    record = await run_keyword_execution(db, cred.id, client_factory=unused_factory, settings=settings)
    assert record.status == "completed"
    assert record.skipped_count == 1


@pytest.mark.anyio
async def test_preview_lists_only_actions(db):
    cred = await add_credential(db)
    await add_config(db, cred.id)
    await add_keyword(db, cred.id, "k1", spend=30.0, sales=40.0)
    await add_keyword(db, cred.id, "k2", spend=5.0, sales=50.0)

    preview = await preview_keyword_actions(db, cred.id)
    assert [(p["keyword_id"], p["action"]) for p in preview] == [("k1", "pause")]


@pytest.mark.anyio
async def test_client_factory_is_used_when_no_client_given(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id)
    await add_keyword(db, cred.id, "k1", spend=30.0, sales=40.0)
    client = FakeAdsClient()

    record = await run_keyword_execution(db, cred.id, client_factory=client_factory_for(client), settings=settings)
    assert record.paused_count == 1
    assert client.state_calls == [("k1", "PAUSED")]


# ── Safety rails ─────────────────────────────────────────────────────

RAILS = SimpleNamespace(
    max_daily_pauses=2, max_daily_enables=1, exclude_top_performers=False, top_performer_threshold=20.0,
)


def _pause(target_id, spend, acos=75.0):
    snapshot = KeywordSnapshot(id=target_id, keyword_text=None, status="enabled", acos=acos, spend=spend, clicks=10, sales=40.0)
    return snapshot, KeywordDecision(KeywordAction.PAUSE, "ACoS above threshold")


def test_daily_cap_keeps_the_costliest_pauses():
    to_apply, held = apply_safety_rails([_pause("a", 10.0), _pause("b", 30.0), _pause("c", 20.0)], RAILS)
    assert [s.id for s, _ in to_apply] == ["b", "c"]
    assert [s.id for s, _ in held] == ["a"]
    assert held[0][1].action is KeywordAction.PAUSE
    assert "limit of 2" in held[0][1].reason


def test_daily_cap_counts_earlier_runs():
    to_apply, held = apply_safety_rails([_pause("a", 10.0), _pause("b", 30.0)], RAILS, {"pause": 2})
    assert to_apply == []
    assert len(held) == 2


def test_top_performers_are_never_paused():
    rails = SimpleNamespace(**{**vars(RAILS), "exclude_top_performers": True, "top_performer_threshold": 80.0})
    to_apply, held = apply_safety_rails([_pause("good", 30.0, acos=75.0), _pause("bad", 30.0, acos=90.0)], rails)
    assert [s.id for s, _ in to_apply] == ["bad"]
    assert held == []


@pytest.mark.anyio
async def test_capped_decisions_are_recorded_as_skipped(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id, max_daily_pauses=2)
    for i in range(5):
        await add_keyword(db, cred.id, f"pause-{i}", spend=30.0 + i, sales=40.0, clicks=10)
    client = FakeAdsClient()

    record = await run_keyword_execution(db, cred.id, client=client, settings=settings)

    assert record.status == "completed"
    assert (record.paused_count, record.skipped_count) == (2, 3)
    assert record.paused_count + record.enabled_count + record.skipped_count == record.total_keywords
    assert sorted(c[0] for c in client.state_calls) == ["pause-3", "pause-4"]
    held = (await db.execute(
        select(KeywordExecutionDetail).where(
            KeywordExecutionDetail.execution_id == record.id,
            KeywordExecutionDetail.status == "skipped",
        )
    )).scalars().all()
    assert len(held) == 3
    assert all("Daily pause limit" in d.reason for d in held)


@pytest.mark.anyio
async def test_daily_cap_spans_runs(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id, max_daily_pauses=3)
    for i in range(5):
        await add_keyword(db, cred.id, f"pause-{i}", spend=30.0 + i, sales=40.0, clicks=10)

    first = await run_keyword_execution(db, cred.id, client=FakeAdsClient(), settings=settings)
    client = FakeAdsClient()
    second = await run_keyword_execution(db, cred.id, client=client, settings=settings)

    assert first.paused_count == 3
    assert second.paused_count == 0
    assert client.state_calls == []


@pytest.mark.anyio
async def test_top_performer_guard_in_a_run(db, settings):
    cred = await add_credential(db)
    await add_config(db, cred.id, exclude_top_performers=True, top_performer_threshold=80.0)
    await add_keyword(db, cred.id, "good", spend=30.0, sales=40.0)
    await add_keyword(db, cred.id, "bad", spend=36.0, sales=40.0)
    client = FakeAdsClient()

    record = await run_keyword_execution(db, cred.id, client=client, settings=settings)

    assert client.state_calls == [("bad", "PAUSED")]
    assert (record.paused_count, record.skipped_count) == (1, 1)


@pytest.mark.anyio
async def test_preview_marks_held_actions(db):
    cred = await add_credential(db)
    await add_config(db, cred.id, max_daily_pauses=1)
    await add_keyword(db, cred.id, "k1", spend=30.0, sales=40.0)
    await add_keyword(db, cred.id, "k2", spend=40.0, sales=40.0)

    preview = await preview_keyword_actions(db, cred.id)
    assert [(p["keyword_id"], p["held"]) for p in preview] == [("k2", False), ("k1", True)]
