"""
Shared fixtures: a throwaway SQLite database per test (aiosqlite) with the
full schema, plus small seeding helpers.
"""

import uuid
from datetime import date, timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adops.config import Settings
from adops.database import Base, build_engine
from adops.models import Credential, KeywordExecutionConfig, Target, TargetPerformanceDaily
from adops.utils import utcnow


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(
        environment="development",
        database_url="sqlite+aiosqlite://",
        backoff_max_attempts=3,
        backoff_base_delay_ms=1,
        scheduler_tick_seconds=60,
    )


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'adops-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── Seeding helpers ──────────────────────────────────────────────────

async def add_credential(db: AsyncSession, name: str = "Test Account", status: str = "active") -> Credential:
    cred = Credential(
        name=name,
        client_id="amzn1.application-oa2-client.test",
        access_token="plain-access-token",
        region="na",
        status=status,
    )
    db.add(cred)
    await db.flush()
    return cred


async def add_keyword(
    db: AsyncSession,
    credential_id: uuid.UUID,
    target_id: str,
    state: str = "ENABLED",
    *,
    spend: float = 0.0,
    sales: float = 0.0,
    clicks: int = 0,
    text: str = None,
    day: date = None,
) -> Target:
    """A keyword target with one day of performance (when any metric is non-zero)."""
    target = Target(
        credential_id=credential_id,
        amazon_target_id=target_id,
        target_type="KEYWORD",
        expression_value=text or f"keyword {target_id}",
        match_type="EXACT",
        state=state,
    )
    db.add(target)
    if spend or sales or clicks:
        db.add(TargetPerformanceDaily(
            credential_id=credential_id,
            amazon_target_id=target_id,
            date=(day or utcnow().date() - timedelta(days=1)).isoformat(),
            spend=spend,
            sales=sales,
            clicks=clicks,
            impressions=clicks * 10,
            orders=1 if sales else 0,
        ))
    await db.flush()
    return target


class FakeAdsClient:
    """
    In-memory stand-in for AmazonAdsMCP. Listings are keyed by ad product;
    `fail_targets` maps target id -> exception raised by set_target_state.
    """

    def __init__(self, campaigns=None, ad_groups=None, targets=None, report_rows=None):
        self.campaigns = campaigns or {}
        self.ad_groups = ad_groups or {}
        self.targets = targets or {}
        self.report_rows = report_rows or []
        self.fail_targets: dict[str, Exception] = {}
        self.state_calls: list[tuple[str, str]] = []

    async def query_campaigns(self, ad_product="SPONSORED_PRODUCTS"):
        return list(self.campaigns.get(ad_product, []))

    async def query_ad_groups(self, ad_product="SPONSORED_PRODUCTS", campaign_id=None):
        return list(self.ad_groups.get(ad_product, []))

    async def query_targets(self, ad_product="SPONSORED_PRODUCTS", ad_group_id=None):
        return list(self.targets.get(ad_product, []))

    async def set_target_state(self, target_id, state):
        self.state_calls.append((target_id, state))
        if target_id in self.fail_targets:
            raise self.fail_targets[target_id]
        return {"success": [{"targetId": target_id, "state": state}]}

    async def list_tools(self):
        return [{"name": "campaign_management-query_campaign", "description": ""}]

    async def create_targeting_report(self, start_date, end_date):
        return "report-1"

    async def wait_for_report(self, report_id):
        return {"reportId": report_id, "status": "COMPLETED", "url": "https://example.com/report.json.gz"}

    async def download_report_rows(self, report):
        return list(self.report_rows)


async def add_config(db: AsyncSession, credential_id: uuid.UUID, mode: str = "auto", enabled: bool = True, **overrides) -> KeywordExecutionConfig:
    values = dict(acos_threshold=50.0, spend_threshold=20.0, clicks_threshold=20, lookback_days=14)
    values.update(overrides)
    config = KeywordExecutionConfig(credential_id=credential_id, is_enabled=enabled, execution_mode=mode, **values)
    db.add(config)
    await db.flush()
    return config


def client_factory_for(client):
    async def factory(db, credential_id):
        return client
    return factory
