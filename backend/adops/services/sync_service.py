"""
Sync Service — pulls one account's entities from Amazon Ads and upserts
them into the local cache, one data class ("sync type") at a time.

Sync types:
    campaigns_status  campaign state, name and type
    budgets           campaign daily budgets
    ad_groups         ad groups
    keywords          keyword targets
    targets           non-keyword targets (product, category, auto)
    full_sync         all of the above
    performance       daily target metrics from an spTargeting report

Every remote call goes through with_backoff. Remote listings are fetched
at most once per AccountSync, so campaigns_status + budgets share a query.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from adops.config import Settings, get_settings
from adops.mcp_client import AD_PRODUCTS, AmazonAdsMCP, TransportError
from adops.models import AdGroup, Campaign, Target, TargetPerformanceDaily
from adops.services.backoff import with_backoff
from adops.services.metrics import _safe_float, _safe_int
from adops.services.sync_tiers import KEYWORD_DATA_SYNC_TYPES
from adops.utils import extract_bid, extract_daily_budget, extract_target_expression, first_present, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENTITY_SYNC_TYPES = ("campaigns_status", "budgets", "ad_groups", "keywords", "targets")
SYNC_TYPES = ENTITY_SYNC_TYPES + ("full_sync", "performance")

# AccountSyncSchedule.sync_type -> sync types it runs
SCHEDULE_SYNC_TYPES = {
    "all": ("full_sync",),
    "campaigns": ("campaigns_status", "budgets"),
    "keywords": ("ad_groups", "keywords", "targets"),
    "performance": ("performance",),
}

# v3 reports accept at most 31 days per request
PERFORMANCE_LOOKBACK_DAYS = 30


class UnknownSyncType(ValueError):
    pass


def touches_keyword_data(sync_types: Iterable[str]) -> bool:
    return any(t in KEYWORD_DATA_SYNC_TYPES for t in sync_types)


def is_keyword_target(tgt_data: dict) -> bool:
    tgt_type = tgt_data.get("targetType") or tgt_data.get("type") or ""
    details = tgt_data.get("targetDetails") or {}
    return tgt_type.upper() == "KEYWORD" or "keywordTarget" in details


class AccountSync:
    """One account's sync run against one MCP client and one DB session."""

    def __init__(
        self,
        db: AsyncSession,
        credential_id: uuid.UUID,
        client: AmazonAdsMCP,
        settings: Optional[Settings] = None,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.db = db
        self.credential_id = credential_id
        self.client = client
        self.settings = settings or get_settings()
        self.stop_event = stop_event
        self._campaigns: Optional[list[dict]] = None
        self._targets: Optional[list[dict]] = None

    async def _remote(self, description: str, operation: Callable[[], Awaitable[T]]) -> T:
        return await with_backoff(
            operation,
            max_attempts=self.settings.backoff_max_attempts,
            base_delay_ms=self.settings.backoff_base_delay_ms,
            stop_event=self.stop_event,
            description=f"{description} [{self.credential_id}]",
        )

    # ── Remote listings (memoized per run) ────────────────────────────

    async def _remote_campaigns(self) -> list[dict]:
        if self._campaigns is None:
            items = []
            for ap in AD_PRODUCTS:
                items.extend(await self._remote(f"query_campaigns({ap})", lambda ap=ap: self.client.query_campaigns(ad_product=ap)))
            self._campaigns = items
        return self._campaigns

    async def _remote_ad_groups(self) -> list[dict]:
        items = []
        for ap in AD_PRODUCTS:
            items.extend(await self._remote(f"query_ad_groups({ap})", lambda ap=ap: self.client.query_ad_groups(ad_product=ap)))
        return items

    async def _remote_targets(self) -> list[dict]:
        if self._targets is None:
            items = []
            for ap in AD_PRODUCTS:
                items.extend(await self._remote(f"query_targets({ap})", lambda ap=ap: self.client.query_targets(ad_product=ap)))
            self._targets = items
        return self._targets

    # ── Local lookups ─────────────────────────────────────────────────

    async def _existing(self, model, key_column) -> dict:
        result = await self.db.execute(select(model).where(model.credential_id == self.credential_id))
        return {getattr(row, key_column): row for row in result.scalars().all()}

    # ── Sync types ────────────────────────────────────────────────────

    async def _upsert_campaigns(self, with_status: bool, with_budget: bool) -> int:
        remote = await self._remote_campaigns()
        existing = await self._existing(Campaign, "amazon_campaign_id")
        now = utcnow()
        count = 0
        for data in remote:
            amazon_id = data.get("campaignId") or data.get("id")
            if not amazon_id:
                continue
            amazon_id = str(amazon_id)
            campaign = existing.get(amazon_id)
            if campaign is None:
                campaign = Campaign(credential_id=self.credential_id, amazon_campaign_id=amazon_id)
                self.db.add(campaign)
                existing[amazon_id] = campaign
            campaign.campaign_name = first_present(data, "name", "campaignName") or campaign.campaign_name
            campaign.campaign_type = first_present(data, "adProduct", "campaignType") or campaign.campaign_type
            campaign.targeting_type = first_present(data, "targetingType", "targeting") or campaign.targeting_type
            if with_status:
                campaign.state = first_present(data, "state", "status") or campaign.state
                campaign.status_synced_at = now
            if with_budget:
                budget = extract_daily_budget(data)
                campaign.daily_budget = budget if budget is not None else campaign.daily_budget
                campaign.budget_synced_at = now
            campaign.raw_data = data
            campaign.synced_at = now
            count += 1
        await self.db.flush()
        return count

    async def sync_campaigns_status(self) -> int:
        return await self._upsert_campaigns(with_status=True, with_budget=False)

    async def sync_budgets(self) -> int:
        return await self._upsert_campaigns(with_status=False, with_budget=True)

    async def sync_ad_groups(self) -> int:
        remote = await self._remote_ad_groups()
        existing = await self._existing(AdGroup, "amazon_ad_group_id")
        campaigns = await self._existing(Campaign, "amazon_campaign_id")
        now = utcnow()
        count = 0
        for data in remote:
            amazon_id = data.get("adGroupId") or data.get("id")
            if not amazon_id:
                continue
            amazon_id = str(amazon_id)
            amz_campaign_id = str(data["campaignId"]) if data.get("campaignId") else None
            ad_group = existing.get(amazon_id)
            if ad_group is None:
                ad_group = AdGroup(credential_id=self.credential_id, amazon_ad_group_id=amazon_id)
                self.db.add(ad_group)
                existing[amazon_id] = ad_group
            local_campaign = campaigns.get(amz_campaign_id) if amz_campaign_id else None
            ad_group.ad_group_name = first_present(data, "name", "adGroupName") or ad_group.ad_group_name
            ad_group.state = data.get("state") or ad_group.state
            bid = extract_bid(data)
            ad_group.default_bid = bid if bid is not None else ad_group.default_bid
            ad_group.amazon_campaign_id = amz_campaign_id or ad_group.amazon_campaign_id
            ad_group.campaign_id = local_campaign.id if local_campaign else ad_group.campaign_id
            ad_group.raw_data = data
            ad_group.synced_at = now
            count += 1
        await self.db.flush()
        return count

    async def _upsert_targets(self, keywords: bool) -> int:
        remote = [t for t in await self._remote_targets() if is_keyword_target(t) == keywords]
        existing = await self._existing(Target, "amazon_target_id")
        ad_groups = await self._existing(AdGroup, "amazon_ad_group_id")
        now = utcnow()
        count = 0
        for data in remote:
            amazon_id = data.get("targetId") or data.get("id")
            if not amazon_id:
                continue
            amazon_id = str(amazon_id)
            amz_ag_id = str(data["adGroupId"]) if data.get("adGroupId") else None
            target = existing.get(amazon_id)
            if target is None:
                target = Target(credential_id=self.credential_id, amazon_target_id=amazon_id)
                self.db.add(target)
                existing[amazon_id] = target
            details = data.get("targetDetails") or {}
            local_ag = ad_groups.get(amz_ag_id) if amz_ag_id else None
            target.target_type = first_present(data, "targetType", "type") or target.target_type
            target.expression_value = extract_target_expression(data) or target.expression_value
            target.match_type = data.get("matchType") or (details.get("keywordTarget") or {}).get("matchType") or target.match_type
            target.state = data.get("state") or target.state
            bid = extract_bid(data)
            target.bid = bid if bid is not None else target.bid
            target.amazon_campaign_id = data.get("campaignId") or target.amazon_campaign_id
            target.amazon_ad_group_id = amz_ag_id or target.amazon_ad_group_id
            target.ad_group_id = local_ag.id if local_ag else target.ad_group_id
            target.raw_data = data
            target.synced_at = now
            count += 1
        await self.db.flush()
        return count

    async def sync_keywords(self) -> int:
        return await self._upsert_targets(keywords=True)

    async def sync_targets(self) -> int:
        return await self._upsert_targets(keywords=False)

    async def sync_performance(self) -> int:
        end = utcnow().date()
        start = end - timedelta(days=PERFORMANCE_LOOKBACK_DAYS - 1)
        start_s, end_s = start.isoformat(), end.isoformat()

        report_id = await self._remote(
            "create_targeting_report", lambda: self.client.create_targeting_report(start_s, end_s)
        )
        report = await self._remote("wait_for_report", lambda: self.client.wait_for_report(report_id))
        status = report.get("status")
        if status != "COMPLETED":
            raise TransportError(f"Targeting report {report_id} ended with status {status}")
        rows = await self._remote("download_report", lambda: self.client.download_report_rows(report))

        result = await self.db.execute(
            select(TargetPerformanceDaily).where(
                TargetPerformanceDaily.credential_id == self.credential_id,
                TargetPerformanceDaily.date >= start_s,
                TargetPerformanceDaily.date <= end_s,
            )
        )
        existing = {(r.amazon_target_id, r.date): r for r in result.scalars().all()}
        now = utcnow()
        stored = 0
        for row in rows:
            target_id = row.get("keywordId") or row.get("targetId")
            row_date = row.get("date")
            if not target_id or not row_date:
                continue
            key = (str(target_id), str(row_date)[:10])
            perf = existing.get(key)
            if perf is None:
                perf = TargetPerformanceDaily(
                    credential_id=self.credential_id,
                    amazon_target_id=key[0],
                    date=key[1],
                )
                self.db.add(perf)
                existing[key] = perf
            perf.amazon_campaign_id = str(row["campaignId"]) if row.get("campaignId") else perf.amazon_campaign_id
            perf.spend = _safe_float(row.get("cost"))
            perf.sales = _safe_float(row.get("sales7d"))
            perf.orders = _safe_int(row.get("purchases7d"))
            perf.clicks = _safe_int(row.get("clicks"))
            perf.impressions = _safe_int(row.get("impressions"))
            perf.synced_at = now
            stored += 1
        await self.db.flush()
        logger.info(f"Stored {stored} target performance rows for account {self.credential_id} ({start_s} to {end_s})")
        return stored

    async def sync_full(self) -> dict:
        stats = {}
        for sync_type in ENTITY_SYNC_TYPES:
            stats[sync_type] = await self.run_one(sync_type)
        return stats

    # ── Dispatch ──────────────────────────────────────────────────────

    async def run_one(self, sync_type: str):
        handlers = {
            "campaigns_status": self.sync_campaigns_status,
            "budgets": self.sync_budgets,
            "ad_groups": self.sync_ad_groups,
            "keywords": self.sync_keywords,
            "targets": self.sync_targets,
            "full_sync": self.sync_full,
            "performance": self.sync_performance,
        }
        handler = handlers.get(sync_type)
        if handler is None:
            raise UnknownSyncType(f"Unknown sync type: {sync_type!r}")
        return await handler()

    async def run(self, sync_types: Iterable[str]) -> dict:
        """Run each sync type in order. The first failure propagates."""
        stats = {}
        for sync_type in sync_types:
            stats[sync_type] = await self.run_one(sync_type)
            logger.info(f"Account {self.credential_id}: {sync_type} synced ({stats[sync_type]})")
        return stats
