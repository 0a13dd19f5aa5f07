"""
Reconciliation Validator — compares local entity counts with what Amazon
Ads reports right now. Read-only: mismatches are reported, never repaired.
"""

import logging
import uuid
from datetime import datetime
from typing import Awaitable, Callable, Literal, Optional

from pydantic import BaseModel, computed_field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from adops.config import Settings, get_settings
from adops.mcp_client import AmazonAdsMCP
from adops.models import ActivityLog, AdGroup, Campaign, Target
from adops.services.account_service import get_client_for_account
from adops.services.backoff import with_backoff
from adops.services.keyword_execution_service import ClientFactory
from adops.services.sync_service import is_keyword_target
from adops.utils import utcnow

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("spCampaigns", "sbCampaigns", "sdCampaigns", "adGroups", "keywords", "productTargets")

CAMPAIGN_AD_PRODUCTS = {
    "spCampaigns": "SPONSORED_PRODUCTS",
    "sbCampaigns": "SPONSORED_BRANDS",
    "sdCampaigns": "SPONSORED_DISPLAY",
}


class EntityValidation(BaseModel):
    entity_type: str
    local_count: int
    remote_count: Optional[int] = None
    status: Literal["match", "mismatch", "error"]
    error: Optional[str] = None

    @property
    def difference(self) -> int:
        if self.remote_count is None:
            return 0
        return abs(self.remote_count - self.local_count)


class ValidationResult(BaseModel):
    credential_id: uuid.UUID
    results: list[EntityValidation]
    validated_at: datetime

    @computed_field
    @property
    def total_difference(self) -> int:
        return sum(r.difference for r in self.results if r.status != "error")

    @computed_field
    @property
    def is_consistent(self) -> bool:
        return all(r.status == "match" for r in self.results)


# ── Local counts ──────────────────────────────────────────────────────

_KEYWORD = func.upper(Target.target_type) == "KEYWORD"


async def _local_count(db: AsyncSession, credential_id: uuid.UUID, entity_type: str) -> int:
    if entity_type in CAMPAIGN_AD_PRODUCTS:
        query = select(func.count()).select_from(Campaign).where(
            Campaign.credential_id == credential_id,
            Campaign.campaign_type == CAMPAIGN_AD_PRODUCTS[entity_type],
        )
    elif entity_type == "adGroups":
        query = select(func.count()).select_from(AdGroup).where(AdGroup.credential_id == credential_id)
    elif entity_type == "keywords":
        query = select(func.count()).select_from(Target).where(Target.credential_id == credential_id, _KEYWORD)
    else:
        query = select(func.count()).select_from(Target).where(
            Target.credential_id == credential_id,
            or_(Target.target_type.is_(None), ~_KEYWORD),
        )
    return (await db.execute(query)).scalar() or 0


# ── Remote counts ─────────────────────────────────────────────────────

class _RemoteCounter:
    """Remote counts per entity type; the target listing is shared by keywords/productTargets."""

    def __init__(self, client: AmazonAdsMCP, settings: Settings):
        self.client = client
        self.settings = settings
        self._targets: Optional[list[dict]] = None

    async def _remote(self, description: str, operation: Callable[[], Awaitable]):
        return await with_backoff(
            operation,
            max_attempts=self.settings.backoff_max_attempts,
            base_delay_ms=self.settings.backoff_base_delay_ms,
            description=description,
        )

    async def _all_targets(self) -> list[dict]:
        if self._targets is None:
            targets = []
            for ap in CAMPAIGN_AD_PRODUCTS.values():
                targets.extend(await self._remote(f"query_targets({ap})", lambda ap=ap: self.client.query_targets(ad_product=ap)))
            self._targets = targets
        return self._targets

    async def count(self, entity_type: str) -> int:
        if entity_type in CAMPAIGN_AD_PRODUCTS:
            ap = CAMPAIGN_AD_PRODUCTS[entity_type]
            return len(await self._remote(f"query_campaigns({ap})", lambda: self.client.query_campaigns(ad_product=ap)))
        if entity_type == "adGroups":
            total = 0
            for ap in CAMPAIGN_AD_PRODUCTS.values():
                total += len(await self._remote(f"query_ad_groups({ap})", lambda ap=ap: self.client.query_ad_groups(ad_product=ap)))
            return total
        targets = await self._all_targets()
        keywords = sum(1 for t in targets if is_keyword_target(t))
        return keywords if entity_type == "keywords" else len(targets) - keywords


async def run_validation(
    db: AsyncSession,
    credential_id: uuid.UUID,
    client: Optional[AmazonAdsMCP] = None,
    *,
    client_factory: ClientFactory = get_client_for_account,
    settings: Optional[Settings] = None,
) -> ValidationResult:
    """
    Compare local and remote counts for every entity type. A failed remote
    fetch marks only that entity as "error". AuthenticationError propagates.
    """
    settings = settings or get_settings()
    if client is None:
        client = await client_factory(db, credential_id)
    counter = _RemoteCounter(client, settings)

    results = []
    for entity_type in ENTITY_TYPES:
        local = await _local_count(db, credential_id, entity_type)
        try:
            remote = await counter.count(entity_type)
        except Exception as e:
            logger.warning(f"Validation of {entity_type} for {credential_id} failed: {e}")
            results.append(EntityValidation(entity_type=entity_type, local_count=local, status="error", error=str(e)[:500]))
            continue
        results.append(EntityValidation(
            entity_type=entity_type,
            local_count=local,
            remote_count=remote,
            status="match" if local == remote else "mismatch",
        ))

    validation = ValidationResult(credential_id=credential_id, results=results, validated_at=utcnow())
    db.add(ActivityLog(
        credential_id=credential_id,
        action="data_validation",
        category="validation",
        description=f"Validated {len(results)} entity types, total difference {validation.total_difference}",
        entity_type="validation",
        entity_id=str(credential_id),
        status="success" if validation.is_consistent else "error",
        details=validation.model_dump(mode="json"),
    ))
    await db.flush()
    return validation
