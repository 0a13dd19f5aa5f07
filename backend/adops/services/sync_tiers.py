"""
Tier Registry — the fixed cadences at which each data class is synced.

LOW and FULL both carry full_sync at different intervals; the scheduler
runs both as configured.
"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

# Sync types that read or write keyword/target rows or the performance the
# keyword engine decides on
KEYWORD_DATA_SYNC_TYPES = frozenset({"keywords", "targets", "full_sync", "performance"})


@dataclass(frozen=True)
class TierDefinition:
    interval_ms: int
    description: str
    sync_types: tuple[str, ...]


class SyncTier(enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    FULL = "full"

    @property
    def definition(self) -> TierDefinition:
        return TIER_DEFINITIONS[self]

    @property
    def interval_ms(self) -> int:
        return self.definition.interval_ms

    @property
    def interval(self) -> timedelta:
        return timedelta(milliseconds=self.definition.interval_ms)

    @property
    def description(self) -> str:
        return self.definition.description

    @property
    def sync_types(self) -> tuple[str, ...]:
        return self.definition.sync_types

    @property
    def touches_keyword_data(self) -> bool:
        return any(t in KEYWORD_DATA_SYNC_TYPES for t in self.definition.sync_types)

    def is_due(self, last_run: Optional[datetime], now: datetime) -> bool:
        return last_run is None or now - last_run >= self.interval


TIER_DEFINITIONS: dict[SyncTier, TierDefinition] = {
    SyncTier.HIGH: TierDefinition(
        interval_ms=15 * 60 * 1000,
        description="high frequency: campaign status and budgets",
        sync_types=("campaigns_status", "budgets"),
    ),
    SyncTier.MEDIUM: TierDefinition(
        interval_ms=30 * 60 * 1000,
        description="medium frequency: ad groups, keywords and targets",
        sync_types=("ad_groups", "keywords", "targets"),
    ),
    SyncTier.LOW: TierDefinition(
        interval_ms=2 * 60 * 60 * 1000,
        description="low frequency: full entity sync",
        sync_types=("full_sync",),
    ),
    SyncTier.FULL: TierDefinition(
        interval_ms=60 * 60 * 1000,
        description="complete sync of all entities",
        sync_types=("full_sync",),
    ),
}
