"""
Ads Ops Sync — Database Models
Cached Amazon Ads entities, daily keyword performance, sync schedules and
the append-only audit trail of keyword auto-execution and rollback.
"""

import uuid
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    String, Text, Float, Integer, BigInteger, Boolean, DateTime,
    JSON, ForeignKey, Index, UniqueConstraint, Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from adops.database import Base


def _utcnow() -> datetime:
    """Naive UTC now — matches DB columns (TIMESTAMP WITHOUT TIME ZONE)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ══════════════════════════════════════════════════════════════════════
#  ENUMS
# ══════════════════════════════════════════════════════════════════════

class CredentialStatus(str, enum.Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    ERROR = "error"


class ScheduleSyncType(str, enum.Enum):
    ALL = "all"
    CAMPAIGNS = "campaigns"
    KEYWORDS = "keywords"
    PERFORMANCE = "performance"


class ExecutionMode(str, enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


class ExecutionType(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class ExecutionStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class KeywordAction(str, enum.Enum):
    PAUSE = "pause"
    ENABLE = "enable"
    SKIP = "skip"


class DetailStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# ══════════════════════════════════════════════════════════════════════
#  CREDENTIALS: one row per advertiser account the scheduler syncs
# ══════════════════════════════════════════════════════════════════════

class Credential(Base):
    """Amazon Ads API credentials; the unit of account for every sync."""
    __tablename__ = "credentials"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_id: Mapped[str] = mapped_column(String(512), nullable=False)
    client_secret: Mapped[str] = mapped_column(Text, nullable=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[str] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=True)
    region: Mapped[str] = mapped_column(String(10), default="na")
    status: Mapped[str] = mapped_column(String(20), default=CredentialStatus.ACTIVE.value)
    last_tested_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    campaigns: Mapped[list["Campaign"]] = relationship("Campaign", back_populates="credential", cascade="all, delete-orphan")
    ad_groups: Mapped[list["AdGroup"]] = relationship("AdGroup", back_populates="credential", cascade="all, delete-orphan")
    targets: Mapped[list["Target"]] = relationship("Target", back_populates="credential", cascade="all, delete-orphan")
    sync_schedule: Mapped["AccountSyncSchedule"] = relationship("AccountSyncSchedule", back_populates="credential", cascade="all, delete-orphan", uselist=False)
    activity_logs: Mapped[list["ActivityLog"]] = relationship("ActivityLog", back_populates="credential", passive_deletes=True)

    __table_args__ = (
        Index("ix_credentials_status", "status"),
    )


# ══════════════════════════════════════════════════════════════════════
#  CAMPAIGNS: Cached campaign data from MCP
# ══════════════════════════════════════════════════════════════════════

class Campaign(Base):
    """Cached Amazon Ads campaign data from MCP queries."""
    __tablename__ = "campaigns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    amazon_campaign_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_name: Mapped[str] = mapped_column(String(512), nullable=True)
    campaign_type: Mapped[str] = mapped_column(String(100), nullable=True)  # SPONSORED_PRODUCTS / _BRANDS / _DISPLAY
    targeting_type: Mapped[str] = mapped_column(String(50), nullable=True)  # auto / manual
    state: Mapped[str] = mapped_column(String(50), nullable=True)
    daily_budget: Mapped[float] = mapped_column(Float, nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSON, nullable=True)
    status_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    budget_synced_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    credential: Mapped["Credential"] = relationship("Credential", back_populates="campaigns")
    ad_groups: Mapped[list["AdGroup"]] = relationship("AdGroup", back_populates="campaign", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("credential_id", "amazon_campaign_id", name="uq_campaign_per_credential"),
        Index("ix_campaigns_credential_id", "credential_id"),
        Index("ix_campaigns_campaign_type", "campaign_type"),
        Index("ix_campaigns_state", "state"),
    )


# ══════════════════════════════════════════════════════════════════════
#  AD GROUPS: Cached ad group data
# ══════════════════════════════════════════════════════════════════════

class AdGroup(Base):
    """Cached Amazon Ads ad group data from MCP queries."""
    __tablename__ = "ad_groups"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    campaign_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=True)
    amazon_ad_group_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amazon_campaign_id: Mapped[str] = mapped_column(String(255), nullable=True)
    ad_group_name: Mapped[str] = mapped_column(String(512), nullable=True)
    state: Mapped[str] = mapped_column(String(50), nullable=True)
    default_bid: Mapped[float] = mapped_column(Float, nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    credential: Mapped["Credential"] = relationship("Credential", back_populates="ad_groups")
    campaign: Mapped["Campaign"] = relationship("Campaign", back_populates="ad_groups")
    targets: Mapped[list["Target"]] = relationship("Target", back_populates="ad_group", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("credential_id", "amazon_ad_group_id", name="uq_adgroup_per_credential"),
        Index("ix_ad_groups_credential_id", "credential_id"),
        Index("ix_ad_groups_campaign_id", "campaign_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  TARGETS / KEYWORDS: Cached target data
# ══════════════════════════════════════════════════════════════════════

class Target(Base):
    """Cached Amazon Ads targets (keywords and product targets)."""
    __tablename__ = "targets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    ad_group_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("ad_groups.id", ondelete="CASCADE"), nullable=True)
    amazon_target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amazon_ad_group_id: Mapped[str] = mapped_column(String(255), nullable=True)
    amazon_campaign_id: Mapped[str] = mapped_column(String(255), nullable=True)
    target_type: Mapped[str] = mapped_column(String(100), nullable=True)  # KEYWORD, PRODUCT, AUTO, ...
    expression_value: Mapped[str] = mapped_column(Text, nullable=True)
    match_type: Mapped[str] = mapped_column(String(50), nullable=True)  # broad, phrase, exact
    state: Mapped[str] = mapped_column(String(50), nullable=True)
    bid: Mapped[float] = mapped_column(Float, nullable=True)
    raw_data: Mapped[dict] = mapped_column(JSON, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    credential: Mapped["Credential"] = relationship("Credential", back_populates="targets")
    ad_group: Mapped["AdGroup"] = relationship("AdGroup", back_populates="targets")

    __table_args__ = (
        UniqueConstraint("credential_id", "amazon_target_id", name="uq_target_per_credential"),
        Index("ix_targets_credential_id", "credential_id"),
        Index("ix_targets_ad_group_id", "ad_group_id"),
        Index("ix_targets_target_type", "target_type"),
        Index("ix_targets_state", "state"),
    )


# ══════════════════════════════════════════════════════════════════════
#  TARGET PERFORMANCE DAILY: feeds the keyword decision engine
# ══════════════════════════════════════════════════════════════════════

class TargetPerformanceDaily(Base):
    """
    One row per target per date, filled by the performance sync.
    The keyword engine sums these over its lookback window.
    """
    __tablename__ = "target_performance_daily"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    amazon_target_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amazon_campaign_id: Mapped[str] = mapped_column(String(255), nullable=True)
    date: Mapped[str] = mapped_column(String(10), nullable=False)  # YYYY-MM-DD

    spend: Mapped[float] = mapped_column(Float, default=0.0)
    sales: Mapped[float] = mapped_column(Float, default=0.0)
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(Integer, default=0)
    orders: Mapped[int] = mapped_column(Integer, default=0)

    synced_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("credential_id", "amazon_target_id", "date", name="uq_target_perf_daily"),
        Index("ix_tpd_credential_date", "credential_id", "date"),
        Index("ix_tpd_target_id", "amazon_target_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  SYNC SCHEDULES & LOGS
# ══════════════════════════════════════════════════════════════════════

class AccountSyncSchedule(Base):
    """Per-account custom sync cadence, evaluated by the scheduler tick."""
    __tablename__ = "account_sync_schedules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    sync_type: Mapped[str] = mapped_column(String(20), default=ScheduleSyncType.ALL.value)
    frequency: Mapped[str] = mapped_column(String(30), nullable=False)
    preferred_time: Mapped[str] = mapped_column(String(5), nullable=True)  # HH:MM
    preferred_day_of_week: Mapped[int] = mapped_column(Integer, nullable=True)  # 0 = Sunday
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    last_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    next_run_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    credential: Mapped["Credential"] = relationship("Credential", back_populates="sync_schedule")

    __table_args__ = (
        UniqueConstraint("credential_id", name="uq_sync_schedule_per_credential"),
        Index("ix_sync_schedules_enabled", "is_enabled"),
    )


class SyncLog(Base):
    """One row per account sync run (tier pass, custom schedule or manual trigger)."""
    __tablename__ = "sync_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    trigger: Mapped[str] = mapped_column(String(30), nullable=False)  # tier:high, schedule, manual
    sync_types: Mapped[list] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default=ExecutionStatus.RUNNING.value)
    stats: Mapped[dict] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_sync_logs_credential_id", "credential_id"),
        Index("ix_sync_logs_started_at", "started_at"),
    )


# ══════════════════════════════════════════════════════════════════════
#  KEYWORD AUTO-EXECUTION: config, runs, per-keyword details
# ══════════════════════════════════════════════════════════════════════

class KeywordExecutionConfig(Base):
    """Thresholds and mode for automated keyword pause/enable per account."""
    __tablename__ = "keyword_execution_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    execution_mode: Mapped[str] = mapped_column(String(10), default=ExecutionMode.MANUAL.value)
    acos_threshold: Mapped[float] = mapped_column(Float, default=50.0)  # percent
    spend_threshold: Mapped[float] = mapped_column(Float, default=20.0)
    clicks_threshold: Mapped[int] = mapped_column(Integer, default=20)
    lookback_days: Mapped[int] = mapped_column(Integer, default=14)
    # safety rails
    max_daily_pauses: Mapped[int] = mapped_column(Integer, default=10)
    max_daily_enables: Mapped[int] = mapped_column(Integer, default=5)
    exclude_top_performers: Mapped[bool] = mapped_column(Boolean, default=False)
    top_performer_threshold: Mapped[float] = mapped_column(Float, default=20.0)  # ACoS percent
    rollback_window_hours: Mapped[int] = mapped_column(Integer, default=24)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint("credential_id", name="uq_keyword_config_per_credential"),
    )


class KeywordExecutionRecord(Base):
    """One keyword auto-execution run and its aggregate counts."""
    __tablename__ = "keyword_execution_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    config_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("keyword_execution_configs.id", ondelete="SET NULL"), nullable=True)
    execution_type: Mapped[str] = mapped_column(String(20), default=ExecutionType.MANUAL.value)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default=ExecutionStatus.RUNNING.value)
    total_keywords: Mapped[int] = mapped_column(Integer, default=0)
    paused_count: Mapped[int] = mapped_column(Integer, default=0)
    enabled_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    completed_at: Mapped[datetime] = mapped_column(DateTime, nullable=True)

    # Relationships
    details: Mapped[list["KeywordExecutionDetail"]] = relationship("KeywordExecutionDetail", back_populates="execution", cascade="all, delete-orphan")

    __table_args__ = (
        Index("ix_kw_exec_credential_id", "credential_id"),
        Index("ix_kw_exec_status", "status"),
        Index("ix_kw_exec_started_at", "started_at"),
    )


class KeywordExecutionDetail(Base):
    """A single pause/enable action taken (or proposed) during a run."""
    __tablename__ = "keyword_execution_details"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    execution_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("keyword_execution_records.id", ondelete="CASCADE"), nullable=False)
    keyword_id: Mapped[str] = mapped_column(String(255), nullable=False)  # amazon target id
    keyword_text: Mapped[str] = mapped_column(Text, nullable=True)
    action_type: Mapped[str] = mapped_column(String(10), nullable=False)  # pause / enable
    status: Mapped[str] = mapped_column(String(10), nullable=False)  # success / failed / skipped
    status_before: Mapped[str] = mapped_column(String(20), nullable=True)
    status_after: Mapped[str] = mapped_column(String(20), nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=True)
    spend: Mapped[float] = mapped_column(Float, nullable=True)
    sales: Mapped[float] = mapped_column(Float, nullable=True)
    clicks: Mapped[int] = mapped_column(Integer, nullable=True)
    acos: Mapped[float] = mapped_column(Float, nullable=True)
    error_message: Mapped[str] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    execution: Mapped["KeywordExecutionRecord"] = relationship("KeywordExecutionRecord", back_populates="details")

    __table_args__ = (
        Index("ix_kw_detail_execution_id", "execution_id"),
        Index("ix_kw_detail_keyword_id", "keyword_id"),
    )


class KeywordRollbackRecord(Base):
    """Reversal of a prior execution. Never edits the execution it reverses."""
    __tablename__ = "keyword_rollback_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    execution_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("keyword_execution_records.id", ondelete="CASCADE"), nullable=False)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="CASCADE"), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=True)
    rolled_back_count: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_kw_rollback_execution_id", "execution_id"),
    )


# ══════════════════════════════════════════════════════════════════════
#  ACTIVITY LOG: Comprehensive action logging
# ══════════════════════════════════════════════════════════════════════

class ActivityLog(Base):
    """Logs all actions taken in the system for audit trail."""
    __tablename__ = "activity_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    credential_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("credentials.id", ondelete="SET NULL"), nullable=True)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)  # sync, validation, keyword_execution, settings
    description: Mapped[str] = mapped_column(Text, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, nullable=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=True)
    entity_id: Mapped[str] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="success")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    # Relationships
    credential: Mapped["Credential"] = relationship("Credential", back_populates="activity_logs")

    __table_args__ = (
        Index("ix_activity_log_credential_id", "credential_id"),
        Index("ix_activity_log_category", "category"),
        Index("ix_activity_log_created_at", "created_at"),
        Index("ix_activity_log_entity", "entity_type", "entity_id"),
    )
