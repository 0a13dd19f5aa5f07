"""Sync schedules, sync logs, daily target performance and keyword auto-execution tables.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Uuid(), nullable=nullable)


def _credential_fk(ondelete: str = "CASCADE") -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["credential_id"], ["credentials.id"], ondelete=ondelete)


def upgrade() -> None:
    # credentials/campaigns/ad_groups/targets/activity_log come from init_db's create_all
    existing = set(sa.inspect(op.get_bind()).get_table_names())

    if "target_performance_daily" not in existing:
        op.create_table(
            "target_performance_daily",
            _uuid("id"),
            _uuid("credential_id"),
            sa.Column("amazon_target_id", sa.String(255), nullable=False),
            sa.Column("amazon_campaign_id", sa.String(255), nullable=True),
            sa.Column("date", sa.String(10), nullable=False),
            sa.Column("spend", sa.Float(), nullable=True),
            sa.Column("sales", sa.Float(), nullable=True),
            sa.Column("impressions", sa.BigInteger(), nullable=True),
            sa.Column("clicks", sa.Integer(), nullable=True),
            sa.Column("orders", sa.Integer(), nullable=True),
            sa.Column("synced_at", sa.DateTime(), nullable=True),
            _credential_fk(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("credential_id", "amazon_target_id", "date", name="uq_target_perf_daily"),
        )
        op.create_index("ix_tpd_credential_date", "target_performance_daily", ["credential_id", "date"])
        op.create_index("ix_tpd_target_id", "target_performance_daily", ["amazon_target_id"])

    if "account_sync_schedules" not in existing:
        op.create_table(
            "account_sync_schedules",
            _uuid("id"),
            _uuid("credential_id"),
            sa.Column("sync_type", sa.String(20), nullable=True, server_default="all"),
            sa.Column("frequency", sa.String(30), nullable=False),
            sa.Column("preferred_time", sa.String(5), nullable=True),
            sa.Column("preferred_day_of_week", sa.Integer(), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True, server_default=sa.true()),
            sa.Column("last_run_at", sa.DateTime(), nullable=True),
            sa.Column("next_run_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            _credential_fk(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("credential_id", name="uq_sync_schedule_per_credential"),
        )
        op.create_index("ix_sync_schedules_enabled", "account_sync_schedules", ["is_enabled"])

    if "sync_logs" not in existing:
        op.create_table(
            "sync_logs",
            _uuid("id"),
            _uuid("credential_id"),
            sa.Column("trigger", sa.String(30), nullable=False),
            sa.Column("sync_types", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(20), nullable=True, server_default="running"),
            sa.Column("stats", sa.JSON(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            _credential_fk(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_sync_logs_credential_id", "sync_logs", ["credential_id"])
        op.create_index("ix_sync_logs_started_at", "sync_logs", ["started_at"])

    if "keyword_execution_configs" not in existing:
        op.create_table(
            "keyword_execution_configs",
            _uuid("id"),
            _uuid("credential_id"),
            sa.Column("is_enabled", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("execution_mode", sa.String(10), nullable=True, server_default="manual"),
            sa.Column("acos_threshold", sa.Float(), nullable=True, server_default="50"),
            sa.Column("spend_threshold", sa.Float(), nullable=True, server_default="20"),
            sa.Column("clicks_threshold", sa.Integer(), nullable=True, server_default="20"),
            sa.Column("lookback_days", sa.Integer(), nullable=True, server_default="14"),
            sa.Column("max_daily_pauses", sa.Integer(), nullable=True, server_default="10"),
            sa.Column("max_daily_enables", sa.Integer(), nullable=True, server_default="5"),
            sa.Column("exclude_top_performers", sa.Boolean(), nullable=True, server_default=sa.false()),
            sa.Column("top_performer_threshold", sa.Float(), nullable=True, server_default="20"),
            sa.Column("rollback_window_hours", sa.Integer(), nullable=True, server_default="24"),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            _credential_fk(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("credential_id", name="uq_keyword_config_per_credential"),
        )

    if "keyword_execution_records" not in existing:
        op.create_table(
            "keyword_execution_records",
            _uuid("id"),
            _uuid("credential_id"),
            _uuid("config_id", nullable=True),
            sa.Column("execution_type", sa.String(20), nullable=True),
            sa.Column("dry_run", sa.Boolean(), nullable=True),
            sa.Column("status", sa.String(20), nullable=True),
            sa.Column("total_keywords", sa.Integer(), nullable=True),
            sa.Column("paused_count", sa.Integer(), nullable=True),
            sa.Column("enabled_count", sa.Integer(), nullable=True),
            sa.Column("skipped_count", sa.Integer(), nullable=True),
            sa.Column("failed_count", sa.Integer(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            _credential_fk(),
            sa.ForeignKeyConstraint(["config_id"], ["keyword_execution_configs.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_kw_exec_credential_id", "keyword_execution_records", ["credential_id"])
        op.create_index("ix_kw_exec_status", "keyword_execution_records", ["status"])
        op.create_index("ix_kw_exec_started_at", "keyword_execution_records", ["started_at"])

    if "keyword_execution_details" not in existing:
        op.create_table(
            "keyword_execution_details",
            _uuid("id"),
            _uuid("execution_id"),
            sa.Column("keyword_id", sa.String(255), nullable=False),
            sa.Column("keyword_text", sa.Text(), nullable=True),
            sa.Column("action_type", sa.String(10), nullable=False),
            sa.Column("status", sa.String(10), nullable=False),
            sa.Column("status_before", sa.String(20), nullable=True),
            sa.Column("status_after", sa.String(20), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("spend", sa.Float(), nullable=True),
            sa.Column("sales", sa.Float(), nullable=True),
            sa.Column("clicks", sa.Integer(), nullable=True),
            sa.Column("acos", sa.Float(), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["execution_id"], ["keyword_execution_records.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_kw_detail_execution_id", "keyword_execution_details", ["execution_id"])
        op.create_index("ix_kw_detail_keyword_id", "keyword_execution_details", ["keyword_id"])

    if "keyword_rollback_records" not in existing:
        op.create_table(
            "keyword_rollback_records",
            _uuid("id"),
            _uuid("execution_id"),
            _uuid("credential_id"),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("rolled_back_count", sa.Integer(), nullable=True),
            sa.Column("errors", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.ForeignKeyConstraint(["execution_id"], ["keyword_execution_records.id"], ondelete="CASCADE"),
            _credential_fk(),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_kw_rollback_execution_id", "keyword_rollback_records", ["execution_id"])


def downgrade() -> None:
    op.drop_table("keyword_rollback_records")
    op.drop_table("keyword_execution_details")
    op.drop_table("keyword_execution_records")
    op.drop_table("keyword_execution_configs")
    op.drop_index("ix_sync_logs_started_at", table_name="sync_logs")
    op.drop_index("ix_sync_logs_credential_id", table_name="sync_logs")
    op.drop_table("sync_logs")
    op.drop_index("ix_sync_schedules_enabled", table_name="account_sync_schedules")
    op.drop_table("account_sync_schedules")
    op.drop_index("ix_tpd_target_id", table_name="target_performance_daily")
    op.drop_index("ix_tpd_credential_date", table_name="target_performance_daily")
    op.drop_table("target_performance_daily")
