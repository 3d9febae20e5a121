"""audit trail and kpi rollups

Revision ID: 0001_audit_kpi
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_audit_kpi"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "companies",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "audit_records",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        # Avoid index=True here because we create explicit indexes below.
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.String(), nullable=False),
        sa.Column("entity_table", sa.String(), nullable=False),
        sa.Column("operation", sa.String(), nullable=False),
        sa.Column("change_kind", sa.String(), nullable=False),
        sa.Column("before_state", postgresql.JSONB(), nullable=True),
        sa.Column("after_state", postgresql.JSONB(), nullable=True),
        sa.Column("changed_fields", postgresql.JSONB(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("application_source", sa.String(), nullable=True),
        sa.Column("ip_address", sa.String(), nullable=True),
        sa.Column("api_endpoint", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("change_reason", sa.Text(), nullable=True),
        sa.Column("business_context", postgresql.JSONB(), nullable=True),
        sa.Column("impact_score", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("processing_time_ms", sa.Integer(), nullable=False, server_default="0"),
        # Calendar decomposition of event_at (UTC) used for grouping and partition pruning.
        sa.Column("event_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_date", sa.Date(), nullable=False),
        sa.Column("event_year", sa.Integer(), nullable=False),
        sa.Column("event_month", sa.Integer(), nullable=False),
        sa.Column("event_day", sa.Integer(), nullable=False),
        sa.Column("event_day_of_week", sa.Integer(), nullable=False),
        sa.Column("event_iso_year", sa.Integer(), nullable=False),
        sa.Column("event_iso_week", sa.Integer(), nullable=False),
        sa.Column("event_quarter", sa.Integer(), nullable=False),
        sa.Column("event_hour", sa.Integer(), nullable=False),
        sa.Column("partition_key", sa.String(), nullable=False),
    )
    op.create_index("ix_audit_records_entity_type", "audit_records", ["entity_type"])
    op.create_index("ix_audit_records_company_id", "audit_records", ["company_id"])
    op.create_index("ix_audit_records_event_at", "audit_records", ["event_at"])
    op.create_index("ix_audit_records_event_date", "audit_records", ["event_date"])
    op.create_index(
        "ix_audit_records_company_entity_kind",
        "audit_records",
        ["company_id", "entity_type", "change_kind"],
    )
    op.create_index(
        "ix_audit_records_entity_id_event_at",
        "audit_records",
        ["entity_type", "entity_id", "event_at"],
    )
    op.create_index("ix_audit_records_partition_company", "audit_records", ["partition_key", "company_id"])

    op.create_table(
        "system_events",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("entity_id", sa.String(), nullable=True),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("severity", sa.String(), nullable=False, server_default="INFO"),
        sa.Column("payload_json", postgresql.JSONB(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_system_events_company_id", "system_events", ["company_id"])
    op.create_index("ix_system_events_occurred_at", "system_events", ["occurred_at"])
    op.create_index(
        "ix_system_events_type_company_processed",
        "system_events",
        ["event_type", "company_id", "is_processed"],
    )

    op.create_table(
        "kpi_configurations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("kpi_code", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("name_json", postgresql.JSONB(), nullable=False),
        sa.Column("description_json", postgresql.JSONB(), nullable=False),
        sa.Column("definition_json", postgresql.JSONB(), nullable=False),
        sa.Column("aggregation_periods", postgresql.JSONB(), nullable=False),
        sa.Column("dimensions", postgresql.JSONB(), nullable=False),
        sa.Column("is_real_time", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cache_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("cache_ttl_minutes", sa.Integer(), nullable=False, server_default="60"),
        sa.Column("retention_days", sa.Integer(), nullable=False, server_default="730"),
        sa.Column("compression_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("partitioning_strategy", sa.String(), nullable=False, server_default="MONTHLY"),
        # Null means the KPI applies to every company.
        sa.Column("companies_enabled", postgresql.JSONB(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_kpi_configurations_kpi_code", "kpi_configurations", ["kpi_code"], unique=True)
    op.create_index("ix_kpi_configurations_entity_type", "kpi_configurations", ["entity_type"])

    op.create_table(
        "kpi_values",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("kpi_config_id", sa.String(), sa.ForeignKey("kpi_configurations.id"), nullable=False),
        sa.Column("kpi_code", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("period_type", sa.String(), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_year", sa.Integer(), nullable=False),
        sa.Column("period_month", sa.Integer(), nullable=False),
        sa.Column("period_day", sa.Integer(), nullable=False),
        sa.Column("period_hour", sa.Integer(), nullable=False),
        sa.Column("dimension_key", sa.String(), nullable=False, server_default="{}"),
        sa.Column("dimension_values", postgresql.JSONB(), nullable=False),
        sa.Column("numeric_value", sa.Float(), nullable=False, server_default="0"),
        sa.Column("record_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("calculation_time_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        # Upserts target this key; last write wins.
        sa.UniqueConstraint(
            "kpi_config_id",
            "period_start",
            "period_type",
            "company_id",
            "dimension_key",
            name="uq_kpi_values_rollup_key",
        ),
    )
    op.create_index("ix_kpi_values_kpi_config_id", "kpi_values", ["kpi_config_id"])
    op.create_index("ix_kpi_values_company_id", "kpi_values", ["company_id"])
    op.create_index("ix_kpi_values_period_start", "kpi_values", ["period_start"])
    op.create_index("ix_kpi_values_code_company_type", "kpi_values", ["kpi_code", "company_id", "period_type"])

    op.create_table(
        "query_cache_entries",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("query_hash", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("entity_type", sa.String(), nullable=True),
        sa.Column("query_params", postgresql.JSONB(), nullable=False),
        sa.Column("result_json", postgresql.JSONB(), nullable=False),
        sa.Column("result_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("hit_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_accessed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("calculated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_query_cache_entries_query_hash", "query_cache_entries", ["query_hash"], unique=True)
    op.create_index("ix_query_cache_entries_company_id", "query_cache_entries", ["company_id"])
    op.create_index("ix_query_cache_entries_expires_at", "query_cache_entries", ["expires_at"])

    op.create_table(
        "data_archives",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("original_table", sa.String(), nullable=False),
        sa.Column("original_id", sa.String(), nullable=False),
        sa.Column("company_id", sa.String(), nullable=True),
        sa.Column("archived_data", postgresql.JSONB(), nullable=False),
        sa.Column("archive_reason", sa.String(), nullable=False),
        sa.Column("original_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archive_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("storage_tier", sa.String(), nullable=False, server_default="WARM"),
    )
    op.create_index("ix_data_archives_company_id", "data_archives", ["company_id"])
    op.create_index("ix_data_archives_tier_archive_date", "data_archives", ["storage_tier", "archive_date"])

    op.create_table(
        "monthly_reports",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("company_id", sa.String(), nullable=False),
        sa.Column("period", sa.String(), nullable=False),
        sa.Column("stats_json", postgresql.JSONB(), nullable=False),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("company_id", "period", name="uq_monthly_reports_company_period"),
    )

    op.create_table(
        "job_leases",
        sa.Column("job_name", sa.String(), primary_key=True),
        sa.Column("owner_token", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("job_leases")
    op.drop_table("monthly_reports")
    op.drop_index("ix_data_archives_tier_archive_date", table_name="data_archives")
    op.drop_index("ix_data_archives_company_id", table_name="data_archives")
    op.drop_table("data_archives")
    op.drop_index("ix_query_cache_entries_expires_at", table_name="query_cache_entries")
    op.drop_index("ix_query_cache_entries_company_id", table_name="query_cache_entries")
    op.drop_index("ix_query_cache_entries_query_hash", table_name="query_cache_entries")
    op.drop_table("query_cache_entries")
    op.drop_index("ix_kpi_values_code_company_type", table_name="kpi_values")
    op.drop_index("ix_kpi_values_period_start", table_name="kpi_values")
    op.drop_index("ix_kpi_values_company_id", table_name="kpi_values")
    op.drop_index("ix_kpi_values_kpi_config_id", table_name="kpi_values")
    op.drop_table("kpi_values")
    op.drop_index("ix_kpi_configurations_entity_type", table_name="kpi_configurations")
    op.drop_index("ix_kpi_configurations_kpi_code", table_name="kpi_configurations")
    op.drop_table("kpi_configurations")
    op.drop_index("ix_system_events_type_company_processed", table_name="system_events")
    op.drop_index("ix_system_events_occurred_at", table_name="system_events")
    op.drop_index("ix_system_events_company_id", table_name="system_events")
    op.drop_table("system_events")
    op.drop_index("ix_audit_records_partition_company", table_name="audit_records")
    op.drop_index("ix_audit_records_entity_id_event_at", table_name="audit_records")
    op.drop_index("ix_audit_records_company_entity_kind", table_name="audit_records")
    op.drop_index("ix_audit_records_event_date", table_name="audit_records")
    op.drop_index("ix_audit_records_event_at", table_name="audit_records")
    op.drop_index("ix_audit_records_company_id", table_name="audit_records")
    op.drop_index("ix_audit_records_entity_type", table_name="audit_records")
    op.drop_table("audit_records")
    op.drop_table("companies")
