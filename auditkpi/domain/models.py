from __future__ import annotations

from datetime import date, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# JSONB on PostgreSQL, plain JSON elsewhere so the schema also builds on SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntId = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # Batch jobs fan out across active companies only.
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditRecord(Base):
    __tablename__ = "audit_records"
    __table_args__ = (
        Index("ix_audit_records_company_entity_kind", "company_id", "entity_type", "change_kind"),
        Index("ix_audit_records_entity_id_event_at", "entity_type", "entity_id", "event_at"),
        Index("ix_audit_records_partition_company", "partition_key", "company_id"),
    )

    # Monotonic ids keep archive batches ordered and resumable.
    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String, index=True)
    entity_id: Mapped[str] = mapped_column(String)
    entity_table: Mapped[str] = mapped_column(String)
    operation: Mapped[str] = mapped_column(String)
    change_kind: Mapped[str] = mapped_column(String)
    before_state: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    after_state: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    changed_fields: Mapped[list[str]] = mapped_column(JsonType, default=list)
    company_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    session_id: Mapped[str | None] = mapped_column(String, nullable=True)
    application_source: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    api_endpoint: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    change_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_context: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    impact_score: Mapped[int] = mapped_column(Integer, default=10)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    # Calendar decomposition of event_at (UTC) used for grouping and partition pruning.
    event_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    event_date: Mapped[date] = mapped_column(Date, index=True)
    event_year: Mapped[int] = mapped_column(Integer)
    event_month: Mapped[int] = mapped_column(Integer)
    event_day: Mapped[int] = mapped_column(Integer)
    event_day_of_week: Mapped[int] = mapped_column(Integer)
    event_iso_year: Mapped[int] = mapped_column(Integer)
    event_iso_week: Mapped[int] = mapped_column(Integer)
    event_quarter: Mapped[int] = mapped_column(Integer)
    event_hour: Mapped[int] = mapped_column(Integer)
    partition_key: Mapped[str] = mapped_column(String)


class SystemEvent(Base):
    __tablename__ = "system_events"
    __table_args__ = (
        Index("ix_system_events_type_company_processed", "event_type", "company_id", "is_processed"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    severity: Mapped[str] = mapped_column(String, default="INFO")
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    # Downstream alerting marks events processed; the daily job prunes them later.
    is_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class KpiConfiguration(Base):
    __tablename__ = "kpi_configurations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    kpi_code: Mapped[str] = mapped_column(String, unique=True, index=True)
    entity_type: Mapped[str] = mapped_column(String, index=True)
    # Localized labels keyed by language code.
    name_json: Mapped[dict[str, str]] = mapped_column(JsonType, default=dict)
    description_json: Mapped[dict[str, str]] = mapped_column(JsonType, default=dict)
    # Typed aggregation definition compiled to a parameterized statement at run time.
    definition_json: Mapped[dict[str, Any]] = mapped_column(JsonType)
    aggregation_periods: Mapped[list[str]] = mapped_column(JsonType, default=list)
    dimensions: Mapped[list[str]] = mapped_column(JsonType, default=list)
    is_real_time: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cache_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    cache_ttl_minutes: Mapped[int] = mapped_column(Integer, default=60)
    retention_days: Mapped[int] = mapped_column(Integer, default=730)
    compression_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    partitioning_strategy: Mapped[str] = mapped_column(String, default="MONTHLY")
    # Null means the KPI applies to every company.
    companies_enabled: Mapped[list[str] | None] = mapped_column(JsonType, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class KpiValue(Base):
    __tablename__ = "kpi_values"
    __table_args__ = (
        UniqueConstraint(
            "kpi_config_id",
            "period_start",
            "period_type",
            "company_id",
            "dimension_key",
            name="uq_kpi_values_rollup_key",
        ),
        Index("ix_kpi_values_code_company_type", "kpi_code", "company_id", "period_type"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    kpi_config_id: Mapped[str] = mapped_column(String, ForeignKey("kpi_configurations.id"), index=True)
    kpi_code: Mapped[str] = mapped_column(String)
    company_id: Mapped[str] = mapped_column(String, index=True)
    period_type: Mapped[str] = mapped_column(String)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    period_year: Mapped[int] = mapped_column(Integer)
    period_month: Mapped[int] = mapped_column(Integer)
    period_day: Mapped[int] = mapped_column(Integer)
    period_hour: Mapped[int] = mapped_column(Integer)
    # Canonical JSON of dimension_values; "{}" when the value is not dimensioned.
    dimension_key: Mapped[str] = mapped_column(String, default="{}")
    dimension_values: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    numeric_value: Mapped[float] = mapped_column(Float, default=0.0)
    record_count: Mapped[int] = mapped_column(Integer, default=0)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    calculation_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class QueryCacheEntry(Base):
    __tablename__ = "query_cache_entries"
    __table_args__ = (Index("ix_query_cache_entries_expires_at", "expires_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    query_hash: Mapped[str] = mapped_column(String, unique=True, index=True)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True)
    query_params: Mapped[dict[str, Any]] = mapped_column(JsonType)
    result_json: Mapped[list[dict[str, Any]]] = mapped_column(JsonType)
    result_size: Mapped[int] = mapped_column(Integer, default=0)
    hit_count: Mapped[int] = mapped_column(Integer, default=0)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    calculated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class DataArchive(Base):
    __tablename__ = "data_archives"
    __table_args__ = (Index("ix_data_archives_tier_archive_date", "storage_tier", "archive_date"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    original_table: Mapped[str] = mapped_column(String)
    original_id: Mapped[str] = mapped_column(String)
    company_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    archived_data: Mapped[dict[str, Any]] = mapped_column(JsonType)
    archive_reason: Mapped[str] = mapped_column(String)
    original_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    data_size: Mapped[int] = mapped_column(Integer, default=0)
    archive_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    storage_tier: Mapped[str] = mapped_column(String, default="WARM")


class MonthlyReport(Base):
    __tablename__ = "monthly_reports"
    __table_args__ = (UniqueConstraint("company_id", "period", name="uq_monthly_reports_company_period"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    company_id: Mapped[str] = mapped_column(String)
    period: Mapped[str] = mapped_column(String)
    stats_json: Mapped[dict[str, dict[str, int]]] = mapped_column(JsonType, default=dict)
    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class JobLease(Base):
    __tablename__ = "job_leases"

    # One row per scheduled job; the owner token is rewritten once the lease expires.
    job_name: Mapped[str] = mapped_column(String, primary_key=True)
    owner_token: Mapped[str] = mapped_column(String)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
