from __future__ import annotations

from datetime import datetime
import json
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from auditkpi.core.errors import DatabaseError
from auditkpi.domain.models import KpiConfiguration, KpiValue


_ROLLUP_KEY = ["kpi_config_id", "period_start", "period_type", "company_id", "dimension_key"]


def dimension_key(dimension_values: dict[str, Any] | None) -> str:
    # Canonical JSON so {"a": 1, "b": 2} and {"b": 2, "a": 1} share one rollup row.
    return json.dumps(dimension_values or {}, sort_keys=True, separators=(",", ":"), default=str)


def _dialect_insert(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise DatabaseError(f"kpi value upsert is not supported on dialect {dialect}")


async def get_config_by_code(session: AsyncSession, kpi_code: str) -> KpiConfiguration | None:
    result = await session.execute(select(KpiConfiguration).where(KpiConfiguration.kpi_code == kpi_code))
    return result.scalar_one_or_none()


async def list_configs(
    session: AsyncSession,
    *,
    entity_type: str | None = None,
    is_active: bool | None = None,
    is_real_time: bool | None = None,
) -> list[KpiConfiguration]:
    stmt = select(KpiConfiguration)
    if entity_type:
        stmt = stmt.where(KpiConfiguration.entity_type == entity_type)
    if is_active is not None:
        stmt = stmt.where(KpiConfiguration.is_active.is_(is_active))
    if is_real_time is not None:
        stmt = stmt.where(KpiConfiguration.is_real_time.is_(is_real_time))
    stmt = stmt.order_by(KpiConfiguration.created_at.desc(), KpiConfiguration.kpi_code.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def list_active_configs_for_period(session: AsyncSession, period_type: str) -> list[KpiConfiguration]:
    # Period lists are JSON arrays; filter in Python to stay portable across JSON backends.
    configs = await list_configs(session, is_active=True)
    return [config for config in configs if period_type in (config.aggregation_periods or [])]


def applies_to_company(config: KpiConfiguration, company_id: str) -> bool:
    allowed = config.companies_enabled
    return allowed is None or company_id in allowed


async def upsert_kpi_value(
    session: AsyncSession,
    *,
    config: KpiConfiguration,
    company_id: str,
    period_type: str,
    period_start: datetime,
    numeric_value: float,
    record_count: int,
    metadata: dict[str, Any] | None,
    calculation_time_ms: int,
    calculated_at: datetime,
    dimension_values: dict[str, Any] | None = None,
) -> None:
    # Last write wins on the rollup key; there is no version check.
    insert = _dialect_insert(session)
    values = {
        "kpi_config_id": config.id,
        "kpi_code": config.kpi_code,
        "company_id": company_id,
        "period_type": period_type,
        "period_start": period_start,
        "period_year": period_start.year,
        "period_month": period_start.month,
        "period_day": period_start.day,
        "period_hour": period_start.hour,
        "dimension_key": dimension_key(dimension_values),
        "dimension_values": dimension_values or {},
        "numeric_value": numeric_value,
        "record_count": record_count,
        "metadata_json": metadata,
        "calculation_time_ms": calculation_time_ms,
        "calculated_at": calculated_at,
    }
    stmt = insert(KpiValue).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=_ROLLUP_KEY,
        set_={
            "kpi_code": stmt.excluded.kpi_code,
            "numeric_value": stmt.excluded.numeric_value,
            "record_count": stmt.excluded.record_count,
            "metadata_json": stmt.excluded.metadata_json,
            "calculation_time_ms": stmt.excluded.calculation_time_ms,
            "calculated_at": stmt.excluded.calculated_at,
        },
    )
    await session.execute(stmt)


async def get_value(
    session: AsyncSession,
    *,
    kpi_code: str,
    company_id: str,
    period_type: str,
    period_start: datetime,
    dimension_values: dict[str, Any] | None = None,
) -> KpiValue | None:
    result = await session.execute(
        select(KpiValue).where(
            KpiValue.kpi_code == kpi_code,
            KpiValue.company_id == company_id,
            KpiValue.period_type == period_type,
            KpiValue.period_start == period_start,
            KpiValue.dimension_key == dimension_key(dimension_values),
        )
    )
    return result.scalar_one_or_none()


async def list_values(
    session: AsyncSession,
    *,
    kpi_code: str,
    company_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    period_type: str | None = None,
) -> list[KpiValue]:
    stmt = select(KpiValue).where(KpiValue.kpi_code == kpi_code)
    if company_id:
        stmt = stmt.where(KpiValue.company_id == company_id)
    if start is not None and end is not None:
        stmt = stmt.where(KpiValue.period_start >= start, KpiValue.period_start <= end)
    if period_type:
        stmt = stmt.where(KpiValue.period_type == period_type)
    stmt = stmt.order_by(KpiValue.period_start.asc())
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def latest_values(
    session: AsyncSession,
    *,
    kpi_code: str,
    company_id: str,
    period_type: str,
    limit: int,
) -> list[KpiValue]:
    # Newest first; trend analysis splits this list into recent and older halves.
    result = await session.execute(
        select(KpiValue)
        .where(
            KpiValue.kpi_code == kpi_code,
            KpiValue.company_id == company_id,
            KpiValue.period_type == period_type,
        )
        .order_by(KpiValue.period_start.desc(), KpiValue.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_precalculated(
    session: AsyncSession,
    *,
    company_id: str,
    entity_type: str,
    period_type: str,
    start: datetime,
    end: datetime,
) -> list[tuple[KpiValue, str]]:
    result = await session.execute(
        select(KpiValue, KpiConfiguration.kpi_code)
        .join(KpiConfiguration, KpiConfiguration.id == KpiValue.kpi_config_id)
        .where(
            KpiValue.company_id == company_id,
            KpiValue.period_type == period_type,
            KpiValue.period_start >= start,
            KpiValue.period_start <= end,
            KpiConfiguration.entity_type == entity_type,
        )
        .order_by(KpiValue.period_start.asc(), KpiConfiguration.kpi_code.asc())
    )
    return [(row[0], row[1]) for row in result.all()]


async def delete_values_for_config(session: AsyncSession, config_id: str) -> int:
    result = await session.execute(delete(KpiValue).where(KpiValue.kpi_config_id == config_id))
    return result.rowcount or 0


async def delete_values_before(session: AsyncSession, *, config_id: str, cutoff: datetime) -> int:
    result = await session.execute(
        delete(KpiValue).where(KpiValue.kpi_config_id == config_id, KpiValue.period_start < cutoff)
    )
    return result.rowcount or 0
