from __future__ import annotations

from datetime import datetime, timedelta
import logging
import math
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auditkpi.core.errors import (
    DatabaseError,
    KpiConfigExistsError,
    KpiConfigNotFoundError,
    KpiDefinitionError,
)
from auditkpi.domain.events import PERIOD_DAILY, PERIOD_MONTHLY, PERIOD_TYPES, PERIOD_WEEKLY
from auditkpi.domain.models import KpiConfiguration, KpiValue
from auditkpi.persistence.db import Database
from auditkpi.persistence.repos import kpi as kpi_repo
from auditkpi.services.kpi.engine import AggregationEngine
from auditkpi.services.kpi.periods import utc_now
from auditkpi.services.kpi.schemas import FanOutResult, KpiCalculation, KpiTarget, KpiTrend
from auditkpi.services.kpi.statements import parse_definition


logger = logging.getLogger(__name__)

# Company recomputes only refresh the buckets operators look at day to day.
RECALC_PERIODS = (PERIOD_DAILY, PERIOD_WEEKLY, PERIOD_MONTHLY)
TREND_THRESHOLD_PCT = 5.0

_CONFIG_FIELDS = {
    "entity_type",
    "name_json",
    "description_json",
    "definition_json",
    "aggregation_periods",
    "dimensions",
    "is_real_time",
    "cache_enabled",
    "cache_ttl_minutes",
    "retention_days",
    "compression_enabled",
    "partitioning_strategy",
    "companies_enabled",
    "is_active",
}

DEFAULT_KPIS: list[dict[str, Any]] = [
    {
        "kpi_code": "appointment_conversion_rate",
        "entity_type": "appointments",
        "name_json": {"en": "Appointment conversion rate", "es": "Tasa de conversión de citas"},
        "description_json": {"en": "Share of created appointments that were confirmed"},
        "definition_json": {
            "kind": "ratio",
            "numerator": {"change_kind": "STATUS_CHANGE", "status": "CONFIRMED"},
            "denominator": {"change_kind": "CREATED"},
            "scale": 100,
        },
        "aggregation_periods": ["DAILY", "WEEKLY", "MONTHLY"],
        "dimensions": ["employee_id", "event_type_id"],
        "is_real_time": True,
    },
    {
        "kpi_code": "appointment_completion_rate",
        "entity_type": "appointments",
        "name_json": {"en": "Appointment completion rate", "es": "Tasa de citas completadas"},
        "description_json": {"en": "Completed appointments per created appointment"},
        "definition_json": {
            "kind": "ratio",
            "numerator": {"change_kind": "STATUS_CHANGE", "status": "COMPLETED"},
            "denominator": {"change_kind": "CREATED"},
            "scale": 100,
        },
        "aggregation_periods": ["DAILY", "WEEKLY", "MONTHLY"],
        "dimensions": ["employee_id"],
        "is_real_time": True,
    },
    {
        "kpi_code": "appointment_no_show_rate",
        "entity_type": "appointments",
        "name_json": {"en": "No-show rate", "es": "Tasa de inasistencia"},
        "description_json": {"en": "No-shows per confirmed appointment"},
        "definition_json": {
            "kind": "ratio",
            "numerator": {"change_kind": "STATUS_CHANGE", "status": "NO_SHOW"},
            "denominator": {"change_kind": "STATUS_CHANGE", "status": "CONFIRMED"},
            "scale": 100,
        },
        "aggregation_periods": ["DAILY", "WEEKLY", "MONTHLY"],
        "dimensions": ["employee_id"],
        "is_real_time": False,
    },
    {
        "kpi_code": "appointment_average_duration",
        "entity_type": "appointments",
        "name_json": {"en": "Average appointment duration (minutes)", "es": "Duración media de citas (minutos)"},
        "description_json": {"en": "Mean duration of appointments created in the period"},
        "definition_json": {
            "kind": "average",
            "field": "durationMinutes",
            "filter": {"change_kind": "CREATED", "has_field": "durationMinutes"},
        },
        "aggregation_periods": ["DAILY", "WEEKLY", "MONTHLY"],
        "dimensions": ["event_type_id"],
        "is_real_time": False,
    },
    {
        "kpi_code": "appointment_reschedule_rate",
        "entity_type": "appointments",
        "name_json": {"en": "Reschedule rate", "es": "Tasa de reprogramación"},
        "description_json": {"en": "Rescheduled appointments per created appointment"},
        "definition_json": {
            "kind": "ratio",
            "numerator": {"change_kind": "STATUS_CHANGE", "status": "RESCHEDULED"},
            "denominator": {"change_kind": "CREATED"},
            "scale": 100,
        },
        "aggregation_periods": ["WEEKLY", "MONTHLY"],
        "dimensions": [],
        "is_real_time": False,
    },
]


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def classify_trend(values_desc: list[float]) -> tuple[str, float | None, float | None, float | None]:
    """Classify newest-first values as increasing, decreasing or stable.

    The recent half is the first ceil(n/2) values. Returns
    (trend, change_percent, recent_average, older_average).
    """
    if len(values_desc) < 2:
        return "insufficient_data", None, None, None
    split = math.ceil(len(values_desc) / 2)
    recent_avg = _mean(values_desc[:split])
    older_avg = _mean(values_desc[split:])
    if older_avg == 0:
        change = 0.0
    else:
        change = (recent_avg - older_avg) / older_avg * 100
    if change > TREND_THRESHOLD_PCT:
        trend = "increasing"
    elif change < -TREND_THRESHOLD_PCT:
        trend = "decreasing"
    else:
        trend = "stable"
    return trend, round(change, 2), round(recent_avg, 2), round(older_avg, 2)


def _validate_periods(periods: list[str] | None) -> list[str]:
    unknown = [period for period in periods or [] if period not in PERIOD_TYPES]
    if unknown:
        raise KpiDefinitionError(f"unsupported aggregation periods: {unknown}")
    return list(periods or [])


def value_to_dict(value: KpiValue) -> dict[str, Any]:
    return {
        "kpi_code": value.kpi_code,
        "company_id": value.company_id,
        "period_type": value.period_type,
        "period_start": value.period_start.isoformat() if value.period_start else None,
        "dimension_values": value.dimension_values or {},
        "numeric_value": float(value.numeric_value or 0),
        "record_count": int(value.record_count or 0),
        "metadata": value.metadata_json or {},
        "calculated_at": value.calculated_at.isoformat() if value.calculated_at else None,
    }


class KpiManager:
    """Registry CRUD and the batch/analysis operations built on the engine."""

    def __init__(self, db: Database, engine: AggregationEngine) -> None:
        self._db = db
        self._engine = engine

    # --- registry --------------------------------------------------------

    async def create_configuration(self, payload: dict[str, Any]) -> KpiConfiguration:
        kpi_code = str(payload.get("kpi_code") or "").strip()
        if not kpi_code:
            raise KpiDefinitionError("kpi_code is required")
        if not payload.get("entity_type"):
            raise KpiDefinitionError("entity_type is required")
        parse_definition(payload.get("definition_json") or {})
        values = {key: payload[key] for key in _CONFIG_FIELDS if key in payload}
        values["aggregation_periods"] = _validate_periods(values.get("aggregation_periods"))
        async with self._db.session() as session:
            if await kpi_repo.get_config_by_code(session, kpi_code) is not None:
                raise KpiConfigExistsError(kpi_code)
            now = utc_now()
            config = KpiConfiguration(id=uuid4().hex, kpi_code=kpi_code, created_at=now, updated_at=now, **values)
            session.add(config)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise KpiConfigExistsError(kpi_code) from exc
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError(f"KPI configuration insert failed for {kpi_code}") from exc
        logger.info("kpi_configuration_created kpi_code=%s entity_type=%s", kpi_code, config.entity_type)
        return config

    async def update_configuration(self, kpi_code: str, changes: dict[str, Any]) -> KpiConfiguration:
        # kpi_code is the stable identifier; it is never rewritten by an update.
        updates = {key: value for key, value in changes.items() if key in _CONFIG_FIELDS}
        if "definition_json" in updates:
            parse_definition(updates["definition_json"])
        if "aggregation_periods" in updates:
            updates["aggregation_periods"] = _validate_periods(updates["aggregation_periods"])
        async with self._db.session() as session:
            config = await kpi_repo.get_config_by_code(session, kpi_code)
            if config is None:
                raise KpiConfigNotFoundError(kpi_code)
            for key, value in updates.items():
                setattr(config, key, value)
            config.updated_at = utc_now()
            try:
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError(f"KPI configuration update failed for {kpi_code}") from exc
        logger.info("kpi_configuration_updated kpi_code=%s fields=%s", kpi_code, ",".join(sorted(updates)))
        return config

    async def delete_configuration(self, kpi_code: str) -> int:
        """Delete a configuration and its stored values; returns the number of values removed."""
        async with self._db.session() as session:
            config = await kpi_repo.get_config_by_code(session, kpi_code)
            if config is None:
                raise KpiConfigNotFoundError(kpi_code)
            try:
                removed = await kpi_repo.delete_values_for_config(session, config.id)
                await session.delete(config)
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError(f"KPI configuration delete failed for {kpi_code}") from exc
        logger.info("kpi_configuration_deleted kpi_code=%s values_removed=%s", kpi_code, removed)
        return removed

    async def list_configurations(
        self,
        *,
        entity_type: str | None = None,
        is_active: bool | None = None,
        is_real_time: bool | None = None,
    ) -> list[KpiConfiguration]:
        async with self._db.session() as session:
            return await kpi_repo.list_configs(
                session, entity_type=entity_type, is_active=is_active, is_real_time=is_real_time
            )

    async def get_configuration(self, kpi_code: str, *, recent_limit: int = 10) -> dict[str, Any]:
        async with self._db.session() as session:
            config = await kpi_repo.get_config_by_code(session, kpi_code)
            if config is None:
                raise KpiConfigNotFoundError(kpi_code)
            recent = (
                await session.execute(
                    select(KpiValue)
                    .where(KpiValue.kpi_config_id == config.id)
                    .order_by(KpiValue.calculated_at.desc(), KpiValue.id.desc())
                    .limit(recent_limit)
                )
            ).scalars().all()
        return {"configuration": config, "recent_values": [value_to_dict(value) for value in recent]}

    async def seed_default_kpis(self) -> list[str]:
        """Create the predefined appointment KPIs that are missing; returns the created codes."""
        created: list[str] = []
        for payload in DEFAULT_KPIS:
            try:
                await self.create_configuration(payload)
            except KpiConfigExistsError:
                logger.debug("kpi_seed_skipped kpi_code=%s", payload["kpi_code"])
                continue
            created.append(payload["kpi_code"])
        return created

    # --- values ----------------------------------------------------------

    async def calculate_kpi_manually(
        self,
        kpi_code: str,
        company_id: str,
        period_date: datetime,
        period_type: str,
    ) -> dict[str, Any]:
        calculation: KpiCalculation = await self._engine.calculate_kpi(
            kpi_code, company_id, period_date, period_type
        )
        async with self._db.session() as session:
            stored = await kpi_repo.get_value(
                session,
                kpi_code=kpi_code,
                company_id=company_id,
                period_type=period_type,
                period_start=calculation.period_start,
            )
        if stored is None:
            raise DatabaseError(f"KPI value missing after calculation for {kpi_code}")
        return value_to_dict(stored)

    async def get_kpi_values(
        self,
        kpi_code: str,
        *,
        company_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        period_type: str | None = None,
    ) -> list[dict[str, Any]]:
        async with self._db.session() as session:
            values = await kpi_repo.list_values(
                session, kpi_code=kpi_code, company_id=company_id, start=start, end=end, period_type=period_type
            )
        return [value_to_dict(value) for value in values]

    async def get_kpi_statistics(self, kpi_code: str, *, company_id: str | None = None) -> dict[str, Any]:
        stmt = select(
            func.count(KpiValue.id),
            func.avg(KpiValue.numeric_value),
            func.min(KpiValue.numeric_value),
            func.max(KpiValue.numeric_value),
            func.coalesce(func.sum(KpiValue.record_count), 0),
        ).where(KpiValue.kpi_code == kpi_code)
        if company_id:
            stmt = stmt.where(KpiValue.company_id == company_id)
        async with self._db.session() as session:
            row = (await session.execute(stmt)).one()
        count = int(row[0] or 0)
        return {
            "kpi_code": kpi_code,
            "count": count,
            "avg": round(float(row[1]), 2) if row[1] is not None else None,
            "min": float(row[2]) if row[2] is not None else None,
            "max": float(row[3]) if row[3] is not None else None,
            "total_records": int(row[4] or 0),
        }

    # --- batch and analysis ---------------------------------------------

    async def recalculate_company_kpis(self, company_id: str, period_date: datetime) -> FanOutResult:
        async with self._db.session() as session:
            configs = await kpi_repo.list_configs(session, is_active=True)
        targets = [
            KpiTarget(kpi_code=config.kpi_code, company_id=company_id, period_date=period_date, period_type=period)
            for config in configs
            if kpi_repo.applies_to_company(config, company_id)
            for period in RECALC_PERIODS
            if period in (config.aggregation_periods or [])
        ]
        result = await self._engine.calculate_many(targets)
        logger.info(
            "company_kpis_recalculated company_id=%s attempted=%s succeeded=%s failed=%s",
            company_id,
            result.attempted,
            result.succeeded,
            result.failed,
        )
        return result

    async def get_kpi_trends(
        self,
        kpi_code: str,
        company_id: str,
        period_type: str = PERIOD_DAILY,
        periods: int = 12,
    ) -> KpiTrend:
        async with self._db.session() as session:
            latest = await kpi_repo.latest_values(
                session, kpi_code=kpi_code, company_id=company_id, period_type=period_type, limit=max(1, periods)
            )
        trend, change, recent_avg, older_avg = classify_trend([float(v.numeric_value or 0) for v in latest])
        values = [
            {"period_start": v.period_start.isoformat(), "value": float(v.numeric_value or 0)}
            for v in reversed(latest)
        ]
        return KpiTrend(
            kpi_code=kpi_code,
            company_id=company_id,
            period_type=period_type,
            trend=trend,
            values=values,
            change_percent=change,
            recent_average=recent_avg,
            older_average=older_avg,
        )

    async def cleanup_old_kpi_values(self, retention_days: int = 730) -> int:
        """Prune values of configurations whose own retention is shorter than ``retention_days``.

        Each swept configuration keeps values inside its own retention window.
        """
        now = utc_now()
        deleted = 0
        async with self._db.session() as session:
            configs = await kpi_repo.list_configs(session)
            try:
                for config in configs:
                    own_retention = int(config.retention_days or retention_days)
                    if own_retention >= retention_days:
                        continue
                    cutoff = now - timedelta(days=own_retention)
                    removed = await kpi_repo.delete_values_before(session, config_id=config.id, cutoff=cutoff)
                    if removed:
                        logger.info(
                            "kpi_values_pruned kpi_code=%s retention_days=%s removed=%s",
                            config.kpi_code,
                            own_retention,
                            removed,
                        )
                    deleted += removed
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError("KPI value retention sweep failed") from exc
        return deleted
