from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from auditkpi.core.errors import KpiConfigExistsError, KpiConfigNotFoundError, KpiDefinitionError
from auditkpi.domain.models import KpiConfiguration, KpiValue
from auditkpi.persistence.repos import kpi as kpi_repo
from auditkpi.services.kpi.engine import AggregationEngine
from auditkpi.services.kpi.manager import DEFAULT_KPIS, KpiManager
from auditkpi.services.kpi.periods import utc_now
from auditkpi.tests.utils.seed import add_audit_record, add_config


DAY = datetime(2026, 9, 8, 10, 0, tzinfo=timezone.utc)


async def _store_value(db, config: KpiConfiguration, *, company_id: str, period_start: datetime, value: float) -> None:
    async with db.session() as session:
        await kpi_repo.upsert_kpi_value(
            session,
            config=config,
            company_id=company_id,
            period_type="MONTHLY",
            period_start=period_start,
            numeric_value=value,
            record_count=1,
            metadata=None,
            calculation_time_ms=1,
            calculated_at=utc_now(),
        )
        await session.commit()


@pytest.mark.asyncio
async def test_configuration_crud(manager: KpiManager) -> None:
    created = await manager.create_configuration(
        {
            "kpi_code": "created_count",
            "entity_type": "appointments",
            "definition_json": {"kind": "count", "filter": {"change_kind": "CREATED"}},
            "aggregation_periods": ["DAILY"],
        }
    )
    assert created.kpi_code == "created_count"
    with pytest.raises(KpiConfigExistsError):
        await manager.create_configuration(
            {"kpi_code": "created_count", "entity_type": "appointments", "definition_json": {"kind": "count"}}
        )

    updated = await manager.update_configuration(
        "created_count", {"kpi_code": "renamed", "is_real_time": True, "aggregation_periods": ["DAILY", "WEEKLY"]}
    )
    assert updated.kpi_code == "created_count"
    assert updated.is_real_time is True
    assert [config.kpi_code for config in await manager.list_configurations(is_real_time=True)] == ["created_count"]

    details = await manager.get_configuration("created_count")
    assert details["configuration"].aggregation_periods == ["DAILY", "WEEKLY"]
    assert details["recent_values"] == []

    await manager.delete_configuration("created_count")
    assert await manager.list_configurations() == []
    with pytest.raises(KpiConfigNotFoundError):
        await manager.update_configuration("created_count", {"is_active": False})


@pytest.mark.asyncio
async def test_invalid_definitions_are_rejected_at_save_time(manager: KpiManager) -> None:
    with pytest.raises(KpiDefinitionError):
        await manager.create_configuration(
            {"kpi_code": "bad", "entity_type": "appointments", "definition_json": {"kind": "ratio"}}
        )
    with pytest.raises(KpiDefinitionError):
        await manager.create_configuration(
            {
                "kpi_code": "bad_period",
                "entity_type": "appointments",
                "definition_json": {"kind": "count"},
                "aggregation_periods": ["FORTNIGHTLY"],
            }
        )


@pytest.mark.asyncio
async def test_seed_default_kpis_is_idempotent(manager: KpiManager) -> None:
    first = await manager.seed_default_kpis()
    second = await manager.seed_default_kpis()
    assert sorted(first) == sorted(payload["kpi_code"] for payload in DEFAULT_KPIS)
    assert second == []


@pytest.mark.asyncio
async def test_manual_calculation_values_and_statistics(db, manager: KpiManager) -> None:
    await add_config(db, "created_count")
    await add_audit_record(db, company_id="c-1", event_at=DAY)
    await add_audit_record(db, company_id="c-1", event_at=DAY + timedelta(days=1))

    stored = await manager.calculate_kpi_manually("created_count", "c-1", DAY, "DAILY")
    assert stored["numeric_value"] == 1.0
    await manager.calculate_kpi_manually("created_count", "c-1", DAY + timedelta(days=1), "DAILY")
    await manager.calculate_kpi_manually("created_count", "c-1", DAY, "MONTHLY")

    daily = await manager.get_kpi_values("created_count", company_id="c-1", period_type="DAILY")
    assert [value["period_start"][:10] for value in daily] == ["2026-09-08", "2026-09-09"]

    stats = await manager.get_kpi_statistics("created_count", company_id="c-1")
    assert stats["count"] == 3
    assert stats["min"] == 1.0
    assert stats["max"] == 2.0
    assert stats["total_records"] == 4


@pytest.mark.asyncio
async def test_company_recalculation_isolates_failures(
    db, manager: KpiManager, engine: AggregationEngine, monkeypatch
) -> None:
    await add_config(db, "created_count", periods=["DAILY", "WEEKLY", "MONTHLY", "YEARLY"])
    await add_config(db, "only_company_b", companies_enabled=["c-b"], periods=["DAILY"])
    await add_config(db, "inactive", is_active=False)
    await add_audit_record(db, company_id="c-a", event_at=DAY)

    original = engine.calculate_kpi

    async def _flaky(kpi_code, company_id, period_date, period_type, **kwargs):  # noqa: ANN001, ANN003
        if period_type == "WEEKLY":
            raise RuntimeError("simulated statement failure")
        return await original(kpi_code, company_id, period_date, period_type, **kwargs)

    monkeypatch.setattr(engine, "calculate_kpi", _flaky)
    result = await manager.recalculate_company_kpis("c-a", DAY)

    # YEARLY is not recomputed, the other company's KPI and the inactive KPI are skipped.
    assert result.attempted == 3
    assert result.succeeded == 2
    assert [(failure.kpi_code, failure.period_type) for failure in result.failures] == [("created_count", "WEEKLY")]
    async with db.session() as session:
        periods = sorted((await session.execute(select(KpiValue.period_type))).scalars().all())
    assert periods == ["DAILY", "MONTHLY"]


@pytest.mark.asyncio
async def test_trend_analysis_over_stored_values(db, manager: KpiManager) -> None:
    config = await add_config(db, "conversion", periods=["MONTHLY"])
    start = datetime(2025, 1, 1, tzinfo=timezone.utc)
    for index in range(12):
        period_start = start.replace(month=index + 1)
        await _store_value(db, config, company_id="c-1", period_start=period_start, value=100.0 if index < 6 else 70.0)

    trend = await manager.get_kpi_trends("conversion", "c-1", "MONTHLY", 12)
    assert trend.trend == "decreasing"
    assert trend.change_percent == pytest.approx(-30.0)
    assert [point["value"] for point in trend.values][:2] == [100.0, 100.0]
    assert trend.values[-1]["value"] == 70.0

    single = await manager.get_kpi_trends("conversion", "c-2", "MONTHLY", 12)
    assert single.trend == "insufficient_data"


@pytest.mark.asyncio
async def test_retention_sweep_respects_each_configuration(db, manager: KpiManager) -> None:
    short = await add_config(db, "short_lived", retention_days=30)
    long = await add_config(db, "long_lived", retention_days=730)
    now = utc_now()
    old = now - timedelta(days=45)
    recent = now - timedelta(days=10)
    for config in (short, long):
        await _store_value(db, config, company_id="c-1", period_start=old, value=1.0)
        await _store_value(db, config, company_id="c-1", period_start=recent, value=2.0)

    deleted = await manager.cleanup_old_kpi_values(730)
    assert deleted == 1

    async with db.session() as session:
        remaining = (
            await session.execute(select(KpiValue.kpi_code, KpiValue.numeric_value).order_by(KpiValue.kpi_code))
        ).all()
    assert sorted((row[0], row[1]) for row in remaining) == [
        ("long_lived", 1.0),
        ("long_lived", 2.0),
        ("short_lived", 2.0),
    ]
