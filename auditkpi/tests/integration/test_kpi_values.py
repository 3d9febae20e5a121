from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from auditkpi.core.errors import KpiConfigNotFoundError, QueryValidationError
from auditkpi.domain.models import KpiValue
from auditkpi.services.kpi.engine import AggregationEngine
from auditkpi.services.kpi.schemas import KpiTarget
from auditkpi.tests.utils.seed import (
    COMPLETION_RATE_DEFINITION,
    add_audit_record,
    add_config,
    add_status_change,
)


DAY = datetime(2026, 9, 8, 10, 0, tzinfo=timezone.utc)


async def _value_rows(db, kpi_code: str) -> list[KpiValue]:
    async with db.session() as session:
        return list(
            (await session.execute(select(KpiValue).where(KpiValue.kpi_code == kpi_code))).scalars().all()
        )


@pytest.mark.asyncio
async def test_recalculation_upserts_one_row_per_key(db, engine: AggregationEngine) -> None:
    await add_config(db, "created_count")
    await add_audit_record(db, company_id="c-1", event_at=DAY)

    first = await engine.calculate_kpi("created_count", "c-1", DAY, "DAILY")
    assert first.value == 1.0

    await add_audit_record(db, company_id="c-1", event_at=DAY.replace(hour=15))
    # Any moment inside the same bucket addresses the same row.
    second = await engine.calculate_kpi("created_count", "c-1", DAY.replace(hour=23, minute=59), "DAILY")
    assert second.value == 2.0
    assert second.period_start == first.period_start == datetime(2026, 9, 8, tzinfo=timezone.utc)

    rows = await _value_rows(db, "created_count")
    assert len(rows) == 1
    assert rows[0].numeric_value == 2.0
    assert rows[0].record_count == 2
    assert rows[0].metadata_json["params"]["company_id"] == "c-1"
    assert "calculation_ms" in rows[0].metadata_json


@pytest.mark.asyncio
async def test_window_is_half_open_and_company_scoped(db, engine: AggregationEngine) -> None:
    await add_config(db, "created_count")
    await add_audit_record(db, company_id="c-1", event_at=datetime(2026, 9, 8, 0, 0, tzinfo=timezone.utc))
    await add_audit_record(db, company_id="c-1", event_at=datetime(2026, 9, 9, 0, 0, tzinfo=timezone.utc))
    await add_audit_record(db, company_id="c-2", event_at=DAY)

    result = await engine.calculate_kpi("created_count", "c-1", DAY, "DAILY")
    assert result.value == 1.0


@pytest.mark.asyncio
async def test_ratio_with_zero_denominator_is_zero(db, engine: AggregationEngine) -> None:
    await add_config(db, "completion", definition=COMPLETION_RATE_DEFINITION)
    await add_status_change(db, company_id="c-1", event_at=DAY, status="COMPLETED")

    result = await engine.calculate_kpi("completion", "c-1", DAY, "DAILY")
    assert result.value == 0.0
    assert result.counts["total_completed"] == 1


@pytest.mark.asyncio
async def test_average_definition_reads_after_state_field(db, engine: AggregationEngine) -> None:
    await add_config(
        db,
        "avg_duration",
        definition={
            "kind": "average",
            "field": "durationMinutes",
            "filter": {"change_kind": "CREATED", "has_field": "durationMinutes"},
        },
    )
    await add_audit_record(db, company_id="c-1", event_at=DAY, after={"durationMinutes": 30})
    await add_audit_record(db, company_id="c-1", event_at=DAY, after={"durationMinutes": 45})
    await add_audit_record(db, company_id="c-1", event_at=DAY)

    result = await engine.calculate_kpi("avg_duration", "c-1", DAY, "DAILY")
    assert result.value == 37.5


@pytest.mark.asyncio
async def test_dimensioned_values_get_their_own_rows(db, engine: AggregationEngine) -> None:
    await add_config(db, "created_count")
    await add_audit_record(db, company_id="c-1", event_at=DAY)

    await engine.calculate_kpi("created_count", "c-1", DAY, "DAILY")
    await engine.calculate_kpi("created_count", "c-1", DAY, "DAILY", dimension_values={"b": 2, "a": 1})
    await engine.calculate_kpi("created_count", "c-1", DAY, "DAILY", dimension_values={"a": 1, "b": 2})

    rows = await _value_rows(db, "created_count")
    assert sorted(row.dimension_key for row in rows) == ['{"a":1,"b":2}', "{}"]


@pytest.mark.asyncio
async def test_missing_configuration_and_bad_period(db, engine: AggregationEngine) -> None:
    with pytest.raises(KpiConfigNotFoundError):
        await engine.calculate_kpi("nope", "c-1", DAY, "DAILY")
    await add_config(db, "created_count")
    with pytest.raises(QueryValidationError):
        await engine.calculate_kpi("created_count", "c-1", DAY, "BIWEEKLY")


@pytest.mark.asyncio
async def test_fan_out_settles_every_target(db, engine: AggregationEngine) -> None:
    await add_config(db, "created_count")
    await add_audit_record(db, company_id="c-1", event_at=DAY)
    targets = [
        KpiTarget("created_count", "c-1", DAY, "DAILY"),
        KpiTarget("created_count", "c-1", DAY, "WEEKLY"),
        KpiTarget("missing_kpi", "c-1", DAY, "DAILY"),
        KpiTarget("created_count", "c-2", DAY, "MONTHLY"),
    ]
    result = await engine.calculate_many(targets)
    assert result.attempted == 4
    assert result.succeeded == 3
    assert [failure.kpi_code for failure in result.failures] == ["missing_kpi"]
    assert result.failures[0].error == "KpiConfigNotFoundError"

    async with db.session() as session:
        count = (await session.execute(select(func.count(KpiValue.id)))).scalar_one()
    assert count == 3
