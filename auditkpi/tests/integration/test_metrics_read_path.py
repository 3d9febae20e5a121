from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from auditkpi.core.errors import QueryValidationError
from auditkpi.domain.models import KpiConfiguration, QueryCacheEntry
from auditkpi.services.kpi.engine import AggregationEngine
from auditkpi.tests.utils.seed import (
    COMPLETION_RATE_DEFINITION,
    add_audit_record,
    add_config,
    add_status_change,
)


START = datetime(2026, 6, 1, tzinfo=timezone.utc)
LONG_RANGE = {"start_date": "2026-06-01T00:00:00+00:00", "end_date": "2026-07-31T00:00:00+00:00", "group_by": "month"}


def _query(**overrides) -> dict:  # noqa: ANN003
    payload = {
        "company_id": "c-1",
        "start_date": START.isoformat(),
        "end_date": (START + timedelta(days=6)).isoformat(),
        "group_by": "day",
    }
    payload.update(overrides)
    return payload


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def _cache_entries(db) -> list[QueryCacheEntry]:
    async with db.session() as session:
        return list((await session.execute(select(QueryCacheEntry))).scalars().all())


@pytest.mark.asyncio
async def test_short_range_aggregates_the_audit_trail(db, engine: AggregationEngine) -> None:
    day_one = START + timedelta(hours=9)
    day_two = START + timedelta(days=1, hours=9)
    await add_audit_record(db, company_id="c-1", event_at=day_one)
    await add_audit_record(db, company_id="c-1", event_at=day_one)
    await add_status_change(db, company_id="c-1", event_at=day_one, status="CONFIRMED")
    await add_status_change(db, company_id="c-1", event_at=day_two, status="NO_SHOW")
    await add_audit_record(db, company_id="c-2", event_at=day_one)

    results = await engine.calculate_complex_metrics(_query())

    assert [result.period for result in results] == ["2026-06-01", "2026-06-02"]
    first = results[0]
    assert first.total_created == 2
    assert first.total_confirmed == 1
    assert first.confirmation_rate == 50.0
    assert first.metadata["source"] == "audit"
    assert first.metadata["partitions_queried"] == 1
    assert results[1].total_no_show == 1
    assert results[1].no_show_rate == 0.0


@pytest.mark.asyncio
async def test_custom_filters_and_conditions_narrow_the_scan(db, engine: AggregationEngine) -> None:
    moment = START + timedelta(hours=9)
    await add_audit_record(db, company_id="c-1", event_at=moment, after={"employeeId": "e-1"}, application_source="web")
    await add_audit_record(db, company_id="c-1", event_at=moment, after={"employeeId": "e-2"}, application_source="web")
    await add_audit_record(db, company_id="c-1", event_at=moment, after={"employeeId": "e-1"}, application_source="bot")

    by_employee = await engine.calculate_complex_metrics(_query(employee_id="e-1"))
    assert by_employee[0].total_created == 2

    by_condition = await engine.calculate_complex_metrics(
        _query(
            custom_filters={"employeeId": "e-1"},
            conditions=[{"field": "application_source", "operator": "=", "value": "web"}],
        )
    )
    assert by_condition[0].total_created == 1


@pytest.mark.asyncio
async def test_identical_queries_hit_the_cache(db, engine: AggregationEngine) -> None:
    await add_audit_record(db, company_id="c-1", event_at=START + timedelta(hours=3))

    first = await engine.calculate_complex_metrics(_query())
    # New rows are invisible until the cached entry expires.
    await add_audit_record(db, company_id="c-1", event_at=START + timedelta(hours=4))
    reordered = {key: value for key, value in reversed(list(_query().items()))}
    second = await engine.calculate_complex_metrics(reordered)
    third = await engine.calculate_complex_metrics(_query())

    assert first == second == third
    entries = await _cache_entries(db)
    assert len(entries) == 1
    assert entries[0].hit_count == 2
    assert entries[0].last_accessed_at is not None
    assert entries[0].result_size > 0


@pytest.mark.asyncio
async def test_expired_cache_entries_are_recomputed(db, engine: AggregationEngine) -> None:
    await add_audit_record(db, company_id="c-1", event_at=START + timedelta(hours=3))
    await engine.calculate_complex_metrics(_query())
    async with db.session() as session:
        entry = (await session.execute(select(QueryCacheEntry))).scalar_one()
        entry.expires_at = datetime(2000, 1, 1, tzinfo=timezone.utc)
        await session.commit()

    await add_audit_record(db, company_id="c-1", event_at=START + timedelta(hours=4))
    results = await engine.calculate_complex_metrics(_query())
    assert results[0].total_created == 2
    entries = await _cache_entries(db)
    assert len(entries) == 1
    assert entries[0].hit_count == 0


@pytest.mark.asyncio
async def test_long_unfiltered_ranges_use_precalculated_values(db, engine: AggregationEngine) -> None:
    await add_config(db, "appointment_completion_rate", definition=COMPLETION_RATE_DEFINITION)
    june = datetime(2026, 6, 10, 9, tzinfo=timezone.utc)
    july = datetime(2026, 7, 10, 9, tzinfo=timezone.utc)
    for moment in (june, june, july):
        await add_audit_record(db, company_id="c-1", event_at=moment)
    await add_status_change(db, company_id="c-1", event_at=june, status="COMPLETED")
    await engine.calculate_kpi("appointment_completion_rate", "c-1", june, "MONTHLY")
    await engine.calculate_kpi("appointment_completion_rate", "c-1", july, "MONTHLY")

    results = await engine.calculate_complex_metrics(
        _query(start_date="2026-06-01T00:00:00+00:00", end_date="2026-07-31T00:00:00+00:00", group_by="month")
    )
    assert [result.period for result in results] == ["2026-06", "2026-07"]
    assert results[0].metadata["source"] == "pre-calculated"
    assert results[0].metadata["kpis"] == {"appointment_completion_rate": 50.0}
    assert results[0].total_created == 2
    assert results[0].total_completed == 1
    assert results[1].total_created == 1


@pytest.mark.asyncio
async def test_long_filtered_ranges_fall_back_to_the_audit_trail(db, engine: AggregationEngine) -> None:
    await add_audit_record(db, company_id="c-1", event_at=datetime(2026, 6, 10, tzinfo=timezone.utc))
    await add_audit_record(db, company_id="c-1", event_at=datetime(2026, 7, 10, tzinfo=timezone.utc))
    results = await engine.calculate_complex_metrics(
        _query(
            start_date="2026-06-01T00:00:00+00:00",
            end_date="2026-07-31T00:00:00+00:00",
            group_by="month",
            custom_filters={"status": "PENDING"},
        )
    )
    assert [result.metadata["source"] for result in results] == ["audit", "audit"]
    assert results[0].metadata["partitions_queried"] == 2


@pytest.mark.asyncio
async def test_invalid_queries_raise_validation_errors(engine: AggregationEngine) -> None:
    with pytest.raises(QueryValidationError):
        await engine.calculate_complex_metrics(_query(group_by="minute"))
    with pytest.raises(QueryValidationError):
        await engine.calculate_complex_metrics(
            _query(conditions=[{"field": "before.a.b", "operator": "=", "value": 1}])
        )


@pytest.mark.asyncio
async def test_long_ranges_with_named_filters_fall_back_to_the_audit_trail(db, engine: AggregationEngine) -> None:
    await add_config(db, "appointment_completion_rate", definition=COMPLETION_RATE_DEFINITION)
    june = datetime(2026, 6, 10, 9, tzinfo=timezone.utc)
    for employee in ("e-1", "e-2", "e-2"):
        await add_audit_record(db, company_id="c-1", event_at=june, after={"employeeId": employee})
    await engine.calculate_kpi("appointment_completion_rate", "c-1", june, "MONTHLY")

    results = await engine.calculate_complex_metrics(
        _query(
            start_date="2026-06-01T00:00:00+00:00",
            end_date="2026-07-31T00:00:00+00:00",
            group_by="month",
            employee_id="e-1",
        )
    )
    assert [(result.period, result.total_created, result.metadata["source"]) for result in results] == [
        ("2026-06", 1, "audit")
    ]


@pytest.mark.asyncio
async def test_requested_metrics_are_projected_and_cached_that_way(db, engine: AggregationEngine) -> None:
    await add_audit_record(db, company_id="c-1", event_at=START + timedelta(hours=3))

    first = await engine.calculate_complex_metrics(_query(metrics=["total_created", "confirmation_rate"]))
    second = await engine.calculate_complex_metrics(_query(metrics=["total_created", "confirmation_rate"]))

    assert first == second
    assert first[0].total_created == 1
    assert first[0].confirmation_rate == 0.0
    assert first[0].total_completed is None
    assert first[0].no_show_rate is None
    assert (await _cache_entries(db))[0].hit_count == 1


async def _seed_rollups(db, engine: AggregationEngine, *, cache_enabled: bool, cache_ttl_minutes: int) -> None:  # noqa: ANN001
    config = await add_config(db, "appointment_completion_rate", definition=COMPLETION_RATE_DEFINITION)
    async with db.session() as session:
        stored = await session.get(KpiConfiguration, config.id)
        stored.cache_enabled = cache_enabled
        stored.cache_ttl_minutes = cache_ttl_minutes
        await session.commit()
    june = datetime(2026, 6, 10, 9, tzinfo=timezone.utc)
    await add_audit_record(db, company_id="c-1", event_at=june)
    await engine.calculate_kpi("appointment_completion_rate", "c-1", june, "MONTHLY")


@pytest.mark.asyncio
async def test_rollup_results_use_the_kpi_cache_ttl(db, engine: AggregationEngine) -> None:
    await _seed_rollups(db, engine, cache_enabled=True, cache_ttl_minutes=5)

    results = await engine.calculate_complex_metrics(_query(**LONG_RANGE))

    assert results[0].metadata["source"] == "pre-calculated"
    entry = (await _cache_entries(db))[0]
    lifetime = _as_utc(entry.expires_at) - _as_utc(entry.calculated_at)
    assert timedelta(minutes=4) < lifetime <= timedelta(minutes=5)


@pytest.mark.asyncio
async def test_rollup_results_of_uncached_kpis_are_not_cached(db, engine: AggregationEngine) -> None:
    await _seed_rollups(db, engine, cache_enabled=False, cache_ttl_minutes=60)

    results = await engine.calculate_complex_metrics(_query(**LONG_RANGE))

    assert results[0].metadata["source"] == "pre-calculated"
    assert await _cache_entries(db) == []
