from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from auditkpi.core.errors import AuditWriteError
from auditkpi.domain.models import AuditRecord, KpiValue, SystemEvent
from auditkpi.services.kpi import engine as engine_module
from auditkpi.services.kpi.engine import AggregationEngine
from auditkpi.services.kpi.schemas import AuditContext
from auditkpi.tests.utils.seed import COMPLETION_RATE_DEFINITION, add_config


@pytest.mark.asyncio
async def test_create_then_complete_feeds_daily_completion_kpi(db, engine: AggregationEngine) -> None:
    await add_config(db, "appointment_completion_rate", definition=COMPLETION_RATE_DEFINITION, is_real_time=True)
    context = AuditContext(company_id="c-e2e", user_id="u-1", application_source="web")

    created_id = await engine.process_entity_change(
        "appointments", "apt-1", "CREATE", None, {"status": "PENDING", "employeeId": "e-1"}, context
    )
    completed_id = await engine.process_entity_change(
        "appointments",
        "apt-1",
        "UPDATE",
        {"status": "PENDING", "employeeId": "e-1"},
        {"status": "COMPLETED", "employeeId": "e-1"},
        context,
    )

    async with db.session() as session:
        records = (
            await session.execute(select(AuditRecord).where(AuditRecord.id.in_([created_id, completed_id])))
        ).scalars().all()
    kinds = {record.id: record.change_kind for record in records}
    assert kinds == {created_id: "CREATED", completed_id: "STATUS_CHANGE"}
    completed = next(record for record in records if record.id == completed_id)
    assert completed.changed_fields == ["status"]
    assert completed.impact_score == 50

    # Recalculate explicitly for the event's own day so the assertion cannot straddle midnight.
    calculation = await engine.calculate_kpi("appointment_completion_rate", "c-e2e", completed.event_at, "DAILY")
    assert calculation.counts["total_created"] == 1
    assert calculation.counts["total_completed"] == 1
    assert calculation.value == 100.0

    async with db.session() as session:
        values = (
            await session.execute(
                select(KpiValue).where(
                    KpiValue.kpi_code == "appointment_completion_rate",
                    KpiValue.period_start == calculation.period_start,
                )
            )
        ).scalars().all()
    assert len(values) == 1
    assert values[0].numeric_value == 100.0
    assert values[0].metadata_json["counts"]["total_completed"] == 1


@pytest.mark.asyncio
async def test_entity_changed_event_carries_structured_changes(db, engine: AggregationEngine) -> None:
    context = {"company_id": "c-evt", "user_id": "u-9"}
    record_id = await engine.process_entity_change(
        "appointments", "apt-9", "UPDATE", {"status": "PENDING"}, {"status": "CONFIRMED"}, context
    )
    async with db.session() as session:
        event = (
            await session.execute(select(SystemEvent).where(SystemEvent.entity_id == "apt-9"))
        ).scalar_one()
    assert event.event_type == "ENTITY_CHANGED"
    assert event.company_id == "c-evt"
    assert event.payload_json["change_kind"] == "STATUS_CHANGE"
    assert event.payload_json["changes"] == {"status": {"from": "PENDING", "to": "CONFIRMED"}}
    assert event.payload_json["audit_record_id"] == record_id


@pytest.mark.asyncio
async def test_event_failure_does_not_undo_audit_append(db, engine: AggregationEngine, monkeypatch) -> None:
    async def _broken_emit(*args, **kwargs):  # noqa: ANN002, ANN003
        raise RuntimeError("event bus down")

    monkeypatch.setattr(engine_module, "emit_system_event", _broken_emit)
    record_id = await engine.process_entity_change(
        "appointments", "apt-2", "CREATE", None, {"status": "PENDING"}, {"company_id": "c-1"}
    )
    async with db.session() as session:
        stored = await session.get(AuditRecord, record_id)
    assert stored is not None
    assert stored.entity_id == "apt-2"


@pytest.mark.asyncio
async def test_realtime_kpi_failure_is_best_effort(db, engine: AggregationEngine, monkeypatch) -> None:
    await add_config(db, "appointment_completion_rate", definition=COMPLETION_RATE_DEFINITION, is_real_time=True)

    async def _failing_calculate(*args, **kwargs):  # noqa: ANN002, ANN003
        raise RuntimeError("statement timeout")

    monkeypatch.setattr(engine, "calculate_kpi", _failing_calculate)
    record_id = await engine.process_entity_change(
        "appointments", "apt-3", "CREATE", None, {"status": "PENDING"}, {"company_id": "c-1"}
    )
    assert record_id > 0


@pytest.mark.asyncio
async def test_non_realtime_entities_skip_kpi_recompute(db, engine: AggregationEngine) -> None:
    await add_config(db, "chat_volume", entity_type="chat_messages", is_real_time=True)
    await engine.process_entity_change("chat_messages", "m-1", "CREATE", None, {"text": "hi"}, {"company_id": "c-1"})
    async with db.session() as session:
        values = (await session.execute(select(KpiValue))).scalars().all()
    assert values == []


@pytest.mark.asyncio
async def test_invalid_input_raises_audit_write_error(engine: AggregationEngine) -> None:
    with pytest.raises(AuditWriteError):
        await engine.process_entity_change("appointments", "apt-4", "UPSERT", None, {}, {"company_id": "c-1"})
    with pytest.raises(AuditWriteError):
        await engine.process_entity_change("appointments", "apt-4", "CREATE", None, {}, {"company_id": " "})


@pytest.mark.asyncio
async def test_audit_commit_failure_raises_audit_write_error(db, engine: AggregationEngine, monkeypatch) -> None:
    async def _failing_commit(self):  # noqa: ANN001
        raise OperationalError("INSERT INTO audit_records", {}, Exception("database is locked"))

    monkeypatch.setattr(AsyncSession, "commit", _failing_commit)
    with pytest.raises(AuditWriteError):
        await engine.process_entity_change(
            "appointments", "apt-5", "CREATE", None, {"status": "PENDING"}, {"company_id": "c-1"}
        )
    monkeypatch.undo()

    async with db.session() as session:
        assert (await session.execute(select(AuditRecord))).scalars().all() == []
        assert (await session.execute(select(SystemEvent))).scalars().all() == []
