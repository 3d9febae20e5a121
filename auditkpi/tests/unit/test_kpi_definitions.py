from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.dialects import sqlite

from auditkpi.core.errors import KpiDefinitionError
from auditkpi.services.kpi.manager import DEFAULT_KPIS, classify_trend
from auditkpi.services.kpi.statements import compile_kpi_statement, parse_definition


def test_trend_decreasing_by_thirty_percent() -> None:
    # Newest first: six recent values at 70, six older at 100.
    values = [70.0] * 6 + [100.0] * 6
    trend, change, recent_avg, older_avg = classify_trend(values)
    assert trend == "decreasing"
    assert change == pytest.approx(-30.0)
    assert recent_avg == 70.0
    assert older_avg == 100.0


def test_trend_needs_two_points() -> None:
    assert classify_trend([42.0])[0] == "insufficient_data"
    assert classify_trend([])[0] == "insufficient_data"


def test_trend_thresholds_and_zero_baseline() -> None:
    assert classify_trend([106.0, 100.0])[0] == "increasing"
    assert classify_trend([104.0, 100.0])[0] == "stable"
    # Odd counts put the extra point in the recent half.
    assert classify_trend([10.0, 10.0, 5.0])[:2] == ("increasing", 100.0)
    assert classify_trend([5.0, 0.0, 0.0])[:2] == ("stable", 0.0)


def test_parse_definition_rejects_bad_shapes() -> None:
    with pytest.raises(KpiDefinitionError):
        parse_definition({"kind": "median", "field": "x"})
    with pytest.raises(KpiDefinitionError):
        parse_definition({"kind": "ratio", "numerator": {"change_kind": "CREATED"}})
    with pytest.raises(KpiDefinitionError):
        parse_definition({"kind": "average"})
    with pytest.raises(KpiDefinitionError):
        parse_definition({"kind": "count", "filter": {"sql": "1=1"}})


def test_default_kpis_have_valid_definitions() -> None:
    for payload in DEFAULT_KPIS:
        parse_definition(payload["definition_json"])


def test_kpi_statement_binds_window_and_company() -> None:
    definition = parse_definition(
        {
            "kind": "ratio",
            "numerator": {"change_kind": "STATUS_CHANGE", "status": "COMPLETED"},
            "denominator": {"change_kind": "CREATED"},
            "scale": 100,
        }
    )
    start = datetime(2026, 4, 1, tzinfo=timezone.utc)
    end = datetime(2026, 4, 2, tzinfo=timezone.utc)
    compiled = compile_kpi_statement(
        definition, entity_type="appointments", start=start, end=end, company_id="c-1"
    ).compile(dialect=sqlite.dialect())
    values = list(compiled.params.values())
    assert "c-1" in values
    assert start in values
    assert end in values
    assert "c-1" not in str(compiled)
