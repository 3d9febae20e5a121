from __future__ import annotations

from collections import OrderedDict
from datetime import date, datetime
from typing import Any, Iterable, Sequence

from sqlalchemy import Select, select
from sqlalchemy.sql.elements import ColumnElement

from auditkpi.domain.models import AuditRecord, KpiValue
from auditkpi.services.kpi.conditions import QueryCondition, compile_conditions
from auditkpi.services.kpi.periods import ensure_utc
from auditkpi.services.kpi.schemas import MetricsQuery, MetricsResult
from auditkpi.services.kpi.statements import OUTCOME_COUNTERS, outcome_count_columns


# Calendar columns that stand in for date_trunc(<granularity>, event_at).
_GROUP_COLUMNS: dict[str, tuple[Any, ...]] = {
    "hour": (AuditRecord.event_date, AuditRecord.event_hour),
    "day": (AuditRecord.event_date,),
    "week": (AuditRecord.event_iso_year, AuditRecord.event_iso_week),
    "month": (AuditRecord.event_year, AuditRecord.event_month),
    "quarter": (AuditRecord.event_year, AuditRecord.event_quarter),
    "year": (AuditRecord.event_year,),
}


def calculate_rate(numerator: float, denominator: float) -> float:
    """Percentage rounded to 2 decimals; a zero denominator yields 0."""
    if not denominator:
        return 0.0
    return round(float(numerator) / float(denominator) * 100, 2)


def with_rates(counts: dict[str, int]) -> dict[str, Any]:
    created = counts.get("total_created", 0)
    confirmed = counts.get("total_confirmed", 0)
    return {
        **counts,
        "confirmation_rate": calculate_rate(confirmed, created),
        "completion_rate": calculate_rate(counts.get("total_completed", 0), confirmed),
        "no_show_rate": calculate_rate(counts.get("total_no_show", 0), confirmed),
        "reschedule_rate": calculate_rate(counts.get("total_rescheduled", 0), created),
    }


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def period_label(group_by: str, parts: Sequence[Any]) -> str:
    if group_by == "hour":
        return f"{_as_date(parts[0]).isoformat()}T{int(parts[1]):02d}:00"
    if group_by == "day":
        return _as_date(parts[0]).isoformat()
    if group_by == "week":
        return f"{int(parts[0]):04d}-W{int(parts[1]):02d}"
    if group_by == "month":
        return f"{int(parts[0]):04d}-{int(parts[1]):02d}"
    if group_by == "quarter":
        return f"{int(parts[0]):04d}-Q{int(parts[1])}"
    return f"{int(parts[0]):04d}"


def label_for_moment(group_by: str, moment: datetime) -> str:
    current = ensure_utc(moment)
    if group_by == "hour":
        return period_label(group_by, (current.date(), current.hour))
    if group_by == "day":
        return period_label(group_by, (current.date(),))
    if group_by == "week":
        iso_year, iso_week, _ = current.isocalendar()
        return period_label(group_by, (iso_year, iso_week))
    if group_by == "month":
        return period_label(group_by, (current.year, current.month))
    if group_by == "quarter":
        return period_label(group_by, (current.year, (current.month - 1) // 3 + 1))
    return period_label(group_by, (current.year,))


def _query_filters(query: MetricsQuery, *, entity_type: str) -> list[ColumnElement]:
    filters: list[ColumnElement] = [
        AuditRecord.company_id == query.company_id,
        AuditRecord.entity_type == entity_type,
    ]
    if query.employee_id:
        filters.append(AuditRecord.after_state["employeeId"].as_string() == query.employee_id)
    if query.event_type_id:
        filters.append(AuditRecord.after_state["eventTypeId"].as_string() == query.event_type_id)
    if query.created_by_app:
        filters.append(AuditRecord.application_source == query.created_by_app)
    filters.extend(compile_conditions(query.conditions))
    # Custom filters are equality matches against after-state keys.
    custom = [
        QueryCondition(field=f"after.{key}", operator="=", value=value)
        for key, value in sorted((query.custom_filters or {}).items())
    ]
    filters.extend(compile_conditions(custom))
    return filters


def build_metrics_statement(query: MetricsQuery, *, entity_type: str, partitions: list[str]) -> Select:
    """Grouped outcome counts over the audit trail, pruned to ``partitions``."""
    group_columns = _GROUP_COLUMNS[query.group_by]
    stmt = (
        select(*group_columns, *outcome_count_columns())
        .where(
            AuditRecord.partition_key.in_(partitions),
            AuditRecord.event_date >= query.start_date.date(),
            AuditRecord.event_date <= query.end_date.date(),
            *_query_filters(query, entity_type=entity_type),
        )
        .group_by(*group_columns)
        .order_by(*group_columns)
    )
    return stmt


def shape_audit_rows(
    rows: Iterable[Any],
    *,
    group_by: str,
    partitions: list[str],
    elapsed_ms: int,
) -> list[MetricsResult]:
    width = len(_GROUP_COLUMNS[group_by])
    results: list[MetricsResult] = []
    for row in rows:
        values = tuple(row)
        counts = {name: int(values[width + index] or 0) for index, name in enumerate(OUTCOME_COUNTERS)}
        results.append(
            MetricsResult(
                period=period_label(group_by, values[:width]),
                **with_rates(counts),
                metadata={
                    "source": "audit",
                    "partitions_queried": len(partitions),
                    "query_ms": elapsed_ms,
                },
            )
        )
    return results


def shape_precalculated(rows: Iterable[tuple[KpiValue, str]], *, group_by: str) -> list[MetricsResult]:
    """Merge KPI value rows sharing a period into one result.

    Every KPI calculation stores the outcome counters it observed, so a period's
    counts are the largest counters seen across its rows.
    """
    periods: "OrderedDict[str, dict[str, Any]]" = OrderedDict()
    for value, kpi_code in rows:
        label = label_for_moment(group_by, value.period_start)
        bucket = periods.setdefault(
            label,
            {"counts": {name: 0 for name in OUTCOME_COUNTERS}, "kpis": {}, "record_count": 0, "calculated_at": None},
        )
        stored_counts = (value.metadata_json or {}).get("counts") or {}
        for name in OUTCOME_COUNTERS:
            bucket["counts"][name] = max(bucket["counts"][name], int(stored_counts.get(name) or 0))
        bucket["kpis"][kpi_code] = float(value.numeric_value or 0)
        bucket["record_count"] = max(bucket["record_count"], int(value.record_count or 0))
        calculated_at = ensure_utc(value.calculated_at).isoformat() if value.calculated_at else None
        if calculated_at and (bucket["calculated_at"] is None or calculated_at > bucket["calculated_at"]):
            bucket["calculated_at"] = calculated_at
    return [
        MetricsResult(
            period=label,
            **with_rates(bucket["counts"]),
            metadata={
                "source": "pre-calculated",
                "kpis": bucket["kpis"],
                "record_count": bucket["record_count"],
                "calculated_at": bucket["calculated_at"],
            },
        )
        for label, bucket in periods.items()
    ]
