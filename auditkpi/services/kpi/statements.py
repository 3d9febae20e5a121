from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ValidationError, model_validator
from sqlalchemy import Select, and_, case, func, literal, select
from sqlalchemy.sql.elements import ColumnElement

from auditkpi.core.errors import KpiDefinitionError, QueryValidationError
from auditkpi.domain.events import (
    CHANGE_CREATED,
    CHANGE_STATUS,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_NO_SHOW,
    STATUS_RESCHEDULED,
)
from auditkpi.domain.models import AuditRecord
from auditkpi.services.kpi.conditions import compile_filter


# Outcome counters shared by the metrics read path and every KPI statement.
OUTCOME_COUNTERS: dict[str, dict[str, Any]] = {
    "total_created": {"change_kind": CHANGE_CREATED},
    "total_confirmed": {"change_kind": CHANGE_STATUS, "status": STATUS_CONFIRMED},
    "total_cancelled": {"change_kind": CHANGE_STATUS, "status": STATUS_CANCELLED},
    "total_rescheduled": {"change_kind": CHANGE_STATUS, "status": STATUS_RESCHEDULED},
    "total_completed": {"change_kind": CHANGE_STATUS, "status": STATUS_COMPLETED},
    "total_no_show": {"change_kind": CHANGE_STATUS, "status": STATUS_NO_SHOW},
}


def count_where(clause: ColumnElement) -> ColumnElement:
    # SUM(CASE ...) is the portable spelling of COUNT(*) FILTER (WHERE ...).
    return func.coalesce(func.sum(case((clause, 1), else_=0)), 0)


def outcome_count_columns() -> list[ColumnElement]:
    return [count_where(compile_filter(block)).label(name) for name, block in OUTCOME_COUNTERS.items()]


class KpiDefinition(BaseModel):
    """Typed aggregation definition stored on a KPI configuration.

    kinds:
      count   -> rows matching ``filter``
      ratio   -> count(numerator) / count(denominator) * scale, 0 when denominator is 0
      average -> AVG of numeric after-state ``field`` over rows matching ``filter``
      sum     -> SUM of numeric after-state ``field`` over rows matching ``filter``
    """

    kind: Literal["count", "ratio", "average", "sum"]
    filter: dict[str, Any] | None = None
    numerator: dict[str, Any] | None = None
    denominator: dict[str, Any] | None = None
    field: str | None = None
    scale: float = 1.0

    @model_validator(mode="after")
    def _check_shape(self) -> "KpiDefinition":
        if self.kind == "ratio" and (self.numerator is None or self.denominator is None):
            raise ValueError("ratio definitions need numerator and denominator filters")
        if self.kind in {"average", "sum"} and not self.field:
            raise ValueError(f"{self.kind} definitions need a field")
        return self


def parse_definition(raw: dict[str, Any] | KpiDefinition) -> KpiDefinition:
    if isinstance(raw, KpiDefinition):
        return raw
    try:
        definition = KpiDefinition.model_validate(raw)
    except ValidationError as exc:
        raise KpiDefinitionError(str(exc)) from exc
    # Build the expression once so malformed filters fail at save time, not at run time.
    try:
        _value_expression(definition)
    except QueryValidationError as exc:
        raise KpiDefinitionError(str(exc)) from exc
    return definition


def _value_expression(definition: KpiDefinition) -> ColumnElement:
    if definition.kind == "count":
        return count_where(compile_filter(definition.filter))
    if definition.kind == "ratio":
        numerator = count_where(compile_filter(definition.numerator))
        denominator = count_where(compile_filter(definition.denominator))
        return case(
            (denominator == 0, literal(0.0)),
            else_=numerator * 1.0 / denominator * definition.scale,
        )
    field_value = AuditRecord.after_state[definition.field].as_float()
    matched = case((compile_filter(definition.filter), field_value), else_=None)
    aggregate = func.avg(matched) if definition.kind == "average" else func.sum(matched)
    return func.coalesce(aggregate, 0) * definition.scale


def compile_kpi_statement(
    definition: KpiDefinition,
    *,
    entity_type: str,
    start: datetime,
    end: datetime,
    company_id: str,
) -> Select:
    """Bind a definition to (start, end, company) and return the aggregate select.

    Columns: ``value``, ``record_count`` and the outcome counters.
    """
    return select(
        _value_expression(definition).label("value"),
        func.count(AuditRecord.id).label("record_count"),
        *outcome_count_columns(),
    ).where(
        and_(
            AuditRecord.entity_type == entity_type,
            AuditRecord.company_id == company_id,
            AuditRecord.event_at >= start,
            AuditRecord.event_at < end,
        )
    )
