"""Compile restricted filter expressions into SQLAlchemy clauses.

Filters arrive as data (from metrics queries or stored KPI definitions). They
are never rendered as SQL text: fields resolve through an allow-list of audit
columns or ``after.<key>`` / ``before.<key>`` JSON paths, operators map to
column operators, and every value becomes a bound parameter.
"""

from __future__ import annotations

from typing import Any, Iterable, Literal

from pydantic import BaseModel, field_validator
from sqlalchemy import and_, not_, true
from sqlalchemy.sql.elements import ColumnElement

from auditkpi.core.errors import QueryValidationError
from auditkpi.domain.models import AuditRecord


ConditionOperator = Literal["=", "!=", ">", "<", ">=", "<=", "IN", "NOT IN", "LIKE", "ILIKE"]

_COLUMN_FIELDS: dict[str, Any] = {
    "entity_type": AuditRecord.entity_type,
    "entity_id": AuditRecord.entity_id,
    "entity_table": AuditRecord.entity_table,
    "operation": AuditRecord.operation,
    "change_kind": AuditRecord.change_kind,
    "company_id": AuditRecord.company_id,
    "user_id": AuditRecord.user_id,
    "session_id": AuditRecord.session_id,
    "application_source": AuditRecord.application_source,
    "api_endpoint": AuditRecord.api_endpoint,
    "impact_score": AuditRecord.impact_score,
    "event_hour": AuditRecord.event_hour,
    "event_day_of_week": AuditRecord.event_day_of_week,
    "event_quarter": AuditRecord.event_quarter,
}
_JSON_ROOTS = {"after": AuditRecord.after_state, "before": AuditRecord.before_state}


class QueryCondition(BaseModel):
    field: str
    operator: ConditionOperator
    value: Any

    @field_validator("operator", mode="before")
    @classmethod
    def _normalize_operator(cls, value: Any) -> Any:
        if isinstance(value, str):
            return " ".join(value.upper().split())
        return value


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def resolve_field(field: str, *, sample: Any = None) -> ColumnElement:
    # Only allow-listed columns and one-level JSON paths are addressable.
    if field in _COLUMN_FIELDS:
        return _COLUMN_FIELDS[field]
    root, _, key = field.partition(".")
    if root in _JSON_ROOTS and key and "." not in key:
        element = _JSON_ROOTS[root][key]
        if _is_number(sample):
            return element.as_float()
        return element.as_string()
    raise QueryValidationError(f"unsupported condition field: {field}")


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def compile_condition(condition: QueryCondition) -> ColumnElement:
    op = condition.operator
    value = condition.value
    sample = _as_list(value)[0] if op in {"IN", "NOT IN"} and _as_list(value) else value
    column = resolve_field(condition.field, sample=sample)
    if op == "=":
        return column == value
    if op == "!=":
        return column != value
    if op == ">":
        return column > value
    if op == "<":
        return column < value
    if op == ">=":
        return column >= value
    if op == "<=":
        return column <= value
    if op == "IN":
        return column.in_(_as_list(value))
    if op == "NOT IN":
        return column.not_in(_as_list(value))
    if op == "LIKE":
        return column.like(f"%{value}%")
    if op == "ILIKE":
        return column.ilike(f"%{value}%")
    raise QueryValidationError(f"unsupported condition operator: {op}")


def compile_conditions(conditions: Iterable[QueryCondition] | None) -> list[ColumnElement]:
    return [compile_condition(condition) for condition in conditions or []]


def compile_filter(block: dict[str, Any] | None) -> ColumnElement:
    """Compile a KPI filter block into one boolean clause.

    Supported keys: ``change_kind`` and ``status`` (a value or list of values;
    ``status`` reads the after-state), ``exclude_status``, ``has_field``
    (after-state key that must be present) and ``conditions`` (a list of
    condition objects).
    """
    if not block:
        return true()
    unknown = set(block) - {"change_kind", "status", "exclude_status", "has_field", "conditions"}
    if unknown:
        raise QueryValidationError(f"unsupported filter keys: {sorted(unknown)}")
    clauses: list[ColumnElement] = []
    if block.get("change_kind") is not None:
        clauses.append(AuditRecord.change_kind.in_(_as_list(block["change_kind"])))
    if block.get("status") is not None:
        clauses.append(AuditRecord.after_state["status"].as_string().in_(_as_list(block["status"])))
    if block.get("exclude_status") is not None:
        clauses.append(not_(AuditRecord.after_state["status"].as_string().in_(_as_list(block["exclude_status"]))))
    if block.get("has_field"):
        clauses.append(AuditRecord.after_state[str(block["has_field"])].as_string().is_not(None))
    for raw in block.get("conditions") or []:
        condition = raw if isinstance(raw, QueryCondition) else QueryCondition.model_validate(raw)
        clauses.append(compile_condition(condition))
    if not clauses:
        return true()
    return and_(*clauses)
