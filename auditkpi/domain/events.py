from __future__ import annotations

from typing import Any, Literal, TypedDict


PeriodType = Literal["HOURLY", "DAILY", "WEEKLY", "MONTHLY", "QUARTERLY", "YEARLY"]
GroupBy = Literal["hour", "day", "week", "month", "quarter", "year"]
Severity = Literal["INFO", "WARNING", "ERROR", "CRITICAL"]
TrendLabel = Literal["increasing", "decreasing", "stable", "insufficient_data"]

OPERATION_CREATE = "CREATE"
OPERATION_UPDATE = "UPDATE"
OPERATION_DELETE = "DELETE"
OPERATIONS = (OPERATION_CREATE, OPERATION_UPDATE, OPERATION_DELETE)

CHANGE_CREATED = "CREATED"
CHANGE_UPDATED = "UPDATED"
CHANGE_DELETED = "DELETED"
CHANGE_STATUS = "STATUS_CHANGE"

PERIOD_HOURLY = "HOURLY"
PERIOD_DAILY = "DAILY"
PERIOD_WEEKLY = "WEEKLY"
PERIOD_MONTHLY = "MONTHLY"
PERIOD_QUARTERLY = "QUARTERLY"
PERIOD_YEARLY = "YEARLY"
PERIOD_TYPES = (
    PERIOD_HOURLY,
    PERIOD_DAILY,
    PERIOD_WEEKLY,
    PERIOD_MONTHLY,
    PERIOD_QUARTERLY,
    PERIOD_YEARLY,
)

GROUP_BY_TO_PERIOD: dict[str, str] = {
    "hour": PERIOD_HOURLY,
    "day": PERIOD_DAILY,
    "week": PERIOD_WEEKLY,
    "month": PERIOD_MONTHLY,
    "quarter": PERIOD_QUARTERLY,
    "year": PERIOD_YEARLY,
}

EVENT_ENTITY_CHANGED = "ENTITY_CHANGED"
EVENT_KPI_THRESHOLD_REACHED = "KPI_THRESHOLD_REACHED"

SEVERITY_INFO = "INFO"
SEVERITY_WARNING = "WARNING"

# Appointment lifecycle states tracked by the standard outcome counters.
STATUS_CONFIRMED = "CONFIRMED"
STATUS_CANCELLED = "CANCELLED"
STATUS_COMPLETED = "COMPLETED"
STATUS_NO_SHOW = "NO_SHOW"
STATUS_RESCHEDULED = "RESCHEDULED"


class EntityChangedPayload(TypedDict, total=False):
    operation: str
    change_kind: str
    changed_fields: list[str]
    changes: dict[str, dict[str, Any]]
    audit_record_id: int


class TrendAlertPayload(TypedDict):
    kpi_code: str
    trend: str
    change_percent: float
    alert_level: str
