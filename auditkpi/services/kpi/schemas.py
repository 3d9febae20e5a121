from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from auditkpi.domain.events import GroupBy, PeriodType, TrendLabel
from auditkpi.services.kpi.conditions import QueryCondition
from auditkpi.services.kpi.periods import ensure_utc


METRIC_NAMES = (
    "total_created",
    "total_confirmed",
    "total_cancelled",
    "total_rescheduled",
    "total_completed",
    "total_no_show",
    "confirmation_rate",
    "completion_rate",
    "no_show_rate",
    "reschedule_rate",
)


class AuditContext(BaseModel):
    # company_id is mandatory; everything else describes the request that caused the change.
    company_id: str
    user_id: str | None = None
    session_id: str | None = None
    application_source: str | None = None
    user_agent: str | None = None
    ip_address: str | None = None
    api_endpoint: str | None = None
    change_reason: str | None = None
    business_context: dict[str, Any] | None = None

    @field_validator("company_id")
    @classmethod
    def _company_required(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("company_id is required")
        return value


class MetricsQuery(BaseModel):
    company_id: str
    entity_type: str | None = None
    employee_id: str | None = None
    event_type_id: str | None = None
    created_by_app: str | None = None
    start_date: datetime
    end_date: datetime
    group_by: GroupBy = "day"
    conditions: list[QueryCondition] | None = None
    custom_filters: dict[str, Any] | None = None
    metrics: list[str] | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def _check_query(self) -> "MetricsQuery":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        unknown = sorted(set(self.metrics or []) - set(METRIC_NAMES))
        if unknown:
            raise ValueError(f"unknown metrics: {unknown}")
        return self

    def has_custom_filters(self) -> bool:
        # Rollups are company-wide, so any narrowing filter forces the audit path.
        return any(
            (
                self.conditions,
                self.custom_filters,
                self.employee_id,
                self.event_type_id,
                self.created_by_app,
            )
        )

    def normalized(self) -> dict[str, Any]:
        # JSON-mode dump gives a stable, key-sortable representation for cache hashing.
        return self.model_dump(mode="json")


class MetricsResult(BaseModel):
    period: str
    # None marks a metric the query did not ask for.
    total_created: int | None = 0
    total_confirmed: int | None = 0
    total_cancelled: int | None = 0
    total_rescheduled: int | None = 0
    total_completed: int | None = 0
    total_no_show: int | None = 0
    confirmation_rate: float | None = 0.0
    completion_rate: float | None = 0.0
    no_show_rate: float | None = 0.0
    reschedule_rate: float | None = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)

    def selected(self, metrics: list[str] | None) -> "MetricsResult":
        if not metrics:
            return self
        return self.model_copy(update={name: None for name in METRIC_NAMES if name not in metrics})


@dataclass(frozen=True)
class KpiCalculation:
    kpi_code: str
    company_id: str
    period_type: str
    period_start: datetime
    value: float
    record_count: int
    calculation_time_ms: int
    counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class KpiTarget:
    kpi_code: str
    company_id: str
    period_date: datetime
    period_type: PeriodType


@dataclass(frozen=True)
class FanOutFailure:
    kpi_code: str
    company_id: str
    period_type: str
    error: str


@dataclass
class FanOutResult:
    attempted: int = 0
    succeeded: int = 0
    failures: list[FanOutFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def as_dict(self) -> dict[str, Any]:
        return {"attempted": self.attempted, "succeeded": self.succeeded, "failed": self.failed}


@dataclass(frozen=True)
class KpiTrend:
    kpi_code: str
    company_id: str
    period_type: str
    trend: TrendLabel
    values: list[dict[str, Any]]
    change_percent: float | None = None
    recent_average: float | None = None
    older_average: float | None = None
