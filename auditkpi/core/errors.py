from __future__ import annotations


class AuditKpiError(Exception):
    """Base error for auditkpi."""


class DatabaseError(AuditKpiError):
    """Database layer failure."""


class AuditWriteError(DatabaseError):
    """The audit record could not be appended."""


class KpiConfigNotFoundError(AuditKpiError):
    """No KPI configuration exists for the requested code."""

    def __init__(self, kpi_code: str) -> None:
        super().__init__(f"KPI configuration not found: {kpi_code}")
        self.kpi_code = kpi_code


class KpiConfigExistsError(AuditKpiError):
    """A KPI configuration with the same code already exists."""

    def __init__(self, kpi_code: str) -> None:
        super().__init__(f"KPI configuration already exists: {kpi_code}")
        self.kpi_code = kpi_code


class KpiDefinitionError(AuditKpiError):
    """Invalid KPI aggregation definition."""


class QueryValidationError(AuditKpiError):
    """Invalid metrics query or query condition."""


class AggregationError(AuditKpiError):
    """Aggregation statement execution failed."""
