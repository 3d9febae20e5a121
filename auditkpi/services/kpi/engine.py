from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
import time
from typing import Any, Iterable

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from auditkpi.core.config import Settings, get_settings
from auditkpi.core.errors import (
    AggregationError,
    AuditWriteError,
    DatabaseError,
    KpiConfigNotFoundError,
    QueryValidationError,
)
from auditkpi.domain.events import (
    EVENT_ENTITY_CHANGED,
    GROUP_BY_TO_PERIOD,
    EntityChangedPayload,
    OPERATIONS,
    PERIOD_DAILY,
    PERIOD_TYPES,
)
from auditkpi.domain.models import AuditRecord, KpiConfiguration
from auditkpi.persistence.db import Database
from auditkpi.persistence.repos import kpi as kpi_repo
from auditkpi.services.events import emit_system_event
from auditkpi.services.kpi import cache as query_cache
from auditkpi.services.kpi.aggregation import (
    build_metrics_statement,
    shape_audit_rows,
    shape_precalculated,
)
from auditkpi.services.kpi.changes import (
    changed_fields,
    diff_states,
    entity_table,
    impact_score,
    infer_change_kind,
)
from auditkpi.services.kpi.periods import calendar_parts, partition_keys_between, period_window, utc_now
from auditkpi.services.kpi.schemas import (
    AuditContext,
    FanOutFailure,
    FanOutResult,
    KpiCalculation,
    KpiTarget,
    MetricsQuery,
    MetricsResult,
)
from auditkpi.services.kpi.statements import OUTCOME_COUNTERS, compile_kpi_statement, parse_definition


logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))


def rollup_cache_ttl(configs: Iterable[KpiConfiguration], *, default_minutes: int) -> int | None:
    """Cache lifetime for a result read from rollups, or None when it must not be cached.

    The shortest per-KPI TTL wins; any contributing KPI with caching disabled
    disables caching for the whole result.
    """
    ttls: list[int] = []
    for config in configs:
        if not config.cache_enabled:
            return None
        if config.cache_ttl_minutes:
            ttls.append(int(config.cache_ttl_minutes))
    return min(ttls, default=default_minutes)


class AggregationEngine:
    """Audit ingestion, metrics read path and the single KPI value write path."""

    def __init__(self, db: Database, settings: Settings | None = None) -> None:
        self._db = db
        self._settings = settings or get_settings()

    # --- ingestion -------------------------------------------------------

    async def process_entity_change(
        self,
        entity_type: str,
        entity_id: str,
        operation: str,
        before: dict[str, Any] | None,
        after: dict[str, Any] | None,
        context: AuditContext | dict[str, Any],
    ) -> int:
        """Append the audit fact, then notify and refresh real-time KPIs.

        Only the audit append is fatal. Event emission and real-time
        recomputation log their failures and never undo the append.
        Returns the audit record id.
        """
        started = time.perf_counter()
        try:
            ctx = context if isinstance(context, AuditContext) else AuditContext.model_validate(context)
        except ValidationError as exc:
            raise AuditWriteError(f"invalid audit context: {exc}") from exc
        normalized_op = str(operation or "").upper()
        if normalized_op not in OPERATIONS:
            raise AuditWriteError(f"unsupported operation: {operation}")

        change_kind = infer_change_kind(normalized_op, before, after)
        fields = changed_fields(before, after)
        changes = diff_states(before, after)
        now = utc_now()
        record = AuditRecord(
            entity_type=entity_type,
            entity_id=str(entity_id),
            entity_table=entity_table(entity_type),
            operation=normalized_op,
            change_kind=change_kind,
            before_state=before,
            after_state=after,
            changed_fields=fields,
            company_id=ctx.company_id,
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            application_source=ctx.application_source,
            ip_address=ctx.ip_address,
            api_endpoint=ctx.api_endpoint,
            user_agent=ctx.user_agent,
            change_reason=ctx.change_reason,
            business_context=ctx.business_context,
            impact_score=impact_score(entity_type, change_kind, after),
            processing_time_ms=_elapsed_ms(started),
            **calendar_parts(now),
        )
        try:
            async with self._db.session() as session:
                session.add(record)
                await session.commit()
                record_id = int(record.id)
        except SQLAlchemyError as exc:
            logger.error(
                "audit_record_write_failed entity_type=%s entity_id=%s company_id=%s",
                entity_type,
                entity_id,
                ctx.company_id,
                exc_info=exc,
            )
            raise AuditWriteError("audit record could not be written") from exc

        payload: EntityChangedPayload = {
            "operation": normalized_op,
            "change_kind": change_kind,
            "changed_fields": fields,
            "changes": changes,
            "audit_record_id": record_id,
        }
        try:
            async with self._db.session() as session:
                await emit_system_event(
                    session,
                    event_type=EVENT_ENTITY_CHANGED,
                    company_id=ctx.company_id,
                    entity_type=entity_type,
                    entity_id=str(entity_id),
                    user_id=ctx.user_id,
                    payload=dict(payload),
                )
        except Exception as exc:  # noqa: BLE001 - notification failures never undo the audit fact.
            logger.warning("entity_change_event_failed entity_type=%s entity_id=%s", entity_type, entity_id, exc_info=exc)

        if entity_type in self._settings.realtime_entity_types():
            await self._update_realtime_kpis(entity_type, ctx.company_id, now)

        logger.debug(
            "entity_change_processed entity_type=%s entity_id=%s change_kind=%s elapsed_ms=%s",
            entity_type,
            entity_id,
            change_kind,
            _elapsed_ms(started),
        )
        return record_id

    async def _update_realtime_kpis(self, entity_type: str, company_id: str, moment: datetime) -> None:
        try:
            async with self._db.session() as session:
                configs = await kpi_repo.list_configs(
                    session, entity_type=entity_type, is_active=True, is_real_time=True
                )
        except Exception as exc:  # noqa: BLE001 - real-time refresh is best-effort.
            logger.warning("realtime_kpi_lookup_failed entity_type=%s", entity_type, exc_info=exc)
            return
        for config in configs:
            if not kpi_repo.applies_to_company(config, company_id):
                continue
            try:
                await self.calculate_kpi(config.kpi_code, company_id, moment, PERIOD_DAILY)
            except Exception as exc:  # noqa: BLE001 - one KPI failing must not block the others.
                logger.warning(
                    "realtime_kpi_update_failed kpi_code=%s company_id=%s",
                    config.kpi_code,
                    company_id,
                    exc_info=exc,
                )

    # --- read path -------------------------------------------------------

    async def calculate_complex_metrics(self, query: MetricsQuery | dict[str, Any]) -> list[MetricsResult]:
        """Serve metrics from cache, then rollups, then a pruned audit aggregation."""
        started = time.perf_counter()
        if not isinstance(query, MetricsQuery):
            try:
                query = MetricsQuery.model_validate(query)
            except ValidationError as exc:
                raise QueryValidationError(str(exc)) from exc
        entity_type = query.entity_type or self._settings.default_entity_type
        normalized = {**query.normalized(), "entity_type": entity_type}
        query_hash = query_cache.compute_query_hash(normalized)

        cached = await self._read_cache(query_hash)
        if cached is not None:
            logger.debug("metrics_cache_hit query_hash=%s elapsed_ms=%s", query_hash, _elapsed_ms(started))
            return cached

        ttl_minutes: int | None = self._settings.cache_ttl_minutes
        if self.can_use_precalculated(query):
            results, ttl_minutes = await self._query_precalculated(query, entity_type=entity_type)
            source = "pre-calculated"
        else:
            results = await self._query_with_partition_pruning(query, entity_type=entity_type)
            source = "audit"
        results = [result.selected(query.metrics) for result in results]

        if ttl_minutes is None:
            logger.debug("metrics_cache_skipped query_hash=%s reason=kpi_cache_disabled", query_hash)
        else:
            await self._write_cache(
                query_hash, normalized, results, query=query, entity_type=entity_type, ttl_minutes=ttl_minutes
            )
        logger.debug(
            "metrics_calculated source=%s periods=%s elapsed_ms=%s", source, len(results), _elapsed_ms(started)
        )
        return results

    def can_use_precalculated(self, query: MetricsQuery) -> bool:
        span = query.end_date - query.start_date
        return span >= timedelta(days=self._settings.precalc_min_range_days) and not query.has_custom_filters()

    async def _read_cache(self, query_hash: str) -> list[MetricsResult] | None:
        try:
            async with self._db.session() as session:
                payload = await query_cache.read_cached(session, query_hash=query_hash)
            if payload is None:
                return None
            return [MetricsResult.model_validate(item) for item in payload]
        except Exception as exc:  # noqa: BLE001 - cache misses are always safe.
            logger.warning("query_cache_lookup_failed query_hash=%s", query_hash, exc_info=exc)
            return None

    async def _write_cache(
        self,
        query_hash: str,
        normalized: dict[str, Any],
        results: list[MetricsResult],
        *,
        query: MetricsQuery,
        entity_type: str,
        ttl_minutes: int,
    ) -> None:
        try:
            async with self._db.session() as session:
                await query_cache.write_cached(
                    session,
                    query_hash=query_hash,
                    query_params=normalized,
                    result=[item.model_dump(mode="json") for item in results],
                    company_id=query.company_id,
                    entity_type=entity_type,
                    ttl_minutes=ttl_minutes,
                )
        except Exception as exc:  # noqa: BLE001 - cache population is best-effort.
            logger.warning("query_cache_store_failed query_hash=%s", query_hash, exc_info=exc)

    async def _query_precalculated(
        self, query: MetricsQuery, *, entity_type: str
    ) -> tuple[list[MetricsResult], int | None]:
        period_type = GROUP_BY_TO_PERIOD.get(query.group_by, PERIOD_DAILY)
        try:
            async with self._db.session() as session:
                rows = await kpi_repo.list_precalculated(
                    session,
                    company_id=query.company_id,
                    entity_type=entity_type,
                    period_type=period_type,
                    start=query.start_date,
                    end=query.end_date,
                )
                codes = {code for _, code in rows}
                configs = [
                    config
                    for config in await kpi_repo.list_configs(session, entity_type=entity_type)
                    if config.kpi_code in codes
                ]
        except SQLAlchemyError as exc:
            raise AggregationError("pre-calculated KPI lookup failed") from exc
        ttl_minutes = rollup_cache_ttl(configs, default_minutes=self._settings.cache_ttl_minutes)
        return shape_precalculated(rows, group_by=query.group_by), ttl_minutes

    async def _query_with_partition_pruning(self, query: MetricsQuery, *, entity_type: str) -> list[MetricsResult]:
        started = time.perf_counter()
        partitions = partition_keys_between(query.start_date, query.end_date)
        stmt = build_metrics_statement(query, entity_type=entity_type, partitions=partitions)
        try:
            async with self._db.session() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise AggregationError("metrics aggregation failed") from exc
        return shape_audit_rows(rows, group_by=query.group_by, partitions=partitions, elapsed_ms=_elapsed_ms(started))

    # --- KPI values ------------------------------------------------------

    async def calculate_kpi(
        self,
        kpi_code: str,
        company_id: str,
        period_date: datetime,
        period_type: str,
        *,
        dimension_values: dict[str, Any] | None = None,
    ) -> KpiCalculation:
        """Run a KPI's statement for one period and upsert the rollup row."""
        if period_type not in PERIOD_TYPES:
            raise QueryValidationError(f"unsupported period type: {period_type}")
        window = period_window(period_date, period_type)
        async with self._db.session() as session:
            config = await kpi_repo.get_config_by_code(session, kpi_code)
            if config is None:
                raise KpiConfigNotFoundError(kpi_code)
            definition = parse_definition(config.definition_json)
            stmt = compile_kpi_statement(
                definition,
                entity_type=config.entity_type,
                start=window.start,
                end=window.end,
                company_id=company_id,
            )
            started = time.perf_counter()
            try:
                row = (await session.execute(stmt)).one()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise AggregationError(f"KPI statement failed for {kpi_code}") from exc
            elapsed_ms = _elapsed_ms(started)
            # Close the read transaction so concurrent recalculations only contend on the upsert.
            await session.commit()

            value = round(float(row.value or 0), 2)
            record_count = int(row.record_count or 0)
            counts = {name: int(getattr(row, name) or 0) for name in OUTCOME_COUNTERS}
            calculated_at = utc_now()
            metadata = {
                "params": {
                    "start_date": window.start.isoformat(),
                    "end_date": window.end.isoformat(),
                    "company_id": company_id,
                },
                "counts": counts,
                "calculation_ms": elapsed_ms,
                "executed_at": calculated_at.isoformat(),
            }
            try:
                await kpi_repo.upsert_kpi_value(
                    session,
                    config=config,
                    company_id=company_id,
                    period_type=period_type,
                    period_start=window.start,
                    numeric_value=value,
                    record_count=record_count,
                    metadata=metadata,
                    calculation_time_ms=elapsed_ms,
                    calculated_at=calculated_at,
                    dimension_values=dimension_values,
                )
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise DatabaseError(f"KPI value upsert failed for {kpi_code}") from exc

        logger.debug(
            "kpi_calculated kpi_code=%s company_id=%s period_type=%s period_start=%s value=%s",
            kpi_code,
            company_id,
            period_type,
            window.start.isoformat(),
            value,
        )
        return KpiCalculation(
            kpi_code=kpi_code,
            company_id=company_id,
            period_type=period_type,
            period_start=window.start,
            value=value,
            record_count=record_count,
            calculation_time_ms=elapsed_ms,
            counts=counts,
        )

    async def calculate_many(self, targets: Iterable[KpiTarget]) -> FanOutResult:
        """Fan out KPI calculations and settle all of them; failures are collected, not raised."""
        items = list(targets)
        semaphore = asyncio.Semaphore(max(1, int(self._settings.kpi_fanout_concurrency)))

        async def _run(target: KpiTarget) -> KpiCalculation:
            async with semaphore:
                return await self.calculate_kpi(
                    target.kpi_code, target.company_id, target.period_date, target.period_type
                )

        outcomes = await asyncio.gather(*(_run(target) for target in items), return_exceptions=True)
        result = FanOutResult(attempted=len(items))
        for target, outcome in zip(items, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(
                    "kpi_fanout_item_failed kpi_code=%s company_id=%s period_type=%s",
                    target.kpi_code,
                    target.company_id,
                    target.period_type,
                    exc_info=outcome,
                )
                result.failures.append(
                    FanOutFailure(
                        kpi_code=target.kpi_code,
                        company_id=target.company_id,
                        period_type=target.period_type,
                        error=type(outcome).__name__,
                    )
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.succeeded += 1
        return result
