from __future__ import annotations

from datetime import datetime, timedelta
import json
import logging
import time
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auditkpi.core.config import Settings, get_settings
from auditkpi.domain.events import (
    EVENT_KPI_THRESHOLD_REACHED,
    PERIOD_DAILY,
    PERIOD_HOURLY,
    PERIOD_MONTHLY,
    PERIOD_WEEKLY,
    SEVERITY_WARNING,
    TrendAlertPayload,
)
from auditkpi.domain.models import AuditRecord, DataArchive, MonthlyReport
from auditkpi.persistence.db import Database
from auditkpi.persistence.repos import audit as audit_repo
from auditkpi.persistence.repos import kpi as kpi_repo
from auditkpi.persistence.repos.companies import CompanyRef, list_active_companies
from auditkpi.services.events import emit_system_event, prune_processed_events
from auditkpi.services.kpi import cache as query_cache
from auditkpi.services.kpi.engine import AggregationEngine
from auditkpi.services.kpi.manager import KpiManager
from auditkpi.services.kpi.periods import (
    add_months,
    month_label,
    partition_key,
    period_window,
    subtract_years,
    utc_now,
)
from auditkpi.services.kpi.schemas import FanOutResult, KpiTarget
from auditkpi.services.maintenance.lease import acquire_job_lease, release_job_lease


logger = logging.getLogger(__name__)

ARCHIVE_REASON_AGE = "AGE_BASED"
STORAGE_TIER_WARM = "WARM"
STORAGE_TIER_COLD = "COLD"
AUDIT_TABLE = "audit_records"

# Receives (session, action, partition keys); action is "create" or "compress".
PartitionHook = Callable[[AsyncSession, str, list[str]], Awaitable[None]]


def _record_snapshot(record: AuditRecord) -> dict[str, Any]:
    # JSON-safe copy of every column so archived rows can be restored verbatim.
    snapshot: dict[str, Any] = {}
    for column in AuditRecord.__table__.columns:
        value = getattr(record, column.key)
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        snapshot[column.key] = value
    return snapshot


def _payload_size(payload: dict[str, Any]) -> int:
    return len(json.dumps(payload, sort_keys=True, default=str).encode("utf-8"))


def future_partition_keys(now: datetime, months_ahead: int) -> list[str]:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    keys = []
    for offset in range(1, max(0, months_ahead) + 1):
        moment = add_months(start, offset)
        keys.append(partition_key(moment.year, moment.month))
    return keys


def partition_keys_older_than(now: datetime, days_old: int, *, lookback_months: int = 12) -> list[str]:
    # Only the last year of partitions is considered; older ones were compressed by earlier runs.
    cutoff = now - timedelta(days=days_old)
    last_full = add_months(cutoff.replace(day=1, hour=0, minute=0, second=0, microsecond=0), -1)
    return [
        partition_key(moment.year, moment.month)
        for moment in (add_months(last_full, -offset) for offset in range(lookback_months))
    ]


class MaintenanceJobs:
    """Scheduled maintenance: KPI rollups, archiving, cache upkeep and trend alerts.

    Every public job wraps its body so a failure is logged and never escapes to
    the scheduler, and each step inside a job is isolated from its siblings.
    When job leases are enabled, a job whose lease is held elsewhere is skipped.
    """

    def __init__(
        self,
        db: Database,
        engine: AggregationEngine,
        manager: KpiManager,
        settings: Settings | None = None,
        *,
        partition_hook: PartitionHook | None = None,
    ) -> None:
        self._db = db
        self._engine = engine
        self._manager = manager
        self._settings = settings or get_settings()
        self._partition_hook = partition_hook

    # --- job runner ------------------------------------------------------

    async def _run_job(self, job_name: str, body: Callable[[], Awaitable[dict[str, Any]]]) -> dict[str, Any]:
        started = time.perf_counter()
        lease = None
        if self._settings.job_lease_enabled:
            lease = await acquire_job_lease(self._db, job_name, ttl_s=self._settings.job_lease_ttl_s)
            if lease is None:
                return {"job": job_name, "status": "skipped_lease"}
        try:
            summary = await body()
            status = "ok"
        except Exception:  # noqa: BLE001 - a failed run must never block the next scheduled one.
            logger.exception("maintenance_job_failed job=%s", job_name)
            summary = {}
            status = "failed"
        finally:
            if lease is not None:
                await release_job_lease(self._db, lease)
        duration_ms = int(round((time.perf_counter() - started) * 1000))
        logger.info("maintenance_job_finished job=%s status=%s duration_ms=%s", job_name, status, duration_ms)
        return {"job": job_name, "status": status, "duration_ms": duration_ms, **summary}

    async def _step(self, job_name: str, step_name: str, step: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await step()
        except Exception:  # noqa: BLE001 - one failing step must not skip the remaining steps.
            logger.exception("maintenance_step_failed job=%s step=%s", job_name, step_name)
            return None

    async def _active_companies(self) -> list[CompanyRef]:
        async with self._db.session() as session:
            return await list_active_companies(session)

    # --- KPI rollups -----------------------------------------------------

    async def calculate_period_kpis(self, period_type: str, period_date: datetime) -> FanOutResult:
        """Recompute every active KPI declaring ``period_type`` for every active company."""
        async with self._db.session() as session:
            configs = await kpi_repo.list_active_configs_for_period(session, period_type)
            companies = await list_active_companies(session)
        targets = [
            KpiTarget(kpi_code=config.kpi_code, company_id=company.id, period_date=period_date, period_type=period_type)
            for config in configs
            for company in companies
            if kpi_repo.applies_to_company(config, company.id)
        ]
        result = await self._engine.calculate_many(targets)
        logger.info(
            "period_kpis_calculated period_type=%s period_date=%s attempted=%s failed=%s",
            period_type,
            period_date.date().isoformat(),
            result.attempted,
            result.failed,
        )
        return result

    async def calculate_realtime_kpis(self, now: datetime | None = None) -> FanOutResult:
        moment = now or utc_now()
        async with self._db.session() as session:
            configs = await kpi_repo.list_configs(session, is_active=True, is_real_time=True)
            companies = await list_active_companies(session)
        targets = [
            KpiTarget(kpi_code=config.kpi_code, company_id=company.id, period_date=moment, period_type=PERIOD_HOURLY)
            for config in configs
            for company in companies
            if kpi_repo.applies_to_company(config, company.id)
        ]
        return await self._engine.calculate_many(targets)

    # --- storage upkeep --------------------------------------------------

    async def purge_expired_cache(self, now: datetime | None = None) -> int:
        async with self._db.session() as session:
            removed = await query_cache.purge_expired(session, now=now)
            await session.commit()
        if removed:
            logger.info("query_cache_purged removed=%s", removed)
        return removed

    async def archive_old_audit_records(self, now: datetime | None = None) -> int:
        """Copy audit records older than the archive horizon into data_archives, then delete them.

        Each batch commits the copies and the deletes together, so a record is
        never deleted without its archive row.
        """
        cutoff = subtract_years(now or utc_now(), self._settings.audit_archive_after_years)
        batch_size = max(1, int(self._settings.audit_archive_batch_size))
        archived = 0
        while True:
            async with self._db.session() as session:
                records = await audit_repo.oldest_before(session, cutoff=cutoff, limit=batch_size)
                if not records:
                    break
                archive_date = utc_now()
                for record in records:
                    snapshot = _record_snapshot(record)
                    session.add(
                        DataArchive(
                            original_table=AUDIT_TABLE,
                            original_id=str(record.id),
                            company_id=record.company_id,
                            archived_data=snapshot,
                            archive_reason=ARCHIVE_REASON_AGE,
                            original_created_at=record.event_at,
                            data_size=_payload_size(snapshot),
                            archive_date=archive_date,
                            storage_tier=STORAGE_TIER_WARM,
                        )
                    )
                # Flush the copies before issuing the delete in the same transaction.
                await session.flush()
                await audit_repo.delete_by_ids(session, [int(record.id) for record in records])
                try:
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
            archived += len(records)
            logger.info("audit_records_archived batch=%s total=%s", len(records), archived)
            if len(records) < batch_size:
                break
        return archived

    async def move_archives_to_cold_storage(self, now: datetime | None = None) -> int:
        cutoff = subtract_years(now or utc_now(), self._settings.cold_storage_after_years)
        batch_size = max(1, int(self._settings.cold_storage_batch_size))
        async with self._db.session() as session:
            ids = (
                await session.execute(
                    select(DataArchive.id)
                    .where(DataArchive.archive_date < cutoff, DataArchive.storage_tier == STORAGE_TIER_WARM)
                    .order_by(DataArchive.id.asc())
                    .limit(batch_size)
                )
            ).scalars().all()
            if not ids:
                return 0
            await session.execute(
                update(DataArchive).where(DataArchive.id.in_(ids)).values(storage_tier=STORAGE_TIER_COLD)
            )
            await session.commit()
        logger.info("archives_moved_to_cold_storage count=%s", len(ids))
        return len(ids)

    async def prune_system_events(self, now: datetime | None = None) -> int:
        cutoff = (now or utc_now()) - timedelta(days=self._settings.system_event_retention_days)
        async with self._db.session() as session:
            removed = await prune_processed_events(session, cutoff=cutoff)
            await session.commit()
        if removed:
            logger.info("system_events_pruned removed=%s", removed)
        return removed

    async def _partition_action(self, action: str, keys: list[str]) -> list[str]:
        if self._db.dialect_name == "postgresql" and self._partition_hook is not None:
            async with self._db.session() as session:
                await self._partition_hook(session, action, keys)
                await session.commit()
            logger.info("audit_partitions_%s keys=%s", action, ",".join(keys))
        else:
            # No partition DDL on this backend; keep the plan visible in the log.
            logger.info(
                "audit_partition_plan action=%s dialect=%s keys=%s", action, self._db.dialect_name, ",".join(keys)
            )
        return keys

    async def ensure_future_partitions(self, months_ahead: int, now: datetime | None = None) -> list[str]:
        return await self._partition_action("create", future_partition_keys(now or utc_now(), months_ahead))

    async def compress_old_partitions(self, days_old: int, now: datetime | None = None) -> list[str]:
        return await self._partition_action("compress", partition_keys_older_than(now or utc_now(), days_old))

    # --- analysis --------------------------------------------------------

    async def analyze_frequent_queries(self, now: datetime | None = None) -> int:
        since = (now or utc_now()) - timedelta(days=7)
        async with self._db.session() as session:
            entries = await query_cache.frequently_accessed(session, since=since, limit=10)
        for entry in entries:
            logger.debug(
                "frequent_query query_hash=%s hits=%s entity_type=%s", entry.query_hash, entry.hit_count, entry.entity_type
            )
        logger.info("frequent_queries_analyzed count=%s", len(entries))
        return len(entries)

    async def analyze_cache_performance(self) -> dict[str, Any]:
        async with self._db.session() as session:
            stats = await query_cache.cache_statistics(session)
        logger.info(
            "query_cache_stats entries=%s total_hits=%s avg_hits=%s avg_result_size=%s",
            stats.entries,
            stats.total_hits,
            stats.avg_hits,
            stats.avg_result_size,
        )
        return {
            "entries": stats.entries,
            "total_hits": stats.total_hits,
            "avg_hits": stats.avg_hits,
            "avg_result_size": stats.avg_result_size,
        }

    async def generate_monthly_reports(self, month_date: datetime) -> int:
        window = period_window(month_date, PERIOD_MONTHLY)
        period = month_label(window.start)
        companies = await self._active_companies()
        generated = 0
        for company in companies:
            try:
                async with self._db.session() as session:
                    stats = await audit_repo.count_by_entity_and_change_kind(
                        session, company_id=company.id, start=window.start, end=window.end
                    )
                    await self._upsert_monthly_report(session, company_id=company.id, period=period, stats=stats)
                    await session.commit()
                generated += 1
            except SQLAlchemyError as exc:
                logger.warning("monthly_report_failed company_id=%s period=%s", company.id, period, exc_info=exc)
        logger.info("monthly_reports_generated period=%s companies=%s", period, generated)
        return generated

    async def _upsert_monthly_report(
        self,
        session: AsyncSession,
        *,
        company_id: str,
        period: str,
        stats: dict[str, dict[str, int]],
    ) -> None:
        insert = pg_insert if self._db.dialect_name == "postgresql" else sqlite_insert
        stmt = insert(MonthlyReport).values(
            company_id=company_id, period=period, stats_json=stats, generated_at=utc_now()
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["company_id", "period"],
            set_={"stats_json": stmt.excluded.stats_json, "generated_at": stmt.excluded.generated_at},
        )
        await session.execute(stmt)

    async def analyze_trends_and_alerts(self) -> int:
        """Emit KPI_THRESHOLD_REACHED for watch-listed KPIs falling past the alert threshold."""
        threshold = float(self._settings.trend_alert_threshold_pct)
        periods = max(2, int(self._settings.trend_alert_periods))
        companies = await self._active_companies()
        alerts = 0
        for company in companies:
            for kpi_code in self._settings.trend_watchlist():
                try:
                    trend = await self._manager.get_kpi_trends(kpi_code, company.id, PERIOD_MONTHLY, periods)
                except Exception as exc:  # noqa: BLE001 - one company's trend must not stop the sweep.
                    logger.warning("trend_analysis_failed kpi_code=%s company_id=%s", kpi_code, company.id, exc_info=exc)
                    continue
                if trend.trend != "decreasing" or abs(trend.change_percent or 0) <= threshold:
                    continue
                payload: TrendAlertPayload = {
                    "kpi_code": kpi_code,
                    "trend": trend.trend,
                    "change_percent": float(trend.change_percent or 0),
                    "alert_level": SEVERITY_WARNING,
                }
                async with self._db.session() as session:
                    event = await emit_system_event(
                        session,
                        event_type=EVENT_KPI_THRESHOLD_REACHED,
                        company_id=company.id,
                        entity_type="kpi_value",
                        entity_id=kpi_code,
                        payload=dict(payload),
                        severity=SEVERITY_WARNING,
                    )
                if event is not None:
                    alerts += 1
                    logger.warning(
                        "kpi_trend_alert company_id=%s kpi_code=%s trend=%s change_percent=%s",
                        company.id,
                        kpi_code,
                        trend.trend,
                        trend.change_percent,
                    )
        return alerts

    # --- scheduled jobs --------------------------------------------------

    async def realtime_kpi_job(self, now: datetime | None = None) -> dict[str, Any]:
        async def body() -> dict[str, Any]:
            result = await self.calculate_realtime_kpis(now)
            return result.as_dict()

        return await self._run_job("realtime_kpi_updates", body)

    async def hourly_job(self, now: datetime | None = None) -> dict[str, Any]:
        async def body() -> dict[str, Any]:
            return {"cache_purged": await self.purge_expired_cache(now)}

        return await self._run_job("hourly_cache_cleanup", body)

    async def daily_job(self, now: datetime | None = None) -> dict[str, Any]:
        job = "daily_maintenance"

        async def body() -> dict[str, Any]:
            current = now or utc_now()
            yesterday = current - timedelta(days=1)
            kpis = await self._step(job, "daily_kpis", lambda: self.calculate_period_kpis(PERIOD_DAILY, yesterday))
            return {
                "kpis": kpis.as_dict() if kpis is not None else None,
                "archived": await self._step(job, "archive", lambda: self.archive_old_audit_records(current)),
                "cache_purged": await self._step(job, "cache", lambda: self.purge_expired_cache(current)),
                "partitions": await self._step(job, "partitions", lambda: self.ensure_future_partitions(1, current)),
                "events_pruned": await self._step(job, "system_events", lambda: self.prune_system_events(current)),
            }

        return await self._run_job(job, body)

    async def weekly_job(self, now: datetime | None = None) -> dict[str, Any]:
        job = "weekly_optimization"

        async def body() -> dict[str, Any]:
            current = now or utc_now()
            last_week = current - timedelta(days=7)
            kpis = await self._step(job, "weekly_kpis", lambda: self.calculate_period_kpis(PERIOD_WEEKLY, last_week))
            return {
                "kpis": kpis.as_dict() if kpis is not None else None,
                "frequent_queries": await self._step(job, "queries", lambda: self.analyze_frequent_queries(current)),
                "compressed": await self._step(
                    job,
                    "compress",
                    lambda: self.compress_old_partitions(self._settings.partition_compress_after_days, current),
                ),
                "cache_stats": await self._step(job, "cache_stats", self.analyze_cache_performance),
                "kpi_values_pruned": await self._step(
                    job, "retention", lambda: self._manager.cleanup_old_kpi_values(self._settings.kpi_retention_days)
                ),
            }

        return await self._run_job(job, body)

    async def monthly_job(self, now: datetime | None = None) -> dict[str, Any]:
        job = "monthly_reporting"

        async def body() -> dict[str, Any]:
            current = now or utc_now()
            last_month = add_months(current, -1)
            kpis = await self._step(job, "monthly_kpis", lambda: self.calculate_period_kpis(PERIOD_MONTHLY, last_month))
            return {
                "kpis": kpis.as_dict() if kpis is not None else None,
                "reports": await self._step(job, "reports", lambda: self.generate_monthly_reports(last_month)),
                "cold_storage": await self._step(job, "cold_storage", lambda: self.move_archives_to_cold_storage(current)),
                "alerts": await self._step(job, "trends", self.analyze_trends_and_alerts),
                "partitions": await self._step(job, "partitions", lambda: self.ensure_future_partitions(6, current)),
            }

        return await self._run_job(job, body)

    # --- manual triggers -------------------------------------------------

    async def run_maintenance_now(self) -> dict[str, Any]:
        logger.info("manual_maintenance_requested")
        return await self.daily_job()

    async def recalculate_company_kpis_now(self, company_id: str, period_date: datetime | None = None) -> FanOutResult:
        return await self._manager.recalculate_company_kpis(company_id, period_date or utc_now())


def build_maintenance_jobs(db: Database, settings: Settings | None = None) -> MaintenanceJobs:
    # Wire the engine, manager and jobs around one injected Database handle.
    settings = settings or get_settings()
    engine = AggregationEngine(db, settings)
    manager = KpiManager(db, engine)
    return MaintenanceJobs(db, engine, manager, settings)
