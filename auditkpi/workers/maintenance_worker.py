from __future__ import annotations

import logging
from zoneinfo import ZoneInfo

from arq import cron
from arq.connections import RedisSettings

from auditkpi.core.config import get_settings
from auditkpi.core.logging import configure_logging
from auditkpi.persistence.db import build_database
from auditkpi.services.maintenance.jobs import MaintenanceJobs, build_maintenance_jobs


logger = logging.getLogger(__name__)


def _jobs(ctx) -> MaintenanceJobs:
    return ctx["maintenance_jobs"]


async def realtime_kpi_updates(ctx) -> dict:
    return await _jobs(ctx).realtime_kpi_job()


async def hourly_cache_cleanup(ctx) -> dict:
    return await _jobs(ctx).hourly_job()


async def daily_maintenance(ctx) -> dict:
    return await _jobs(ctx).daily_job()


async def weekly_optimization(ctx) -> dict:
    return await _jobs(ctx).weekly_job()


async def monthly_reporting(ctx) -> dict:
    return await _jobs(ctx).monthly_job()


async def recalculate_company_kpis(ctx, company_id: str) -> dict:
    # Enqueued on demand by operators; not part of the cron schedule.
    result = await _jobs(ctx).recalculate_company_kpis_now(company_id)
    return result.as_dict()


async def _startup(ctx) -> None:
    # Build one Database handle per worker process and share it across job runs.
    configure_logging()
    settings = get_settings()
    db = build_database(settings)
    ctx["db"] = db
    ctx["maintenance_jobs"] = build_maintenance_jobs(db, settings)
    logger.info("maintenance_worker_started queue=%s", settings.maintenance_queue_name)


async def _shutdown(ctx) -> None:
    # Dispose pooled connections so worker restarts do not leak sessions.
    db = ctx.get("db")
    if db is not None:
        await db.dispose()


class WorkerSettings:
    # Keep worker settings as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.maintenance_queue_name
    timezone = ZoneInfo(settings.scheduler_timezone)
    functions = [recalculate_company_kpis]
    cron_jobs = [
        cron(realtime_kpi_updates, minute=set(range(0, 60, 5)), run_at_startup=False),
        cron(hourly_cache_cleanup, minute=0),
        cron(daily_maintenance, hour=2, minute=0),
        cron(weekly_optimization, weekday="sun", hour=3, minute=0),
        cron(monthly_reporting, day=1, hour=4, minute=0),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
