from __future__ import annotations

import argparse
import asyncio
import json

from auditkpi.core.config import get_settings
from auditkpi.core.logging import configure_logging
from auditkpi.persistence.db import build_database
from auditkpi.services.maintenance.jobs import build_maintenance_jobs


_JOBS = ("realtime", "hourly", "daily", "weekly", "monthly")


async def _run(job: str, ignore_lease: bool) -> dict:
    # Run one maintenance job immediately instead of waiting for the cron schedule.
    settings = get_settings()
    if ignore_lease:
        settings = settings.model_copy(update={"job_lease_enabled": False})
    db = build_database(settings)
    try:
        jobs = build_maintenance_jobs(db, settings)
        if job == "realtime":
            return await jobs.realtime_kpi_job()
        if job == "hourly":
            return await jobs.hourly_job()
        if job == "weekly":
            return await jobs.weekly_job()
        if job == "monthly":
            return await jobs.monthly_job()
        return await jobs.run_maintenance_now()
    finally:
        await db.dispose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Run an analytics maintenance job now")
    parser.add_argument("--job", default="daily", choices=_JOBS)
    parser.add_argument("--ignore-lease", action="store_true", help="run even if another scheduler holds the lease")
    args = parser.parse_args()
    configure_logging()
    summary = asyncio.run(_run(args.job, args.ignore_lease))
    print(json.dumps(summary, sort_keys=True, default=str))
    return 0 if summary.get("status") in {"ok", "skipped_lease"} else 1


if __name__ == "__main__":
    raise SystemExit(main())
