from __future__ import annotations

import argparse
import asyncio
from datetime import datetime

from auditkpi.core.logging import configure_logging
from auditkpi.persistence.db import build_database
from auditkpi.services.kpi.periods import ensure_utc, utc_now
from auditkpi.services.maintenance.jobs import build_maintenance_jobs


async def _recalculate(company_id: str, date: str | None) -> int:
    # Recompute DAILY/WEEKLY/MONTHLY KPI values for one company around the given date.
    period_date = ensure_utc(datetime.fromisoformat(date)) if date else utc_now()
    db = build_database()
    try:
        jobs = build_maintenance_jobs(db)
        result = await jobs.recalculate_company_kpis_now(company_id, period_date)
    finally:
        await db.dispose()
    print(f"attempted={result.attempted}")
    print(f"succeeded={result.succeeded}")
    print(f"failed={result.failed}")
    for failure in result.failures:
        print(f"failure kpi_code={failure.kpi_code} period_type={failure.period_type} error={failure.error}")
    return 0 if result.failed == 0 else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Recalculate KPI values for a company")
    parser.add_argument("--company-id", required=True)
    parser.add_argument("--date", default=None, help="ISO date inside the periods to recompute (default: now)")
    args = parser.parse_args()
    configure_logging()
    return asyncio.run(_recalculate(args.company_id, args.date))


if __name__ == "__main__":
    raise SystemExit(main())
