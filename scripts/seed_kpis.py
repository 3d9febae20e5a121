from __future__ import annotations

import argparse
import asyncio

from auditkpi.core.logging import configure_logging
from auditkpi.persistence.db import build_database
from auditkpi.services.kpi.engine import AggregationEngine
from auditkpi.services.kpi.manager import KpiManager


async def _seed(create_schema: bool) -> None:
    # Insert the predefined appointment KPIs; existing codes are left untouched.
    db = build_database()
    try:
        if create_schema:
            await db.create_all()
        manager = KpiManager(db, AggregationEngine(db))
        created = await manager.seed_default_kpis()
    finally:
        await db.dispose()
    print(f"created={len(created)}")
    for code in created:
        print(f"kpi_code={code}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed default KPI configurations")
    # Local demos without alembic can bootstrap tables directly.
    parser.add_argument("--create-schema", action="store_true")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(_seed(args.create_schema))


if __name__ == "__main__":
    main()
