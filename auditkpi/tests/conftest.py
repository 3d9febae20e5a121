from __future__ import annotations

import pytest

from auditkpi.core.config import Settings
from auditkpi.persistence.db import Database, build_database
from auditkpi.services.kpi.engine import AggregationEngine
from auditkpi.services.kpi.manager import KpiManager
from auditkpi.services.maintenance.jobs import MaintenanceJobs


@pytest.fixture
def settings(tmp_path) -> Settings:
    # A file-backed SQLite database per test keeps concurrent sessions independent.
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'auditkpi.db'}",
        realtime_entity_types_json='["appointments"]',
        kpi_fanout_concurrency=4,
        job_lease_enabled=True,
    )


@pytest.fixture
async def db(settings: Settings) -> Database:
    database = build_database(settings)
    await database.create_all()
    yield database
    await database.dispose()


@pytest.fixture
def engine(db: Database, settings: Settings) -> AggregationEngine:
    return AggregationEngine(db, settings)


@pytest.fixture
def manager(db: Database, engine: AggregationEngine) -> KpiManager:
    return KpiManager(db, engine)


@pytest.fixture
def jobs(db: Database, engine: AggregationEngine, manager: KpiManager, settings: Settings) -> MaintenanceJobs:
    return MaintenanceJobs(db, engine, manager, settings)
