from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from uuid import uuid4

from sqlalchemy import delete, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from auditkpi.domain.models import JobLease
from auditkpi.persistence.db import Database
from auditkpi.services.kpi.periods import utc_now


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobLeaseHandle:
    job_name: str
    token: str
    expires_at: datetime


async def acquire_job_lease(db: Database, job_name: str, *, ttl_s: int) -> JobLeaseHandle | None:
    """Take ownership of ``job_name`` until the lease expires; None when another owner holds it."""
    token = uuid4().hex
    now = utc_now()
    expires_at = now + timedelta(seconds=max(5, int(ttl_s)))
    insert = pg_insert if db.dialect_name == "postgresql" else sqlite_insert
    async with db.session() as session:
        try:
            # Take over an expired lease first, then try to create the row for a first run.
            taken = await session.execute(
                update(JobLease)
                .where(JobLease.job_name == job_name, JobLease.expires_at < now)
                .values(owner_token=token, acquired_at=now, expires_at=expires_at)
            )
            acquired = bool(taken.rowcount)
            if not acquired:
                created = await session.execute(
                    insert(JobLease)
                    .values(job_name=job_name, owner_token=token, acquired_at=now, expires_at=expires_at)
                    .on_conflict_do_nothing(index_elements=["job_name"])
                )
                acquired = bool(created.rowcount)
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("job_lease_acquire_failed job_name=%s", job_name, exc_info=exc)
            return None
    if not acquired:
        logger.info("job_lease_held_elsewhere job_name=%s", job_name)
        return None
    return JobLeaseHandle(job_name=job_name, token=token, expires_at=expires_at)


async def release_job_lease(db: Database, lease: JobLeaseHandle) -> None:
    # Release only if this worker still owns the token so a newer holder is never clobbered.
    async with db.session() as session:
        try:
            await session.execute(
                delete(JobLease).where(JobLease.job_name == lease.job_name, JobLease.owner_token == lease.token)
            )
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning("job_lease_release_failed job_name=%s", lease.job_name, exc_info=exc)
