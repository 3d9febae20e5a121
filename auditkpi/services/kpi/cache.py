from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import hashlib
import json
import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auditkpi.domain.models import QueryCacheEntry
from auditkpi.services.kpi.periods import utc_now


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheStats:
    entries: int
    total_hits: int
    avg_hits: float
    avg_result_size: float


def compute_query_hash(payload: Any) -> str:
    # Sorted keys make the hash independent of field insertion order.
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


async def read_cached(session: AsyncSession, *, query_hash: str) -> list[dict[str, Any]] | None:
    """Return a live cached result and bump its hit statistics, or None on miss or error."""
    now = utc_now()
    try:
        entry = (
            await session.execute(
                select(QueryCacheEntry).where(
                    QueryCacheEntry.query_hash == query_hash,
                    QueryCacheEntry.expires_at > now,
                )
            )
        ).scalar_one_or_none()
        if entry is None:
            return None
        entry.hit_count = int(entry.hit_count or 0) + 1
        entry.last_accessed_at = now
        result = list(entry.result_json or [])
        await session.commit()
        return result
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning("query_cache_read_failed query_hash=%s", query_hash, exc_info=exc)
        return None


async def write_cached(
    session: AsyncSession,
    *,
    query_hash: str,
    query_params: dict[str, Any],
    result: list[dict[str, Any]],
    company_id: str | None,
    entity_type: str | None,
    ttl_minutes: int,
) -> bool:
    # Refreshing an existing key resets its hit count; the cache is advisory so failures only log.
    now = utc_now()
    expires_at = now + timedelta(minutes=ttl_minutes)
    try:
        result_size = len(json.dumps(result, default=str).encode("utf-8"))
        entry = (
            await session.execute(select(QueryCacheEntry).where(QueryCacheEntry.query_hash == query_hash))
        ).scalar_one_or_none()
        if entry is None:
            session.add(
                QueryCacheEntry(
                    query_hash=query_hash,
                    company_id=company_id,
                    entity_type=entity_type,
                    query_params=query_params,
                    result_json=result,
                    result_size=result_size,
                    hit_count=0,
                    last_accessed_at=None,
                    calculated_at=now,
                    expires_at=expires_at,
                )
            )
        else:
            entry.result_json = result
            entry.result_size = result_size
            entry.calculated_at = now
            entry.expires_at = expires_at
            entry.hit_count = 0
        await session.commit()
        return True
    except (SQLAlchemyError, TypeError, ValueError) as exc:
        await session.rollback()
        logger.warning("query_cache_write_failed query_hash=%s", query_hash, exc_info=exc)
        return False


async def purge_expired(session: AsyncSession, *, now: datetime | None = None) -> int:
    result = await session.execute(delete(QueryCacheEntry).where(QueryCacheEntry.expires_at < (now or utc_now())))
    return result.rowcount or 0


async def cache_statistics(session: AsyncSession) -> CacheStats:
    row = (
        await session.execute(
            select(
                func.count(QueryCacheEntry.id),
                func.coalesce(func.sum(QueryCacheEntry.hit_count), 0),
                func.avg(QueryCacheEntry.hit_count),
                func.avg(QueryCacheEntry.result_size),
            )
        )
    ).one()
    return CacheStats(
        entries=int(row[0] or 0),
        total_hits=int(row[1] or 0),
        avg_hits=round(float(row[2] or 0), 2),
        avg_result_size=round(float(row[3] or 0), 2),
    )


async def frequently_accessed(session: AsyncSession, *, since: datetime, limit: int = 10) -> list[QueryCacheEntry]:
    result = await session.execute(
        select(QueryCacheEntry)
        .where(QueryCacheEntry.last_accessed_at >= since)
        .order_by(QueryCacheEntry.hit_count.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
