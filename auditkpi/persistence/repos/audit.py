from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from auditkpi.domain.models import AuditRecord


async def count_by_entity_and_change_kind(
    session: AsyncSession,
    *,
    company_id: str,
    start: datetime,
    end: datetime,
) -> dict[str, dict[str, int]]:
    result = await session.execute(
        select(AuditRecord.entity_type, AuditRecord.change_kind, func.count(AuditRecord.id))
        .where(
            AuditRecord.company_id == company_id,
            AuditRecord.event_at >= start,
            AuditRecord.event_at < end,
        )
        .group_by(AuditRecord.entity_type, AuditRecord.change_kind)
    )
    stats: dict[str, dict[str, int]] = {}
    for entity_type, change_kind, count in result.all():
        stats.setdefault(str(entity_type), {})[str(change_kind)] = int(count or 0)
    return stats


async def oldest_before(session: AsyncSession, *, cutoff: datetime, limit: int) -> list[AuditRecord]:
    result = await session.execute(
        select(AuditRecord).where(AuditRecord.event_at < cutoff).order_by(AuditRecord.id.asc()).limit(limit)
    )
    return list(result.scalars().all())


async def delete_by_ids(session: AsyncSession, ids: list[int]) -> int:
    if not ids:
        return 0
    result = await session.execute(delete(AuditRecord).where(AuditRecord.id.in_(ids)))
    return result.rowcount or 0
