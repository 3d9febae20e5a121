from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auditkpi.domain.models import Company


@dataclass(frozen=True)
class CompanyRef:
    id: str
    name: str


async def list_active_companies(session: AsyncSession) -> list[CompanyRef]:
    # Batch jobs only need (id, name); avoid loading full rows.
    result = await session.execute(
        select(Company.id, Company.name).where(Company.is_active.is_(True)).order_by(Company.id.asc())
    )
    return [CompanyRef(id=str(row[0]), name=str(row[1])) for row in result.all()]
