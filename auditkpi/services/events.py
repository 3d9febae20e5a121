from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from auditkpi.domain.events import SEVERITY_INFO, Severity
from auditkpi.domain.models import SystemEvent
from auditkpi.services.kpi.periods import utc_now


logger = logging.getLogger(__name__)


async def emit_system_event(
    session: AsyncSession,
    *,
    event_type: str,
    company_id: str | None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    user_id: str | None = None,
    payload: dict[str, Any] | None = None,
    severity: Severity = SEVERITY_INFO,
    occurred_at: datetime | None = None,
) -> SystemEvent | None:
    # Notifications are secondary to the facts that caused them, so write failures only log.
    event = SystemEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        company_id=company_id,
        user_id=user_id,
        severity=severity,
        payload_json=payload or {},
        occurred_at=occurred_at or utc_now(),
        is_processed=False,
    )
    try:
        session.add(event)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.warning(
            "system_event_write_failed event_type=%s entity_type=%s entity_id=%s",
            event_type,
            entity_type,
            entity_id,
            exc_info=exc,
        )
        return None
    return event


async def prune_processed_events(session: AsyncSession, *, cutoff: datetime) -> int:
    # Unprocessed events are kept regardless of age so alerting never loses them.
    result = await session.execute(
        delete(SystemEvent).where(SystemEvent.is_processed.is_(True), SystemEvent.processed_at < cutoff)
    )
    return result.rowcount or 0
