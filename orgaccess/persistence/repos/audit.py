from __future__ import annotations

from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from orgaccess.domain.models import AuditEvent
from orgaccess.persistence.guards import scoped_select


# Equality filters accepted by the audit listing, keyed by query parameter name.
_EQUALITY_FILTERS = {
    "action": AuditEvent.action,
    "status": AuditEvent.status,
    "entity_type": AuditEvent.entity_type,
    "entity_id": AuditEvent.entity_id,
    "actor_id": AuditEvent.actor_id,
    "module_id": AuditEvent.module_id,
}


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
    **filters: str | None,
) -> list[AuditEvent]:
    """Page through one tenant's decision and change events, newest first."""
    criteria = []
    for name, value in filters.items():
        column = _EQUALITY_FILTERS.get(name)
        if column is None:
            raise ValueError(f"Unsupported audit filter: {name}")
        if value:
            criteria.append(column == value)
    if occurred_from:
        criteria.append(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        criteria.append(AuditEvent.occurred_at <= occurred_to)

    stmt = (
        scoped_select(AuditEvent, tenant_id, *criteria)
        .order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
        .offset(offset)
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_event_by_id(session: AsyncSession, *, tenant_id: str, event_id: int) -> AuditEvent | None:
    # Another tenant's event reads as missing.
    result = await session.execute(scoped_select(AuditEvent, tenant_id, AuditEvent.id == event_id))
    return result.scalar_one_or_none()
