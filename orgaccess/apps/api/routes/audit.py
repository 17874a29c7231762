from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from orgaccess.apps.api.deps import Principal, get_db, require_admin
from orgaccess.apps.api.response import SuccessEnvelope, success_response
from orgaccess.domain.models import AuditEvent
from orgaccess.domain.types import Action
from orgaccess.persistence.repos import audit as audit_repo


router = APIRouter(prefix="/audit", tags=["audit"])


class AuditEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    occurred_at: datetime
    tenant_id: str | None
    actor_id: str | None
    role_id: str | None
    action: str
    status: str
    module_id: str | None
    entity_type: str | None
    entity_id: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    metadata_json: dict[str, Any] | None
    request_id: str | None
    error_code: str | None


class AuditEventsPage(BaseModel):
    items: list[AuditEventResponse]
    next_offset: int | None


def _to_response(event: AuditEvent) -> dict[str, Any]:
    return AuditEventResponse.model_validate(event).model_dump(mode="json")


@router.get("/events", response_model=SuccessEnvelope[AuditEventsPage])
async def list_audit_events(
    request: Request,
    action: str | None = None,
    status: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    actor_id: str | None = None,
    module_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_admin(Action.READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Always the caller's tenant; there is no cross-tenant audit view.
    try:
        events = await audit_repo.list_events(
            db,
            tenant_id=principal.tenant_id,
            action=action,
            status=status,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            module_id=module_id,
            occurred_from=occurred_from,
            occurred_to=occurred_to,
            offset=offset,
            limit=limit + 1,
        )
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=500,
            detail={"code": "INTERNAL_ERROR", "message": "Database error while fetching audit events"},
        ) from exc

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit
    data = {"items": [_to_response(event) for event in events], "next_offset": next_offset}
    return success_response(request=request, data=data)


@router.get("/events/{event_id}", response_model=SuccessEnvelope[AuditEventResponse])
async def get_audit_event(
    event_id: int,
    request: Request,
    principal: Principal = Depends(require_admin(Action.READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    event = await audit_repo.get_event_by_id(db, tenant_id=principal.tenant_id, event_id=event_id)
    if event is None:
        # Events of other tenants are indistinguishable from missing ones.
        raise HTTPException(
            status_code=404,
            detail={"code": "NOT_FOUND", "message": "Audit event not found"},
        )
    return success_response(request=request, data=_to_response(event))
