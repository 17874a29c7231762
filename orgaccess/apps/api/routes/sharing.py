from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from orgaccess.apps.api.deps import Principal, get_admin_context, get_db, require_admin
from orgaccess.apps.api.response import SuccessEnvelope, success_response
from orgaccess.domain.types import Action, PrincipalKind, SharingRuleType
from orgaccess.services.rbac import admin as rbac_admin
from orgaccess.services.rbac.admin import ACTIVATABLE_KINDS, AdminContext


router = APIRouter(tags=["sharing"])


class SharingRuleCreateRequest(BaseModel):
    rule_type: SharingRuleType
    source_id: str | None = None
    target_id: str | None = None
    module_id: str | None = None
    record_id: str | None = Field(default=None, max_length=256)
    shared_with_kind: PrincipalKind | None = None
    shared_with_id: str | None = None

    model_config = {"extra": "forbid"}


class SharingRuleResponse(BaseModel):
    id: str
    tenant_id: str
    rule_type: str
    source_user_id: str | None
    target_user_id: str | None
    source_role_id: str | None
    target_role_id: str | None
    source_group_id: str | None
    target_group_id: str | None
    module_id: str | None
    record_id: str | None
    shared_with_user_id: str | None
    shared_with_group_id: str | None
    shared_with_role_id: str | None
    is_active: bool


class RecordShareCreateRequest(BaseModel):
    module_id: str = Field(min_length=1)
    record_id: str = Field(min_length=1, max_length=256)
    shared_with_kind: PrincipalKind
    shared_with_id: str = Field(min_length=1)

    model_config = {"extra": "forbid"}


class RecordShareResponse(BaseModel):
    id: str
    module_id: str
    record_id: str
    shared_with_kind: str
    shared_with_id: str


class ActiveStateRequest(BaseModel):
    is_active: bool

    model_config = {"extra": "forbid"}


class ActiveStateResponse(BaseModel):
    kind: str
    id: str
    is_active: bool


@router.post(
    "/sharing-rules",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[SharingRuleResponse],
)
async def create_sharing_rule(
    request: Request,
    payload: SharingRuleCreateRequest,
    _principal: Principal = Depends(require_admin(Action.CREATE)),
    ctx: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        rule = await rbac_admin.create_sharing_rule(
            db,
            ctx,
            rule_type=payload.rule_type,
            source_id=payload.source_id,
            target_id=payload.target_id,
            module_id=payload.module_id,
            record_id=payload.record_id,
            shared_with_kind=payload.shared_with_kind,
            shared_with_id=payload.shared_with_id,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "VALIDATION_ERROR", "message": str(exc)},
        ) from exc
    return success_response(request=request, data=rbac_admin.sharing_rule_payload(rule))


@router.post(
    "/record-shares",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[RecordShareResponse],
)
async def create_record_share(
    request: Request,
    payload: RecordShareCreateRequest,
    _principal: Principal = Depends(require_admin(Action.CREATE)),
    ctx: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    share = await rbac_admin.share_record(
        db,
        ctx,
        module_id=payload.module_id,
        record_id=payload.record_id,
        shared_with_kind=payload.shared_with_kind,
        shared_with_id=payload.shared_with_id,
    )
    data = {
        "id": share.id,
        "module_id": share.module_id,
        "record_id": share.record_id,
        "shared_with_kind": payload.shared_with_kind.value,
        "shared_with_id": payload.shared_with_id,
    }
    return success_response(request=request, data=data)


@router.put("/entities/{kind}/{entity_id}/active", response_model=SuccessEnvelope[ActiveStateResponse])
async def set_entity_active(
    kind: Literal["role", "profile", "group", "sharing_rule", "permission", "module"],
    entity_id: str,
    request: Request,
    payload: ActiveStateRequest,
    _principal: Principal = Depends(require_admin(Action.UPDATE)),
    ctx: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if kind not in ACTIVATABLE_KINDS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "UNSUPPORTED_KIND", "message": f"{kind} cannot be activated"},
        )
    entity = await rbac_admin.set_active(db, ctx, kind=kind, entity_id=entity_id, active=payload.is_active)
    return success_response(request=request, data={"kind": kind, "id": entity.id, "is_active": entity.is_active})
