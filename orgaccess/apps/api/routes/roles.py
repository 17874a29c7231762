from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from orgaccess.apps.api.deps import Principal, get_admin_context, get_db, require_admin
from orgaccess.apps.api.response import SuccessEnvelope, success_response
from orgaccess.domain.graph import RoleNode
from orgaccess.domain.models import Role
from orgaccess.domain.types import Action
from orgaccess.persistence.repos import rbac as rbac_repo
from orgaccess.services.rbac import admin as role_admin
from orgaccess.services.rbac.admin import AdminContext
from orgaccess.services.rbac.hierarchy import RoleHierarchy
from orgaccess.services.rbac.tenant_scope import TenantScope


router = APIRouter(prefix="/roles", tags=["roles"])


class RoleCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    code: str = Field(min_length=1, max_length=64)
    description: str | None = Field(default=None, max_length=1024)
    parent_role_id: str | None = None

    # Reject unknown fields so tenant_id can never be supplied by the client.
    model_config = {"extra": "forbid"}


class RoleParentRequest(BaseModel):
    # null moves the role to the root of the forest.
    parent_role_id: str | None = None

    model_config = {"extra": "forbid"}


class RoleResponse(BaseModel):
    id: str
    tenant_id: str
    name: str
    code: str
    description: str | None
    parent_role_id: str | None
    is_active: bool


class RoleDeleteResponse(BaseModel):
    id: str
    detached_children: list[str]


class RoleSummary(BaseModel):
    id: str
    code: str
    name: str
    is_active: bool


class RoleLineageResponse(BaseModel):
    id: str
    ancestors: list[RoleSummary]
    descendants: list[RoleSummary]


def _summary(role: RoleNode) -> dict:
    return RoleSummary(id=role.ref.local_id, code=role.code, name=role.name, is_active=role.is_active).model_dump()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[RoleResponse])
async def create_role(
    request: Request,
    payload: RoleCreateRequest,
    _principal: Principal = Depends(require_admin(Action.CREATE)),
    ctx: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await role_admin.create_role(
        db,
        ctx,
        name=payload.name,
        code=payload.code,
        parent_id=payload.parent_role_id,
        description=payload.description,
    )
    return success_response(request=request, data=role_admin.role_payload(role))


@router.patch("/{role_id}/parent", response_model=SuccessEnvelope[RoleResponse])
async def reparent_role(
    role_id: str,
    request: Request,
    payload: RoleParentRequest,
    _principal: Principal = Depends(require_admin(Action.UPDATE)),
    ctx: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await role_admin.reparent_role(db, ctx, role_id=role_id, parent_id=payload.parent_role_id)
    return success_response(request=request, data=role_admin.role_payload(role))


@router.delete("/{role_id}", response_model=SuccessEnvelope[RoleDeleteResponse])
async def delete_role(
    role_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin(Action.DELETE)),
    ctx: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    detached = await role_admin.delete_role(db, ctx, role_id=role_id)
    return success_response(request=request, data={"id": role_id, "detached_children": detached})


@router.post("/{role_id}/activate", response_model=SuccessEnvelope[RoleResponse])
async def activate_role(
    role_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin(Action.UPDATE)),
    ctx: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await role_admin.set_active(db, ctx, kind="role", entity_id=role_id, active=True)
    return success_response(request=request, data=role_admin.role_payload(role))


@router.post("/{role_id}/deactivate", response_model=SuccessEnvelope[RoleResponse])
async def deactivate_role(
    role_id: str,
    request: Request,
    _principal: Principal = Depends(require_admin(Action.UPDATE)),
    ctx: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await role_admin.set_active(db, ctx, kind="role", entity_id=role_id, active=False)
    return success_response(request=request, data=role_admin.role_payload(role))


@router.get("/{role_id}/ancestors", response_model=SuccessEnvelope[RoleLineageResponse])
async def role_lineage(
    role_id: str,
    request: Request,
    principal: Principal = Depends(require_admin(Action.READ)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Ancestors root-first, then every role that inherits from this one.
    scope = TenantScope(principal.tenant_id)
    roles = await rbac_repo.list_roles(db, tenant_id=principal.tenant_id)
    foreign = {row.parent_role_id for row in roles if row.parent_role_id} - {row.id for row in roles}
    owners = await rbac_repo.owners_of(db, Role, foreign)
    hierarchy = RoleHierarchy(scope, rbac_repo.role_nodes(principal.tenant_id, roles, owners))
    ref = scope.ref(role_id)
    descendants = sorted(hierarchy.descendants_of(ref), key=lambda node: node.ref)
    data = {
        "id": role_id,
        "ancestors": [_summary(node) for node in hierarchy.ancestors_of(ref)],
        "descendants": [_summary(node) for node in descendants],
    }
    return success_response(request=request, data=data)
