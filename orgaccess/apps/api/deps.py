from __future__ import annotations

import logging
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from orgaccess.apps.api.errors import forbidden
from orgaccess.core.config import get_settings
from orgaccess.domain.types import Action
from orgaccess.persistence.db import get_session
from orgaccess.persistence.repos import rbac as rbac_repo
from orgaccess.services.audit import AuditSink, DatabaseAuditSink, get_request_context
from orgaccess.services.rbac.admin import AdminContext
from orgaccess.services.rbac.resolver import AccessDecisionResolver, GraphSource


logger = logging.getLogger(__name__)

_default_audit_sink = DatabaseAuditSink(best_effort=True)
_default_graph_source = rbac_repo.SqlGraphSource()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One session per request, closed when the response is sent.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Identity asserted by the upstream gateway after it verified credentials.
    tenant_id: str
    actor_id: str


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_current_principal(request: Request) -> Principal:
    settings = get_settings()
    tenant_id = (request.headers.get(settings.auth_tenant_header) or "").strip()
    actor_id = (request.headers.get(settings.auth_actor_header) or "").strip()
    if not tenant_id:
        raise _auth_error(f"{settings.auth_tenant_header} header is required")
    if not actor_id:
        raise _auth_error(f"{settings.auth_actor_header} header is required")
    return Principal(tenant_id=tenant_id, actor_id=actor_id)


def get_audit_sink() -> AuditSink:
    return _default_audit_sink


def get_graph_source() -> GraphSource:
    return _default_graph_source


def get_resolver(
    source: GraphSource = Depends(get_graph_source),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> AccessDecisionResolver:
    return AccessDecisionResolver(source, audit_sink=audit_sink)


def get_admin_context(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> AdminContext:
    return AdminContext(
        tenant_id=principal.tenant_id,
        actor_id=principal.actor_id,
        audit_sink=audit_sink,
        request_context=get_request_context(request),
    )


def require_permission(module_code: str, action: Action | str):
    """Dependency factory that lets a route through only on an allow decision.

    The module is looked up by code inside the caller's tenant; an unknown module denies.
    """
    requested = Action(action)

    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
        resolver: AccessDecisionResolver = Depends(get_resolver),
    ) -> Principal:
        module = await rbac_repo.get_module_by_code(db, tenant_id=principal.tenant_id, code=module_code)
        if module is None:
            logger.info(
                "permission_module_missing tenant_id=%s module_code=%s",
                principal.tenant_id,
                module_code,
            )
            raise forbidden("AUTH_FORBIDDEN", f"Module {module_code} is not available")
        decision = await resolver.evaluate(
            principal.tenant_id,
            principal.actor_id,
            module.id,
            None,
            requested,
            request_context=get_request_context(request),
        )
        if not decision.allowed:
            raise forbidden("AUTH_FORBIDDEN", f"{requested.value} on {module_code} denied: {decision.reason}")
        return principal

    return _dependency


def require_admin(action: Action | str):
    # Role and sharing administration is gated by the configured admin module.
    return require_permission(get_settings().authz_admin_module_code, action)
