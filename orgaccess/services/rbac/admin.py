from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from orgaccess.core.errors import (
    ConflictError,
    CycleDetectedError,
    NotFoundError,
    OrgAccessError,
    error_code_for,
)
from orgaccess.domain.graph import SharingRuleNode
from orgaccess.domain.models import RecordShare, Role, SharingRule
from orgaccess.domain.types import (
    AuditAction,
    AuditStatus,
    PrincipalKind,
    PrincipalRef,
    SharingRuleType,
    TenantRef,
)
from orgaccess.persistence.repos import rbac as rbac_repo
from orgaccess.services.audit import AccessAuditEvent, AuditSink, emit_event
from orgaccess.services.rbac.hierarchy import RoleHierarchy
from orgaccess.services.rbac.sharing import check_rule_shape
from orgaccess.services.rbac.tenant_scope import TenantScope


logger = logging.getLogger(__name__)

# Entity kinds that support soft (de)activation through is_active.
ACTIVATABLE_KINDS = ("role", "profile", "group", "sharing_rule", "permission", "module")

_PAIR_PRINCIPALS = {
    SharingRuleType.USER_TO_USER: PrincipalKind.USER,
    SharingRuleType.ROLE_TO_ROLE: PrincipalKind.ROLE,
    SharingRuleType.GROUP_TO_GROUP: PrincipalKind.GROUP,
}

# Column names per principal kind on sharing_rules / record_shares.
_SOURCE_COLUMNS = {
    PrincipalKind.USER: "source_user_id",
    PrincipalKind.ROLE: "source_role_id",
    PrincipalKind.GROUP: "source_group_id",
}
_TARGET_COLUMNS = {
    PrincipalKind.USER: "target_user_id",
    PrincipalKind.ROLE: "target_role_id",
    PrincipalKind.GROUP: "target_group_id",
}
_SHARED_WITH_COLUMNS = {
    PrincipalKind.USER: "shared_with_user_id",
    PrincipalKind.ROLE: "shared_with_role_id",
    PrincipalKind.GROUP: "shared_with_group_id",
}


@dataclass
class AdminContext:
    # Who is changing which tenant; carried into every audit event.
    tenant_id: str
    actor_id: str | None
    audit_sink: AuditSink | None = None
    request_context: dict[str, str | None] = field(default_factory=dict)

    @property
    def scope(self) -> TenantScope:
        return TenantScope(self.tenant_id)


def role_payload(role: Role) -> dict[str, Any]:
    return {
        "id": role.id,
        "tenant_id": role.tenant_id,
        "name": role.name,
        "code": role.code,
        "description": role.description,
        "parent_role_id": role.parent_role_id,
        "is_active": role.is_active,
    }


def sharing_rule_payload(rule: SharingRule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "tenant_id": rule.tenant_id,
        "rule_type": rule.rule_type,
        "source_user_id": rule.source_user_id,
        "target_user_id": rule.target_user_id,
        "source_role_id": rule.source_role_id,
        "target_role_id": rule.target_role_id,
        "source_group_id": rule.source_group_id,
        "target_group_id": rule.target_group_id,
        "module_id": rule.module_id,
        "record_id": rule.record_id,
        "shared_with_user_id": rule.shared_with_user_id,
        "shared_with_group_id": rule.shared_with_group_id,
        "shared_with_role_id": rule.shared_with_role_id,
        "is_active": rule.is_active,
    }


async def create_role(
    session: AsyncSession,
    ctx: AdminContext,
    *,
    name: str,
    code: str,
    parent_id: str | None = None,
    description: str | None = None,
) -> Role:
    role_id = uuid4().hex
    try:
        if parent_id is not None:
            await _require_local(session, ctx.scope, "role", parent_id)
        if await rbac_repo.get_role_by_code(session, tenant_id=ctx.tenant_id, code=code) is not None:
            raise ConflictError(f"Role code {code} already exists")
        role = Role(
            id=role_id,
            tenant_id=ctx.tenant_id,
            name=name,
            code=code,
            description=description,
            parent_role_id=parent_id,
            is_active=True,
            created_by=ctx.actor_id,
        )
        session.add(role)
        await _commit(session, f"Role code {code} already exists")
    except OrgAccessError as exc:
        await session.rollback()
        await _emit_failed(ctx, AuditAction.CREATE, "role", role_id, exc, new_values={"code": code})
        raise
    await _emit(ctx, AuditAction.CREATE, "role", role.id, new_values=role_payload(role), role_id=role.id)
    return role


async def reparent_role(
    session: AsyncSession,
    ctx: AdminContext,
    *,
    role_id: str,
    parent_id: str | None,
) -> Role:
    """Move a role under a new parent (or to the root) without ever admitting a cycle.

    The tenant's role rows are locked before the hierarchy is re-read, so the acyclicity check
    and the write happen against the same state.
    """
    scope = ctx.scope
    old_values: dict[str, Any] | None = None
    try:
        rows = await rbac_repo.lock_tenant_roles(session, tenant_id=ctx.tenant_id)
        by_id = {row.id: row for row in rows}
        await _require_local(session, scope, "role", role_id, known=by_id)
        if parent_id is not None:
            await _require_local(session, scope, "role", parent_id, known=by_id)
        role = by_id[role_id]
        old_values = role_payload(role)
        foreign_parents = {
            row.parent_role_id for row in rows if row.parent_role_id and row.parent_role_id not in by_id
        }
        parent_owners = await rbac_repo.owners_of(session, Role, foreign_parents)
        hierarchy = RoleHierarchy(scope, rbac_repo.role_nodes(ctx.tenant_id, rows, parent_owners))
        proposed = scope.ref(parent_id) if parent_id is not None else None
        if hierarchy.would_create_cycle(scope.ref(role_id), proposed):
            raise CycleDetectedError(role_id, parent_id or "")
        role.parent_role_id = parent_id
        await _commit(session, f"Role {role_id} could not be reparented")
    except OrgAccessError as exc:
        await session.rollback()
        logger.info(
            "role_reparent_rejected tenant_id=%s role_id=%s parent_id=%s error=%s",
            ctx.tenant_id,
            role_id,
            parent_id,
            type(exc).__name__,
        )
        await _emit_failed(
            ctx,
            AuditAction.UPDATE,
            "role",
            role_id,
            exc,
            old_values=old_values,
            new_values={"parent_role_id": parent_id},
        )
        raise
    await _emit(
        ctx,
        AuditAction.UPDATE,
        "role",
        role_id,
        old_values=old_values,
        new_values=role_payload(role),
        role_id=role_id,
    )
    return role


async def delete_role(session: AsyncSession, ctx: AdminContext, *, role_id: str) -> list[str]:
    # Children are detached to the root rather than deleted; returns their ids.
    old_values: dict[str, Any] | None = None
    try:
        rows = await rbac_repo.lock_tenant_roles(session, tenant_id=ctx.tenant_id)
        by_id = {row.id: row for row in rows}
        await _require_local(session, ctx.scope, "role", role_id, known=by_id)
        role = by_id[role_id]
        old_values = role_payload(role)
        detached = sorted(row.id for row in rows if row.parent_role_id == role_id)
        for child_id in detached:
            by_id[child_id].parent_role_id = None
        await session.flush()
        await session.delete(role)
        await _commit(session, f"Role {role_id} could not be deleted")
    except OrgAccessError as exc:
        await session.rollback()
        await _emit_failed(ctx, AuditAction.DELETE, "role", role_id, exc, old_values=old_values)
        raise
    await _emit(
        ctx,
        AuditAction.DELETE,
        "role",
        role_id,
        old_values=old_values,
        metadata={"detached_children": detached},
        role_id=role_id,
    )
    return detached


async def set_active(
    session: AsyncSession,
    ctx: AdminContext,
    *,
    kind: str,
    entity_id: str,
    active: bool,
):
    # Soft toggle; assignments and matrix rows stay so reactivation restores the contribution.
    if kind not in ACTIVATABLE_KINDS:
        raise ValueError(f"Unsupported entity kind: {kind}")
    previous: bool | None = None
    try:
        await _require_local(session, ctx.scope, kind, entity_id)
        entity = await rbac_repo.get_entity(session, tenant_id=ctx.tenant_id, kind=kind, entity_id=entity_id)
        if entity is None:
            raise NotFoundError(kind, entity_id)
        previous = bool(entity.is_active)
        entity.is_active = active
        await _commit(session, f"{kind} {entity_id} could not be updated")
    except OrgAccessError as exc:
        await session.rollback()
        await _emit_failed(
            ctx,
            AuditAction.UPDATE,
            kind,
            entity_id,
            exc,
            old_values=None if previous is None else {"is_active": previous},
            new_values={"is_active": active},
        )
        raise
    await _emit(
        ctx,
        AuditAction.UPDATE,
        kind,
        entity_id,
        old_values={"is_active": previous},
        new_values={"is_active": active},
        role_id=entity_id if kind == "role" else None,
    )
    return entity


async def create_sharing_rule(
    session: AsyncSession,
    ctx: AdminContext,
    *,
    rule_type: SharingRuleType | str,
    source_id: str | None = None,
    target_id: str | None = None,
    module_id: str | None = None,
    record_id: str | None = None,
    shared_with_kind: PrincipalKind | str | None = None,
    shared_with_id: str | None = None,
) -> SharingRule:
    """Persist a sharing rule after checking its endpoints against its type and tenant.

    Pair rules take ``source_id``/``target_id`` of the kind named by the rule type. Record-level
    rules take ``module_id``, ``record_id`` and exactly one ``shared_with`` principal.
    """
    scope = ctx.scope
    rule_id = uuid4().hex
    requested: dict[str, Any] = {
        "rule_type": str(getattr(rule_type, "value", rule_type)),
        "source_id": source_id,
        "target_id": target_id,
        "module_id": module_id,
        "record_id": record_id,
        "shared_with_kind": str(getattr(shared_with_kind, "value", shared_with_kind)) if shared_with_kind else None,
        "shared_with_id": shared_with_id,
    }
    try:
        kind = SharingRuleType(rule_type)
        pair_kind = _PAIR_PRINCIPALS.get(kind)
        source = await _principal(session, scope, pair_kind, source_id)
        target = await _principal(session, scope, pair_kind, target_id)
        shared_with = await _principal(
            session, scope, PrincipalKind(shared_with_kind) if shared_with_kind else None, shared_with_id
        )
        module = None
        if module_id is not None:
            module = await _require_local(session, scope, "module", module_id)
        check_rule_shape(
            SharingRuleNode(
                ref=scope.ref(rule_id),
                rule_type=kind,
                source=source,
                target=target,
                module=module,
                record_id=record_id,
                shared_with=shared_with,
            )
        )
        columns: dict[str, Any] = {}
        if source is not None:
            columns[_SOURCE_COLUMNS[source.kind]] = source.ref.local_id
        if target is not None:
            columns[_TARGET_COLUMNS[target.kind]] = target.ref.local_id
        if shared_with is not None:
            columns[_SHARED_WITH_COLUMNS[shared_with.kind]] = shared_with.ref.local_id
        rule = SharingRule(
            id=rule_id,
            tenant_id=ctx.tenant_id,
            rule_type=kind.value,
            module_id=module_id,
            record_id=record_id,
            is_active=True,
            created_by=ctx.actor_id,
            **columns,
        )
        session.add(rule)
        await _commit(session, f"Sharing rule {rule_id} could not be created")
    except (OrgAccessError, ValueError) as exc:
        await session.rollback()
        await _emit_failed(ctx, AuditAction.CREATE, "sharing_rule", rule_id, exc, new_values=requested)
        raise
    await _emit(
        ctx,
        AuditAction.CREATE,
        "sharing_rule",
        rule.id,
        new_values=sharing_rule_payload(rule),
        module_id=module_id,
    )
    return rule


async def share_record(
    session: AsyncSession,
    ctx: AdminContext,
    *,
    module_id: str,
    record_id: str,
    shared_with_kind: PrincipalKind | str,
    shared_with_id: str,
) -> RecordShare:
    scope = ctx.scope
    share_id = uuid4().hex
    try:
        await _require_local(session, scope, "module", module_id)
        principal = await _principal(session, scope, PrincipalKind(shared_with_kind), shared_with_id)
        share = RecordShare(
            id=share_id,
            tenant_id=ctx.tenant_id,
            module_id=module_id,
            record_id=record_id,
            created_by=ctx.actor_id,
            **{_SHARED_WITH_COLUMNS[principal.kind]: principal.ref.local_id},
        )
        session.add(share)
        await _commit(session, f"Record share {share_id} could not be created")
    except (OrgAccessError, ValueError) as exc:
        await session.rollback()
        await _emit_failed(
            ctx,
            AuditAction.CREATE,
            "record_share",
            share_id,
            exc,
            new_values={"module_id": module_id, "record_id": record_id},
        )
        raise
    await _emit(
        ctx,
        AuditAction.CREATE,
        "record_share",
        share.id,
        new_values={
            "module_id": module_id,
            "record_id": record_id,
            "shared_with_kind": principal.kind.value,
            "shared_with_id": principal.ref.local_id,
        },
        module_id=module_id,
    )
    return share


async def _require_local(
    session: AsyncSession,
    scope: TenantScope,
    kind: str,
    local_id: str,
    *,
    known: dict[str, Any] | None = None,
) -> TenantRef:
    if known is not None and local_id in known:
        return scope.ref(local_id)
    owner = await rbac_repo.owner_of(session, kind, local_id)
    ref = scope.require_owner(kind, local_id, owner)
    if known is not None and local_id not in known:
        # Owned by this tenant yet absent from the locked rows: deleted concurrently.
        raise NotFoundError(kind, local_id)
    return ref


async def _principal(
    session: AsyncSession,
    scope: TenantScope,
    kind: PrincipalKind | None,
    local_id: str | None,
) -> PrincipalRef | None:
    if local_id is None:
        return None
    if kind is None:
        raise ValueError("Principal kind is required when a principal id is given")
    ref = await _require_local(session, scope, kind.value, local_id)
    return PrincipalRef(kind=kind, ref=ref)


async def _commit(session: AsyncSession, conflict_message: str) -> None:
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(conflict_message) from exc


async def _emit(
    ctx: AdminContext,
    action: AuditAction,
    entity_type: str,
    entity_id: str | None,
    *,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    module_id: str | None = None,
    role_id: str | None = None,
) -> None:
    await emit_event(
        ctx.audit_sink,
        AccessAuditEvent(
            tenant_id=ctx.tenant_id,
            actor_id=ctx.actor_id,
            action=action,
            status=AuditStatus.SUCCESS,
            entity_type=entity_type,
            entity_id=entity_id,
            module_id=module_id,
            role_id=role_id,
            old_values=old_values,
            new_values=new_values,
            metadata=metadata or {},
            request_id=ctx.request_context.get("request_id"),
            ip_address=ctx.request_context.get("ip_address"),
            user_agent=ctx.request_context.get("user_agent"),
        ),
    )


async def _emit_failed(
    ctx: AdminContext,
    action: AuditAction,
    entity_type: str,
    entity_id: str | None,
    error: Exception,
    *,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
) -> None:
    await emit_event(
        ctx.audit_sink,
        AccessAuditEvent(
            tenant_id=ctx.tenant_id,
            actor_id=ctx.actor_id,
            action=action,
            status=AuditStatus.FAILED,
            entity_type=entity_type,
            entity_id=entity_id,
            old_values=old_values,
            new_values=new_values,
            metadata={"error": str(error)},
            error_code=error_code_for(error),
            request_id=ctx.request_context.get("request_id"),
            ip_address=ctx.request_context.get("ip_address"),
            user_agent=ctx.request_context.get("user_agent"),
        ),
    )

