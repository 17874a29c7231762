from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Mapping

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orgaccess.domain.graph import (
    GroupNode,
    ModuleNode,
    PermissionNode,
    ProfileNode,
    RecordShareNode,
    RoleNode,
    SharingRuleNode,
    TenantGraph,
    UserNode,
)
from orgaccess.domain.models import (
    Group,
    Module,
    Permission,
    Profile,
    ProfilePermission,
    RecordShare,
    Role,
    RoleProfile,
    SharingRule,
    User,
    UserGroup,
    UserRole,
)
from orgaccess.domain.types import Action, Effect, PrincipalKind, PrincipalRef, SharingRuleType, TenantRef
from orgaccess.persistence.db import SessionLocal, begin_snapshot
from orgaccess.persistence.guards import require_tenant_id, scoped_select


# Entity kinds whose owning tenant can be looked up by bare id.
OWNED_MODELS = {
    "user": User,
    "module": Module,
    "role": Role,
    "profile": Profile,
    "permission": Permission,
    "group": Group,
    "sharing_rule": SharingRule,
    "record_share": RecordShare,
}


async def owners_of(session: AsyncSession, model, ids: Iterable[str]) -> dict[str, str]:
    # Unscoped on purpose: only ownership is read so foreign references can be rejected.
    wanted = sorted({item for item in ids if item})
    if not wanted:
        return {}
    result = await session.execute(select(model.id, model.tenant_id).where(model.id.in_(wanted)))
    return {row_id: tenant_id for row_id, tenant_id in result.all()}


def owned_model(kind: str):
    model = OWNED_MODELS.get(kind)
    if model is None:
        raise ValueError(f"Unknown entity kind: {kind}")
    return model


async def owner_of(session: AsyncSession, kind: str, local_id: str) -> str | None:
    owners = await owners_of(session, owned_model(kind), [local_id])
    return owners.get(local_id)


async def get_entity(session: AsyncSession, *, tenant_id: str, kind: str, entity_id: str):
    # Fetch any owned entity by kind with tenant scoping.
    model = owned_model(kind)
    result = await session.execute(scoped_select(model, tenant_id, model.id == entity_id))
    return result.scalar_one_or_none()


async def get_role(session: AsyncSession, *, tenant_id: str, role_id: str) -> Role | None:
    result = await session.execute(scoped_select(Role, tenant_id, Role.id == role_id))
    return result.scalar_one_or_none()


async def get_role_by_code(session: AsyncSession, *, tenant_id: str, code: str) -> Role | None:
    result = await session.execute(scoped_select(Role, tenant_id, Role.code == code))
    return result.scalar_one_or_none()


async def get_module_by_code(session: AsyncSession, *, tenant_id: str, code: str) -> Module | None:
    result = await session.execute(
        scoped_select(Module, tenant_id, Module.code == code)
    )
    return result.scalar_one_or_none()


async def list_roles(session: AsyncSession, *, tenant_id: str) -> list[Role]:
    result = await session.execute(scoped_select(Role, tenant_id).order_by(Role.id.asc()))
    return list(result.scalars().all())


async def lock_tenant_roles(session: AsyncSession, *, tenant_id: str) -> list[Role]:
    # Serialize hierarchy writes per tenant so concurrent reparents cannot interleave into a cycle.
    result = await session.execute(
        scoped_select(Role, tenant_id).order_by(Role.id.asc()).with_for_update()
    )
    return list(result.scalars().all())


def role_nodes(tenant_id: str, roles: Iterable[Role], parent_owners: dict[str, str]) -> dict[TenantRef, RoleNode]:
    # Build hierarchy nodes from rows; foreign parents keep their owning tenant.
    rows = list(roles)
    local_ids = {role.id for role in rows}
    nodes: dict[TenantRef, RoleNode] = {}
    for role in rows:
        parent = None
        if role.parent_role_id is not None:
            parent = _resolve_ref(tenant_id, role.parent_role_id, local_ids, parent_owners)
        ref = TenantRef(tenant_id, role.id)
        nodes[ref] = RoleNode(ref=ref, code=role.code, name=role.name, parent=parent, is_active=role.is_active)
    return nodes


async def load_tenant_graph(session: AsyncSession, *, tenant_id: str) -> TenantGraph:
    """Read one tenant's access graph in a single pass.

    Call ``begin_snapshot`` on the session first for a consistent graph. Every table read
    carries the tenant predicate. Ids referenced by plain foreign keys that fall outside
    the tenant are resolved to their owner so the engine can reject them.
    """
    require_tenant_id(tenant_id)
    users = await _scoped_rows(session, User, tenant_id)
    modules = await _scoped_rows(session, Module, tenant_id)
    roles = await _scoped_rows(session, Role, tenant_id)
    profiles = await _scoped_rows(session, Profile, tenant_id)
    permissions = await _scoped_rows(session, Permission, tenant_id)
    groups = await _scoped_rows(session, Group, tenant_id)
    profile_permissions = await _scoped_rows(session, ProfilePermission, tenant_id)
    role_profiles = await _scoped_rows(session, RoleProfile, tenant_id)
    user_roles = await _scoped_rows(session, UserRole, tenant_id)
    user_groups = await _scoped_rows(session, UserGroup, tenant_id)
    sharing_rules = await _scoped_rows(session, SharingRule, tenant_id)
    record_shares = await _scoped_rows(session, RecordShare, tenant_id)

    local = {
        "user": {row.id for row in users},
        "module": {row.id for row in modules},
        "role": {row.id for row in roles},
        "profile": {row.id for row in profiles},
        "permission": {row.id for row in permissions},
        "group": {row.id for row in groups},
    }
    referenced: dict[str, set[str]] = {kind: set() for kind in local}
    referenced["role"].update(row.parent_role_id for row in roles if row.parent_role_id)
    # Composite keys keep assignments in-tenant on Postgres; re-check for stores that do not enforce them.
    referenced["role"].update(row.role_id for row in user_roles)
    referenced["role"].update(row.role_id for row in role_profiles)
    referenced["group"].update(row.group_id for row in user_groups)
    referenced["profile"].update(row.profile_id for row in role_profiles)
    referenced["profile"].update(row.profile_id for row in profile_permissions)
    referenced["permission"].update(row.permission_id for row in profile_permissions)
    for rule in sharing_rules:
        referenced["user"].update(filter(None, (rule.source_user_id, rule.target_user_id, rule.shared_with_user_id)))
        referenced["role"].update(filter(None, (rule.source_role_id, rule.target_role_id, rule.shared_with_role_id)))
        referenced["group"].update(
            filter(None, (rule.source_group_id, rule.target_group_id, rule.shared_with_group_id))
        )
        if rule.module_id:
            referenced["module"].add(rule.module_id)
    for share in record_shares:
        referenced["user"].update(filter(None, (share.shared_with_user_id,)))
        referenced["role"].update(filter(None, (share.shared_with_role_id,)))
        referenced["group"].update(filter(None, (share.shared_with_group_id,)))
        referenced["module"].add(share.module_id)
    owners: dict[str, dict[str, str]] = {}
    for kind, ids in referenced.items():
        owners[kind] = await owners_of(session, OWNED_MODELS[kind], ids - local[kind])

    def ref(kind: str, local_id: str) -> TenantRef:
        return _resolve_ref(tenant_id, local_id, local[kind], owners[kind])

    def principal(kind: PrincipalKind, local_id: str | None) -> PrincipalRef | None:
        if local_id is None:
            return None
        return PrincipalRef(kind=kind, ref=ref(kind.value, local_id))

    graph = TenantGraph(tenant_id=tenant_id)
    graph.users = {
        graph.ref(row.id): UserNode(ref=graph.ref(row.id), username=row.username, status=row.status) for row in users
    }
    graph.modules = {
        graph.ref(row.id): ModuleNode(ref=graph.ref(row.id), code=row.code, is_active=row.is_active)
        for row in modules
    }
    graph.roles = role_nodes(tenant_id, roles, owners["role"])
    graph.profiles = {
        graph.ref(row.id): ProfileNode(ref=graph.ref(row.id), code=row.code, is_active=row.is_active)
        for row in profiles
    }
    graph.permissions = {
        graph.ref(row.id): PermissionNode(
            ref=graph.ref(row.id),
            module=graph.ref(row.module_id),
            action=Action(row.action),
            is_active=row.is_active,
        )
        for row in permissions
    }
    graph.groups = {
        graph.ref(row.id): GroupNode(ref=graph.ref(row.id), name=row.name, is_active=row.is_active) for row in groups
    }

    matrix: dict[TenantRef, dict[TenantRef, Effect]] = {}
    for row in profile_permissions:
        effects = matrix.setdefault(ref("profile", row.profile_id), {})
        effects[ref("permission", row.permission_id)] = Effect(row.effect)
    graph.profile_permissions = matrix
    graph.role_profiles = _group_pairs(
        (ref("role", row.role_id), ref("profile", row.profile_id)) for row in role_profiles
    )
    graph.user_roles = _group_pairs((graph.ref(row.user_id), ref("role", row.role_id)) for row in user_roles)
    graph.user_groups = _group_pairs((graph.ref(row.user_id), ref("group", row.group_id)) for row in user_groups)

    graph.sharing_rules = tuple(
        SharingRuleNode(
            ref=graph.ref(rule.id),
            rule_type=SharingRuleType(rule.rule_type),
            source=principal(PrincipalKind.USER, rule.source_user_id)
            or principal(PrincipalKind.ROLE, rule.source_role_id)
            or principal(PrincipalKind.GROUP, rule.source_group_id),
            target=principal(PrincipalKind.USER, rule.target_user_id)
            or principal(PrincipalKind.ROLE, rule.target_role_id)
            or principal(PrincipalKind.GROUP, rule.target_group_id),
            module=ref("module", rule.module_id) if rule.module_id else None,
            record_id=rule.record_id,
            shared_with=principal(PrincipalKind.USER, rule.shared_with_user_id)
            or principal(PrincipalKind.ROLE, rule.shared_with_role_id)
            or principal(PrincipalKind.GROUP, rule.shared_with_group_id),
            is_active=rule.is_active,
        )
        for rule in sharing_rules
    )
    graph.record_shares = tuple(
        RecordShareNode(
            ref=graph.ref(share.id),
            module=ref("module", share.module_id),
            record_id=share.record_id,
            shared_with=principal(PrincipalKind.USER, share.shared_with_user_id)
            or principal(PrincipalKind.ROLE, share.shared_with_role_id)
            or principal(PrincipalKind.GROUP, share.shared_with_group_id),
        )
        for share in record_shares
    )
    return graph


class SqlGraphSource:
    # One session and one snapshot transaction per evaluation; owner lookups read the same snapshot.

    async def load(
        self, tenant_id: str, *, lookups: Mapping[str, Iterable[str]] | None = None
    ) -> TenantGraph:
        async with SessionLocal() as session:
            await begin_snapshot(session)
            owners: dict[tuple[str, str], str] = {}
            for kind, ids in (lookups or {}).items():
                found = await owners_of(session, owned_model(kind), ids)
                owners.update({(kind, local_id): owner for local_id, owner in found.items()})
            graph = await load_tenant_graph(session, tenant_id=tenant_id)
            return replace(graph, owners=owners)


async def _scoped_rows(session: AsyncSession, model, tenant_id: str) -> list:
    result = await session.execute(scoped_select(model, tenant_id))
    return list(result.scalars().all())


def _resolve_ref(tenant_id: str, local_id: str, local_ids: set[str], owners: dict[str, str]) -> TenantRef:
    if local_id in local_ids:
        return TenantRef(tenant_id, local_id)
    # Unknown ids stay in scope and miss on lookup; foreign ids carry their owner.
    return TenantRef(owners.get(local_id, tenant_id), local_id)


def _group_pairs(pairs: Iterable[tuple[TenantRef, TenantRef]]) -> dict[TenantRef, tuple[TenantRef, ...]]:
    grouped: dict[TenantRef, list[TenantRef]] = {}
    for key, value in pairs:
        grouped.setdefault(key, []).append(value)
    return {key: tuple(sorted(values)) for key, values in grouped.items()}
