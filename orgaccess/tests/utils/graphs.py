from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import Iterable, Mapping

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
from orgaccess.domain.types import (
    Action,
    Effect,
    PrincipalKind,
    PrincipalRef,
    SharingRuleType,
    TenantRef,
)
from orgaccess.services.audit import AccessAuditEvent


class GraphBuilder:
    # Fluent in-memory tenant graph for engine tests; ids are local to the builder's tenant.

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.users: dict[TenantRef, UserNode] = {}
        self.modules: dict[TenantRef, ModuleNode] = {}
        self.roles: dict[TenantRef, RoleNode] = {}
        self.profiles: dict[TenantRef, ProfileNode] = {}
        self.permissions: dict[TenantRef, PermissionNode] = {}
        self.groups: dict[TenantRef, GroupNode] = {}
        self.profile_permissions: dict[TenantRef, dict[TenantRef, Effect]] = {}
        self.role_profiles: dict[TenantRef, list[TenantRef]] = {}
        self.user_roles: dict[TenantRef, list[TenantRef]] = {}
        self.user_groups: dict[TenantRef, list[TenantRef]] = {}
        self.sharing_rules: list[SharingRuleNode] = []
        self.record_shares: list[RecordShareNode] = []

    def ref(self, local_id: str, tenant_id: str | None = None) -> TenantRef:
        return TenantRef(tenant_id or self.tenant_id, local_id)

    def user(self, user_id: str, *, status: str = "active") -> TenantRef:
        ref = self.ref(user_id)
        self.users[ref] = UserNode(ref=ref, username=user_id, status=status)
        return ref

    def module(self, module_id: str, *, code: str | None = None, active: bool = True) -> TenantRef:
        ref = self.ref(module_id)
        self.modules[ref] = ModuleNode(ref=ref, code=code or module_id, is_active=active)
        return ref

    def role(
        self,
        role_id: str,
        *,
        parent: str | None = None,
        parent_tenant: str | None = None,
        active: bool = True,
    ) -> TenantRef:
        ref = self.ref(role_id)
        parent_ref = self.ref(parent, parent_tenant) if parent is not None else None
        self.roles[ref] = RoleNode(ref=ref, code=role_id, name=role_id.title(), parent=parent_ref, is_active=active)
        return ref

    def profile(self, profile_id: str, *, active: bool = True) -> TenantRef:
        ref = self.ref(profile_id)
        self.profiles[ref] = ProfileNode(ref=ref, code=profile_id, is_active=active)
        return ref

    def permission(self, permission_id: str, module_id: str, action: Action, *, active: bool = True) -> TenantRef:
        ref = self.ref(permission_id)
        self.permissions[ref] = PermissionNode(ref=ref, module=self.ref(module_id), action=action, is_active=active)
        return ref

    def grant(self, profile_id: str, permission_id: str, effect: Effect = Effect.ALLOW) -> None:
        self.profile_permissions.setdefault(self.ref(profile_id), {})[self.ref(permission_id)] = effect

    def attach(self, role_id: str, profile_id: str) -> None:
        self.role_profiles.setdefault(self.ref(role_id), []).append(self.ref(profile_id))

    def assign(self, user_id: str, role_id: str, *, role_tenant: str | None = None) -> None:
        self.user_roles.setdefault(self.ref(user_id), []).append(self.ref(role_id, role_tenant))

    def group(self, group_id: str, *, active: bool = True) -> TenantRef:
        ref = self.ref(group_id)
        self.groups[ref] = GroupNode(ref=ref, name=group_id, is_active=active)
        return ref

    def join(self, user_id: str, group_id: str, *, group_tenant: str | None = None) -> None:
        self.user_groups.setdefault(self.ref(user_id), []).append(self.ref(group_id, group_tenant))

    def principal(self, kind: PrincipalKind, local_id: str, tenant_id: str | None = None) -> PrincipalRef:
        return PrincipalRef(kind=kind, ref=self.ref(local_id, tenant_id))

    def pair_rule(
        self,
        rule_id: str,
        rule_type: SharingRuleType,
        source: str,
        target: str,
        *,
        module_id: str | None = None,
        target_tenant: str | None = None,
        active: bool = True,
    ) -> TenantRef:
        kind = {
            SharingRuleType.USER_TO_USER: PrincipalKind.USER,
            SharingRuleType.ROLE_TO_ROLE: PrincipalKind.ROLE,
            SharingRuleType.GROUP_TO_GROUP: PrincipalKind.GROUP,
        }[rule_type]
        ref = self.ref(rule_id)
        self.sharing_rules.append(
            SharingRuleNode(
                ref=ref,
                rule_type=rule_type,
                source=self.principal(kind, source),
                target=self.principal(kind, target, target_tenant),
                module=self.ref(module_id) if module_id else None,
                is_active=active,
            )
        )
        return ref

    def record_rule(
        self,
        rule_id: str,
        module_id: str,
        record_id: str,
        shared_with: PrincipalRef,
        *,
        active: bool = True,
    ) -> TenantRef:
        ref = self.ref(rule_id)
        self.sharing_rules.append(
            SharingRuleNode(
                ref=ref,
                rule_type=SharingRuleType.RECORD_LEVEL,
                module=self.ref(module_id),
                record_id=record_id,
                shared_with=shared_with,
                is_active=active,
            )
        )
        return ref

    def raw_rule(self, rule: SharingRuleNode) -> None:
        self.sharing_rules.append(rule)

    def share(self, share_id: str, module_id: str, record_id: str, shared_with: PrincipalRef) -> TenantRef:
        ref = self.ref(share_id)
        self.record_shares.append(
            RecordShareNode(ref=ref, module=self.ref(module_id), record_id=record_id, shared_with=shared_with)
        )
        return ref

    def build(self) -> TenantGraph:
        return TenantGraph(
            tenant_id=self.tenant_id,
            users=dict(self.users),
            modules=dict(self.modules),
            roles=dict(self.roles),
            profiles=dict(self.profiles),
            permissions=dict(self.permissions),
            groups=dict(self.groups),
            profile_permissions={key: dict(value) for key, value in self.profile_permissions.items()},
            role_profiles={key: tuple(value) for key, value in self.role_profiles.items()},
            user_roles={key: tuple(value) for key, value in self.user_roles.items()},
            user_groups={key: tuple(value) for key, value in self.user_groups.items()},
            sharing_rules=tuple(self.sharing_rules),
            record_shares=tuple(self.record_shares),
        )


class StaticGraphSource:
    # Serves prebuilt graphs; ownership is derived from which graph holds the node.

    def __init__(self, *graphs: TenantGraph) -> None:
        self.graphs = {graph.tenant_id: graph for graph in graphs}
        self.loads: list[str] = []

    def owner_of(self, kind: str, local_id: str) -> str | None:
        for tenant_id, graph in self.graphs.items():
            mapping = {"user": graph.users, "module": graph.modules, "role": graph.roles, "group": graph.groups}.get(
                kind, {}
            )
            if TenantRef(tenant_id, local_id) in mapping:
                return tenant_id
        return None

    async def load(
        self, tenant_id: str, *, lookups: Mapping[str, Iterable[str]] | None = None
    ) -> TenantGraph:
        self.loads.append(tenant_id)
        owners: dict[tuple[str, str], str] = {}
        for kind, ids in (lookups or {}).items():
            for local_id in ids:
                owner = self.owner_of(kind, local_id)
                if owner is not None:
                    owners[(kind, local_id)] = owner
        graph = self.graphs.get(tenant_id) or TenantGraph(tenant_id=tenant_id)
        return replace(graph, owners=owners)


class RecordingAuditSink:
    def __init__(self) -> None:
        self.events: list[AccessAuditEvent] = []

    async def emit(self, event: AccessAuditEvent) -> None:
        self.events.append(event)


class FailingAuditSink:
    async def emit(self, event: AccessAuditEvent) -> None:
        raise RuntimeError("audit backend unavailable")


class SlowAuditSink:
    def __init__(self, delay_s: float) -> None:
        self.delay_s = delay_s

    async def emit(self, event: AccessAuditEvent) -> None:
        await asyncio.sleep(self.delay_s)
