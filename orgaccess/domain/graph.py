from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from orgaccess.domain.types import Action, Effect, PrincipalRef, SharingRuleType, TenantRef


@dataclass(frozen=True)
class UserNode:
    ref: TenantRef
    username: str
    status: str = "active"

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class ModuleNode:
    ref: TenantRef
    code: str
    is_active: bool = True


@dataclass(frozen=True)
class RoleNode:
    ref: TenantRef
    code: str
    name: str
    parent: TenantRef | None = None
    is_active: bool = True


@dataclass(frozen=True)
class ProfileNode:
    ref: TenantRef
    code: str
    is_active: bool = True


@dataclass(frozen=True)
class PermissionNode:
    ref: TenantRef
    module: TenantRef
    action: Action
    is_active: bool = True


@dataclass(frozen=True)
class GroupNode:
    ref: TenantRef
    name: str
    is_active: bool = True


@dataclass(frozen=True)
class SharingRuleNode:
    ref: TenantRef
    rule_type: SharingRuleType
    source: PrincipalRef | None = None
    target: PrincipalRef | None = None
    module: TenantRef | None = None
    record_id: str | None = None
    shared_with: PrincipalRef | None = None
    is_active: bool = True


@dataclass(frozen=True)
class RecordShareNode:
    ref: TenantRef
    module: TenantRef
    record_id: str
    shared_with: PrincipalRef


@dataclass
class TenantGraph:
    """Snapshot of one tenant's access graph, read once per evaluation.

    Every mapping is keyed by ``TenantRef``. References that point outside the tenant keep
    their owning tenant in the ref so the scope check can reject them; references to rows
    that do not exist at all keep the graph's tenant and simply miss on lookup.
    """

    tenant_id: str
    users: Mapping[TenantRef, UserNode] = field(default_factory=dict)
    modules: Mapping[TenantRef, ModuleNode] = field(default_factory=dict)
    roles: Mapping[TenantRef, RoleNode] = field(default_factory=dict)
    profiles: Mapping[TenantRef, ProfileNode] = field(default_factory=dict)
    permissions: Mapping[TenantRef, PermissionNode] = field(default_factory=dict)
    groups: Mapping[TenantRef, GroupNode] = field(default_factory=dict)
    # profile -> {permission: effect}
    profile_permissions: Mapping[TenantRef, Mapping[TenantRef, Effect]] = field(default_factory=dict)
    # role -> profiles attached to it
    role_profiles: Mapping[TenantRef, tuple[TenantRef, ...]] = field(default_factory=dict)
    user_roles: Mapping[TenantRef, tuple[TenantRef, ...]] = field(default_factory=dict)
    user_groups: Mapping[TenantRef, tuple[TenantRef, ...]] = field(default_factory=dict)
    sharing_rules: tuple[SharingRuleNode, ...] = ()
    record_shares: tuple[RecordShareNode, ...] = ()
    # (kind, local id) -> owning tenant, for ids the caller asked the loader to resolve.
    owners: Mapping[tuple[str, str], str] = field(default_factory=dict)

    def owner_of(self, kind: str, local_id: str) -> str | None:
        return self.owners.get((kind, local_id))

    def ref(self, local_id: str) -> TenantRef:
        return TenantRef(self.tenant_id, local_id)
