from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Mapping

from orgaccess.core.errors import InvalidSharingRuleError, StructuralIntegrityError
from orgaccess.domain.graph import (
    GroupNode,
    ModuleNode,
    RecordShareNode,
    RoleNode,
    SharingRuleNode,
    UserNode,
)
from orgaccess.domain.types import (
    Action,
    Grant,
    GrantKind,
    PrincipalKind,
    PrincipalRef,
    Resource,
    SharingRuleType,
    TenantRef,
)
from orgaccess.services.rbac.groups import GroupMembership
from orgaccess.services.rbac.hierarchy import RoleHierarchy
from orgaccess.services.rbac.tenant_scope import TenantScope


logger = logging.getLogger(__name__)

_PAIR_KINDS: dict[SharingRuleType, tuple[PrincipalKind, GrantKind]] = {
    SharingRuleType.USER_TO_USER: (PrincipalKind.USER, GrantKind.USER),
    SharingRuleType.ROLE_TO_ROLE: (PrincipalKind.ROLE, GrantKind.ROLE),
    SharingRuleType.GROUP_TO_GROUP: (PrincipalKind.GROUP, GrantKind.GROUP),
}


@dataclass(frozen=True)
class ActorPrincipals:
    # Everything a share can name the actor by: the user, directly held roles, groups.
    user: TenantRef
    roles: frozenset[TenantRef]
    groups: frozenset[TenantRef]


def check_rule_shape(rule: SharingRuleNode) -> None:
    # Exactly the endpoints matching rule_type are populated; everything else is empty.
    if rule.rule_type is SharingRuleType.RECORD_LEVEL:
        if rule.source is not None or rule.target is not None:
            raise InvalidSharingRuleError("record_level rules take no source/target principals")
        if rule.module is None or not rule.record_id:
            raise InvalidSharingRuleError("record_level rules require module and record_id")
        if rule.shared_with is None:
            raise InvalidSharingRuleError("record_level rules require exactly one shared_with principal")
        return
    if rule.rule_type in _PAIR_KINDS:
        expected, _grant_kind = _PAIR_KINDS[rule.rule_type]
        if rule.source is None or rule.target is None:
            raise InvalidSharingRuleError(f"{rule.rule_type.value} rules require source and target")
        if rule.source.kind is not expected or rule.target.kind is not expected:
            raise InvalidSharingRuleError(
                f"{rule.rule_type.value} rules only connect {expected.value} principals"
            )
        if rule.shared_with is not None or rule.record_id is not None:
            raise InvalidSharingRuleError(f"{rule.rule_type.value} rules cannot name a record")
        return
    raise InvalidSharingRuleError(f"Unsupported sharing rule type: {rule.rule_type}")


class SharingRuleEngine:
    """Explicit grants that bypass the role/profile path.

    Pair rules (user/role/group to the same kind) match a record when the actor is, holds,
    or belongs to the rule's source principal and the record's owner is, holds, or belongs
    to its target principal. Requests without a record or a known owner never match a pair
    rule, so pair rules cannot open module-level access. Record-level rules and record
    shares match one (module, record_id) for one recipient principal. A role principal also
    covers every role below it, mirroring upward permission inheritance.
    """

    def __init__(
        self,
        scope: TenantScope,
        hierarchy: RoleHierarchy,
        memberships: GroupMembership,
        *,
        users: Mapping[TenantRef, UserNode],
        roles: Mapping[TenantRef, RoleNode],
        groups: Mapping[TenantRef, GroupNode],
        modules: Mapping[TenantRef, ModuleNode],
        user_roles: Mapping[TenantRef, tuple[TenantRef, ...]],
        sharing_rules: Iterable[SharingRuleNode],
        record_shares: Iterable[RecordShareNode],
        granted_actions: frozenset[str],
    ) -> None:
        self._scope = scope
        self._hierarchy = hierarchy
        self._memberships = memberships
        self._users = users
        self._roles = roles
        self._groups = groups
        self._modules = modules
        self._user_roles = user_roles
        self._sharing_rules = tuple(sharing_rules)
        self._record_shares = tuple(record_shares)
        self._granted_actions = granted_actions

    def principals_for(self, actor: TenantRef) -> ActorPrincipals:
        self._scope.require(actor, "user")
        roles: set[TenantRef] = set()
        for role_ref in self._user_roles.get(actor, ()):
            role = self._scope.lookup(self._roles, role_ref, "role")
            if role is not None and role.is_active:
                roles.add(role.ref)
        groups = {group.ref for group in self._memberships.groups_of(actor)}
        return ActorPrincipals(user=actor, roles=frozenset(roles), groups=frozenset(groups))

    def grants_for(
        self,
        actor: TenantRef,
        resource: Resource,
        action: Action,
        *,
        principals: ActorPrincipals | None = None,
    ) -> set[Grant]:
        self._scope.require(actor, "user")
        self._scope.require(resource.module, "module")
        if resource.owner is not None:
            self._scope.require(resource.owner, "user")
        if action.value not in self._granted_actions:
            logger.debug("sharing_action_not_granted action=%s", action.value)
            return set()
        if principals is None:
            principals = self.principals_for(actor)

        grants: set[Grant] = set()
        for share in self._record_shares:
            grant = self._match_record_share(share, principals, resource)
            if grant is not None:
                grants.add(grant)
        for rule in self._sharing_rules:
            if not rule.is_active:
                continue
            self._check_rule(rule)
            if rule.module is not None:
                if rule.module != resource.module or not self._module_active(rule.module):
                    continue
            grant = self._match_rule(rule, principals, resource)
            if grant is not None:
                grants.add(grant)
        return grants

    def _match_record_share(
        self,
        share: RecordShareNode,
        principals: ActorPrincipals,
        resource: Resource,
    ) -> Grant | None:
        self._scope.require(share.module, "module")
        self._scope.require_principal(share.shared_with)
        if resource.record_id is None:
            return None
        if share.module != resource.module or share.record_id != resource.record_id:
            return None
        if not self._matches(principals, share.shared_with):
            return None
        return Grant(kind=GrantKind.RECORD, source_principal=None, rule_id=share.ref.local_id, via=share.shared_with)

    def _match_rule(
        self,
        rule: SharingRuleNode,
        principals: ActorPrincipals,
        resource: Resource,
    ) -> Grant | None:
        if rule.rule_type is SharingRuleType.RECORD_LEVEL:
            if resource.record_id is None or rule.record_id != resource.record_id:
                return None
            if rule.shared_with is None or not self._matches(principals, rule.shared_with):
                return None
            return Grant(kind=GrantKind.RECORD, source_principal=None, rule_id=rule.ref.local_id, via=rule.shared_with)
        if rule.rule_type in _PAIR_KINDS:
            _expected, grant_kind = _PAIR_KINDS[rule.rule_type]
            if rule.source is None or rule.target is None:
                return None
            if resource.record_id is None or resource.owner is None:
                return None
            if not self._matches(principals, rule.source):
                return None
            if not self._matches(self.principals_for(resource.owner), rule.target):
                return None
            return Grant(kind=grant_kind, source_principal=rule.source, rule_id=rule.ref.local_id, via=rule.target)
        raise StructuralIntegrityError(f"Unsupported sharing rule type: {rule.rule_type}")

    def _check_rule(self, rule: SharingRuleNode) -> None:
        self._scope.require(rule.ref, "sharing rule")
        for principal in (rule.source, rule.target, rule.shared_with):
            if principal is not None:
                self._scope.require_principal(principal)
        if rule.module is not None:
            self._scope.require(rule.module, "module")
        try:
            check_rule_shape(rule)
        except InvalidSharingRuleError as exc:
            raise StructuralIntegrityError(f"Sharing rule {rule.ref.local_id} is malformed: {exc}") from exc

    def _matches(self, principals: ActorPrincipals, principal: PrincipalRef) -> bool:
        if not self._principal_active(principal):
            return False
        if principal.kind is PrincipalKind.USER:
            return principal.ref == principals.user
        if principal.kind is PrincipalKind.ROLE:
            return self._holds_role(principals, principal.ref)
        if principal.kind is PrincipalKind.GROUP:
            return principal.ref in principals.groups
        raise StructuralIntegrityError(f"Unsupported principal kind: {principal.kind}")

    def _holds_role(self, principals: ActorPrincipals, role_ref: TenantRef) -> bool:
        if role_ref in principals.roles:
            return True
        return any(self._hierarchy.is_descendant(role_ref, held) for held in principals.roles)

    def _principal_active(self, principal: PrincipalRef) -> bool:
        if principal.kind is PrincipalKind.USER:
            user = self._users.get(principal.ref)
            return user is not None and user.is_active
        if principal.kind is PrincipalKind.ROLE:
            role = self._roles.get(principal.ref)
            return role is not None and role.is_active
        if principal.kind is PrincipalKind.GROUP:
            group = self._groups.get(principal.ref)
            return group is not None and group.is_active
        raise StructuralIntegrityError(f"Unsupported principal kind: {principal.kind}")

    def _module_active(self, module_ref: TenantRef) -> bool:
        module = self._modules.get(module_ref)
        return module is not None and module.is_active
