from __future__ import annotations

from typing import Mapping

from orgaccess.domain.graph import GroupNode
from orgaccess.domain.types import TenantRef
from orgaccess.services.rbac.tenant_scope import TenantScope


class GroupMembership:
    # Groups stay independent of the role tree; no group -> role inheritance is modelled.

    def __init__(
        self,
        scope: TenantScope,
        *,
        groups: Mapping[TenantRef, GroupNode],
        user_groups: Mapping[TenantRef, tuple[TenantRef, ...]],
    ) -> None:
        self._scope = scope
        self._groups = groups
        self._user_groups = user_groups

    def groups_of(self, user: TenantRef) -> set[GroupNode]:
        self._scope.require(user, "user")
        active: set[GroupNode] = set()
        for group_ref in self._user_groups.get(user, ()):
            group = self._scope.lookup(self._groups, group_ref, "group")
            if group is not None and group.is_active:
                active.add(group)
        return active

    def is_member(self, user: TenantRef, group: TenantRef) -> bool:
        self._scope.require(group, "group")
        return any(item.ref == group for item in self.groups_of(user))
