from __future__ import annotations

from typing import Mapping

from orgaccess.core.errors import NotFoundError, StructuralIntegrityError
from orgaccess.domain.graph import RoleNode
from orgaccess.domain.types import TenantRef
from orgaccess.services.rbac.tenant_scope import TenantScope


class RoleHierarchy:
    """Role forest for one tenant, stored as an arena of nodes keyed by ref.

    Permission inheritance flows upward: a role inherits everything its ancestors grant.
    Every walk is iterative and bounded by the tenant's role count, so a corrupted chain
    raises ``StructuralIntegrityError`` instead of looping or being truncated.
    """

    def __init__(self, scope: TenantScope, roles: Mapping[TenantRef, RoleNode]) -> None:
        self._scope = scope
        self._roles = roles
        self._children: dict[TenantRef, list[RoleNode]] | None = None

    def node(self, ref: TenantRef) -> RoleNode:
        role = self._scope.lookup(self._roles, ref, "role")
        if role is None:
            raise NotFoundError("role", ref.local_id)
        return role

    def has(self, ref: TenantRef) -> bool:
        return self._scope.lookup(self._roles, ref, "role") is not None

    def parent_of(self, role: RoleNode) -> RoleNode | None:
        if role.parent is None:
            return None
        if role.parent == role.ref:
            raise StructuralIntegrityError(f"Role {role.ref.local_id} references itself as parent")
        self._scope.require(role.parent, "parent role")
        parent = self._roles.get(role.parent)
        if parent is None:
            raise StructuralIntegrityError(
                f"Role {role.ref.local_id} references missing parent {role.parent.local_id}"
            )
        return parent

    def ancestors_of(self, ref: TenantRef) -> list[RoleNode]:
        # Root-most first, excluding the role itself.
        current = self.node(ref)
        chain: list[RoleNode] = []
        visited = {current.ref}
        limit = len(self._roles)
        while True:
            parent = self.parent_of(current)
            if parent is None:
                break
            if parent.ref in visited or len(visited) > limit:
                raise StructuralIntegrityError(
                    f"Role hierarchy loops back to {parent.ref.local_id} while walking from {ref.local_id}"
                )
            visited.add(parent.ref)
            chain.append(parent)
            current = parent
        chain.reverse()
        return chain

    def is_descendant(self, candidate_ancestor: TenantRef, ref: TenantRef) -> bool:
        # Strict: a role is never its own descendant.
        self._scope.require(candidate_ancestor, "role")
        return any(ancestor.ref == candidate_ancestor for ancestor in self.ancestors_of(ref))

    def would_create_cycle(self, ref: TenantRef, proposed_parent: TenantRef | None) -> bool:
        self._scope.require(ref, "role")
        if proposed_parent is None:
            return False
        self._scope.require(proposed_parent, "parent role")
        if proposed_parent == ref:
            return True
        # Full upward walk from the proposed parent looking for the role itself.
        self.node(proposed_parent)
        return any(ancestor.ref == ref for ancestor in self.ancestors_of(proposed_parent))

    def reachable_roles(self, ref: TenantRef) -> set[RoleNode]:
        return {self.node(ref), *self.ancestors_of(ref)}

    def inheritance_chain(self, ref: TenantRef) -> list[RoleNode]:
        # Self first, then ancestors nearest-first; the order used to report contributors.
        return [self.node(ref), *reversed(self.ancestors_of(ref))]

    def children_of(self, ref: TenantRef) -> list[RoleNode]:
        self.node(ref)
        return list(self._child_index().get(ref, []))

    def descendants_of(self, ref: TenantRef) -> set[RoleNode]:
        self.node(ref)
        index = self._child_index()
        found: dict[TenantRef, RoleNode] = {}
        pending = list(index.get(ref, []))
        while pending:
            child = pending.pop()
            if child.ref == ref or child.ref in found:
                raise StructuralIntegrityError(f"Role hierarchy below {ref.local_id} contains a cycle")
            found[child.ref] = child
            pending.extend(index.get(child.ref, []))
        return set(found.values())

    def roots(self) -> list[RoleNode]:
        return [role for role in self._roles.values() if role.parent is None]

    def validate(self) -> None:
        # Walk every chain once; raises on the first loop, dangling or foreign parent.
        for ref in self._roles:
            self.ancestors_of(ref)

    def _child_index(self) -> dict[TenantRef, list[RoleNode]]:
        if self._children is None:
            index: dict[TenantRef, list[RoleNode]] = {}
            for role in self._roles.values():
                if role.parent is not None:
                    index.setdefault(role.parent, []).append(role)
            self._children = index
        return self._children
