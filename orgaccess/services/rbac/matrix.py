from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Mapping

from orgaccess.domain.graph import PermissionNode, ProfileNode, RoleNode
from orgaccess.domain.types import Action, Effect, TenantRef
from orgaccess.services.rbac.hierarchy import RoleHierarchy
from orgaccess.services.rbac.tenant_scope import TenantScope


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Contribution:
    # One (role, profile) pair that produced an effect; used to explain decisions.
    role: TenantRef
    profile: TenantRef
    permission: TenantRef
    effect: Effect

    def as_dict(self) -> dict[str, str]:
        return {
            "role_id": self.role.local_id,
            "profile_id": self.profile.local_id,
            "permission_id": self.permission.local_id,
            "effect": self.effect.value,
        }


def merge_effect(current: Effect | None, incoming: Effect) -> Effect:
    # Explicit deny overrides allow; never last-write-wins.
    if current is Effect.DENY or incoming is Effect.DENY:
        return Effect.DENY
    return Effect.ALLOW


class PermissionMatrix:
    """Profile permission effects and the role -> profile assignments that expose them."""

    def __init__(
        self,
        scope: TenantScope,
        hierarchy: RoleHierarchy,
        *,
        profiles: Mapping[TenantRef, ProfileNode],
        permissions: Mapping[TenantRef, PermissionNode],
        profile_permissions: Mapping[TenantRef, Mapping[TenantRef, Effect]],
        role_profiles: Mapping[TenantRef, tuple[TenantRef, ...]],
    ) -> None:
        self._scope = scope
        self._hierarchy = hierarchy
        self._profiles = profiles
        self._permissions = permissions
        self._profile_permissions = profile_permissions
        self._role_profiles = role_profiles
        self._by_module_action: dict[tuple[TenantRef, Action], PermissionNode] = {
            (permission.module, permission.action): permission for permission in permissions.values()
        }

    def permission_for(self, module: TenantRef, action: Action) -> PermissionNode | None:
        self._scope.require(module, "module")
        return self._by_module_action.get((module, action))

    def effects_for_profile(self, profile_ref: TenantRef) -> dict[TenantRef, Effect]:
        profile = self._scope.lookup(self._profiles, profile_ref, "profile")
        if profile is None or not profile.is_active:
            return {}
        effects: dict[TenantRef, Effect] = {}
        for permission_ref, effect in self._profile_permissions.get(profile_ref, {}).items():
            permission = self._scope.lookup(self._permissions, permission_ref, "permission")
            if permission is None or not permission.is_active:
                continue
            effects[permission_ref] = effect
        return effects

    def effects_for_role(self, role_ref: TenantRef) -> dict[TenantRef, Effect]:
        effects: dict[TenantRef, Effect] = {}
        for contribution in self._contributions(role_ref):
            effects[contribution.permission] = merge_effect(
                effects.get(contribution.permission), contribution.effect
            )
        return effects

    def contributors(self, role_ref: TenantRef, permission_ref: TenantRef) -> list[Contribution]:
        self._scope.require(permission_ref, "permission")
        return [item for item in self._contributions(role_ref) if item.permission == permission_ref]

    def effect_for(self, role_ref: TenantRef, module: TenantRef, action: Action) -> Effect | None:
        permission = self.permission_for(module, action)
        if permission is None or not permission.is_active:
            return None
        return self.effects_for_role(role_ref).get(permission.ref)

    def _contributions(self, role_ref: TenantRef) -> list[Contribution]:
        chain = self._hierarchy.inheritance_chain(role_ref)
        if not chain[0].is_active:
            # An inactive role contributes nothing, including what it would inherit.
            return []
        contributions: list[Contribution] = []
        for role in chain:
            if not role.is_active:
                logger.debug("inactive_role_skipped role_id=%s", role.ref.local_id)
                continue
            contributions.extend(self._role_contributions(role))
        return contributions

    def _role_contributions(self, role: RoleNode) -> list[Contribution]:
        found: list[Contribution] = []
        for profile_ref in self._scope.require_all(self._role_profiles.get(role.ref, ()), "profile"):
            for permission_ref, effect in self.effects_for_profile(profile_ref).items():
                found.append(
                    Contribution(role=role.ref, profile=profile_ref, permission=permission_ref, effect=effect)
                )
        return found
