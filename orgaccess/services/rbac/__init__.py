from __future__ import annotations

# Re-export the decision engine for centralized imports.

from orgaccess.services.rbac.groups import GroupMembership
from orgaccess.services.rbac.hierarchy import RoleHierarchy
from orgaccess.services.rbac.matrix import Contribution, PermissionMatrix, merge_effect
from orgaccess.services.rbac.resolver import AccessDecisionResolver, GraphSource, build_engine, resolve
from orgaccess.services.rbac.sharing import ActorPrincipals, SharingRuleEngine, check_rule_shape
from orgaccess.services.rbac.tenant_scope import TenantScope

__all__ = [
    "AccessDecisionResolver",
    "ActorPrincipals",
    "Contribution",
    "GraphSource",
    "GroupMembership",
    "PermissionMatrix",
    "RoleHierarchy",
    "SharingRuleEngine",
    "TenantScope",
    "build_engine",
    "check_rule_shape",
    "merge_effect",
    "resolve",
]
