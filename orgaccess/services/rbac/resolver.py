from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterable, Mapping, Protocol

from orgaccess.core.config import get_settings
from orgaccess.core.errors import StructuralIntegrityError, TenantViolationError, error_code_for
from orgaccess.domain.graph import TenantGraph
from orgaccess.domain.types import (
    Action,
    AuditAction,
    AuditStatus,
    Decision,
    Effect,
    Grant,
    GrantKind,
    Resource,
    Signal,
    SignalSource,
    TenantRef,
)
from orgaccess.services.audit import AccessAuditEvent, AuditSink, emit_event
from orgaccess.services.rbac.groups import GroupMembership
from orgaccess.services.rbac.hierarchy import RoleHierarchy
from orgaccess.services.rbac.matrix import PermissionMatrix
from orgaccess.services.rbac.sharing import SharingRuleEngine
from orgaccess.services.rbac.tenant_scope import TenantScope


logger = logging.getLogger(__name__)

REASON_ROLE_DENY = "role_deny"
REASON_ROLE_ALLOW = "role_allow"
REASON_SHARING_GRANT = "sharing_rule"
REASON_GROUP_GRANT = "group_sharing_rule"
REASON_DEFAULT_DENY = "default_deny"
REASON_ACTOR_UNAVAILABLE = "actor_unavailable"
REASON_MODULE_UNAVAILABLE = "module_unavailable"

# Allow signals are reported in this order when several apply.
_ALLOW_PRECEDENCE = (SignalSource.ROLE, SignalSource.SHARING, SignalSource.GROUP)


class GraphSource(Protocol):
    """Read-only, tenant-filtered access to the backing store.

    ``load`` returns one consistent snapshot of the tenant. ``lookups`` maps an entity kind
    to bare ids whose owning tenant must be resolved in that same snapshot.
    """

    async def load(
        self, tenant_id: str, *, lookups: Mapping[str, Iterable[str]] | None = None
    ) -> TenantGraph: ...


@dataclass
class TenantEngine:
    # The four components wired over one snapshot.
    scope: TenantScope
    hierarchy: RoleHierarchy
    matrix: PermissionMatrix
    memberships: GroupMembership
    sharing: SharingRuleEngine


def build_engine(graph: TenantGraph, *, sharing_actions: frozenset[str] | None = None) -> TenantEngine:
    scope = TenantScope(graph.tenant_id)
    if sharing_actions is None:
        sharing_actions = get_settings().sharing_actions()
    hierarchy = RoleHierarchy(scope, graph.roles)
    matrix = PermissionMatrix(
        scope,
        hierarchy,
        profiles=graph.profiles,
        permissions=graph.permissions,
        profile_permissions=graph.profile_permissions,
        role_profiles=graph.role_profiles,
    )
    memberships = GroupMembership(scope, groups=graph.groups, user_groups=graph.user_groups)
    sharing = SharingRuleEngine(
        scope,
        hierarchy,
        memberships,
        users=graph.users,
        roles=graph.roles,
        groups=graph.groups,
        modules=graph.modules,
        user_roles=graph.user_roles,
        sharing_rules=graph.sharing_rules,
        record_shares=graph.record_shares,
        granted_actions=sharing_actions,
    )
    return TenantEngine(scope=scope, hierarchy=hierarchy, matrix=matrix, memberships=memberships, sharing=sharing)


def resolve(
    graph: TenantGraph,
    *,
    actor: TenantRef,
    resource: Resource,
    action: Action,
    sharing_actions: frozenset[str] | None = None,
) -> Decision:
    """Compute one decision over a tenant snapshot.

    Deny from any source wins, then any allow or sharing grant, else deny by default.
    Raises ``TenantViolationError`` on any cross-tenant reference it touches and
    ``StructuralIntegrityError`` on a malformed hierarchy or sharing rule.
    """
    engine = build_engine(graph, sharing_actions=sharing_actions)
    scope = engine.scope
    user = scope.lookup(graph.users, actor, "user")
    module = scope.lookup(graph.modules, resource.module, "module")
    if user is None or not user.is_active:
        return Decision(allowed=False, reason=REASON_ACTOR_UNAVAILABLE, source=SignalSource.DEFAULT)
    if module is None or not module.is_active:
        return Decision(allowed=False, reason=REASON_MODULE_UNAVAILABLE, source=SignalSource.DEFAULT)

    signals: list[Signal] = []
    signals.extend(_role_signals(engine, graph, actor=actor, resource=resource, action=action))
    principals = engine.sharing.principals_for(actor)
    grants = engine.sharing.grants_for(actor, resource, action, principals=principals)
    signals.extend(_grant_signal(grant) for grant in sorted(grants, key=lambda item: (item.kind.value, item.rule_id)))
    return merge_signals(signals)


def merge_signals(signals: list[Signal]) -> Decision:
    recorded = tuple(signals)
    for signal in recorded:
        if signal.effect is Effect.DENY:
            return Decision(allowed=False, reason=_reason_for(signal), source=signal.source, signals=recorded)
    for source in _ALLOW_PRECEDENCE:
        for signal in recorded:
            if signal.source is source and signal.effect is Effect.ALLOW:
                return Decision(allowed=True, reason=_reason_for(signal), source=signal.source, signals=recorded)
    return Decision(allowed=False, reason=REASON_DEFAULT_DENY, source=SignalSource.DEFAULT, signals=recorded)


def _reason_for(signal: Signal) -> str:
    if signal.source is SignalSource.ROLE:
        return REASON_ROLE_DENY if signal.effect is Effect.DENY else REASON_ROLE_ALLOW
    if signal.source is SignalSource.GROUP:
        return REASON_GROUP_GRANT
    if signal.source is SignalSource.SHARING:
        return REASON_SHARING_GRANT
    if signal.source is SignalSource.DEFAULT:
        return REASON_DEFAULT_DENY
    raise StructuralIntegrityError(f"Unsupported signal source: {signal.source}")


def _role_signals(
    engine: TenantEngine,
    graph: TenantGraph,
    *,
    actor: TenantRef,
    resource: Resource,
    action: Action,
) -> list[Signal]:
    permission = engine.matrix.permission_for(resource.module, action)
    signals: list[Signal] = []
    for role_ref in graph.user_roles.get(actor, ()):
        role = engine.scope.lookup(graph.roles, role_ref, "role")
        if role is None:
            logger.debug("user_role_missing role_id=%s", role_ref.local_id)
            continue
        if not role.is_active:
            continue
        # Walk the chain even without a matching permission so corrupt hierarchies surface.
        engine.hierarchy.ancestors_of(role_ref)
        if permission is None or not permission.is_active:
            continue
        contributions = engine.matrix.contributors(role_ref, permission.ref)
        effect = engine.matrix.effect_for(role_ref, resource.module, action)
        if effect is None:
            continue
        signals.append(
            Signal(
                source=SignalSource.ROLE,
                effect=effect,
                detail={
                    "role_id": role_ref.local_id,
                    "role_code": role.code,
                    "permission_id": permission.ref.local_id,
                    "contributors": [item.as_dict() for item in contributions],
                },
            )
        )
    return signals


def _grant_signal(grant: Grant) -> Signal:
    source = SignalSource.GROUP if grant.kind is GrantKind.GROUP else SignalSource.SHARING
    detail: dict[str, object] = {"grant_kind": grant.kind.value, "rule_id": grant.rule_id}
    if grant.source_principal is not None:
        detail["source_principal"] = {
            "kind": grant.source_principal.kind.value,
            "id": grant.source_principal.ref.local_id,
        }
    if grant.via is not None:
        detail["via"] = {"kind": grant.via.kind.value, "id": grant.via.ref.local_id}
    return Signal(source=source, effect=Effect.ALLOW, detail=detail)


class AccessDecisionResolver:
    """Sole entry point for access decisions.

    One evaluation reads one snapshot from the graph source, resolves it, and emits a
    single audit event. Structural failures emit a ``failed`` event and propagate.
    """

    def __init__(self, source: GraphSource, *, audit_sink: AuditSink | None = None) -> None:
        self._source = source
        self._audit_sink = audit_sink

    async def evaluate(
        self,
        tenant_id: str,
        actor_id: str,
        module_id: str,
        record_id: str | None,
        action: Action | str,
        *,
        record_owner_id: str | None = None,
        request_context: dict[str, str | None] | None = None,
    ) -> Decision:
        requested = Action(action)
        scope = TenantScope(tenant_id)
        resource = Resource(module=scope.ref(module_id), record_id=record_id)
        lookups = {"user": [actor_id] + ([record_owner_id] if record_owner_id else []), "module": [module_id]}
        try:
            graph = await self._source.load(tenant_id, lookups=lookups)
            actor = _scoped_ref(scope, graph, "user", actor_id)
            owner = _scoped_ref(scope, graph, "user", record_owner_id) if record_owner_id else None
            resource = Resource(
                module=_scoped_ref(scope, graph, "module", module_id), record_id=record_id, owner=owner
            )
            decision = resolve(graph, actor=actor, resource=resource, action=requested)
        except (TenantViolationError, StructuralIntegrityError) as exc:
            logger.warning(
                "authz_evaluation_failed tenant_id=%s actor_id=%s module_id=%s error=%s",
                tenant_id,
                actor_id,
                module_id,
                type(exc).__name__,
            )
            await emit_event(
                self._audit_sink,
                _decision_event(
                    tenant_id=tenant_id,
                    actor_id=actor_id,
                    resource=resource,
                    action=requested,
                    decision=None,
                    error=exc,
                    request_context=request_context,
                ),
            )
            raise
        logger.info(
            "authz_decision tenant_id=%s actor_id=%s module_id=%s record_id=%s action=%s decision=%s reason=%s",
            tenant_id,
            actor_id,
            module_id,
            record_id,
            requested.value,
            decision.effect.value,
            decision.reason,
        )
        await emit_event(
            self._audit_sink,
            _decision_event(
                tenant_id=tenant_id,
                actor_id=actor_id,
                resource=resource,
                action=requested,
                decision=decision,
                error=None,
                request_context=request_context,
            ),
        )
        return decision


def _scoped_ref(scope: TenantScope, graph: TenantGraph, kind: str, local_id: str) -> TenantRef:
    # Ids absent everywhere stay in scope and resolve to "contributes nothing".
    owner = graph.owner_of(kind, local_id)
    if owner is None:
        return scope.ref(local_id)
    return scope.require(TenantRef(owner, local_id), kind)


def _decision_event(
    *,
    tenant_id: str,
    actor_id: str,
    resource: Resource,
    action: Action,
    decision: Decision | None,
    error: Exception | None,
    request_context: dict[str, str | None] | None,
) -> AccessAuditEvent:
    context = request_context or {}
    new_values: dict[str, object] = {"requested_action": action.value, "record_id": resource.record_id}
    if resource.owner is not None:
        new_values["record_owner_id"] = resource.owner.local_id
    metadata: dict[str, object] = {}
    if decision is not None:
        new_values.update(decision=decision.effect.value, reason=decision.reason, source=decision.source.value)
        metadata["signals"] = [signal.as_dict() for signal in decision.signals]
    if error is not None:
        metadata["error"] = str(error)
    return AccessAuditEvent(
        tenant_id=tenant_id,
        actor_id=actor_id,
        action=AuditAction.EVALUATE,
        status=AuditStatus.SUCCESS if error is None else AuditStatus.FAILED,
        entity_type="access_decision",
        entity_id=resource.record_id,
        module_id=resource.module.local_id,
        new_values=new_values,
        metadata=metadata,
        error_code=None if error is None else error_code_for(error),
        request_id=context.get("request_id"),
        ip_address=context.get("ip_address"),
        user_agent=context.get("user_agent"),
    )

