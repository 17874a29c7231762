from __future__ import annotations

from typing import Iterable, Mapping, TypeVar

from orgaccess.core.errors import NotFoundError, TenantViolationError
from orgaccess.domain.types import PrincipalRef, TenantRef
from orgaccess.persistence.guards import TenantPredicateError


NodeT = TypeVar("NodeT")


class TenantScope:
    """Binds every lookup to one organization.

    Components never compare bare ids; they hand ``TenantRef`` values to the scope, which
    rejects any ref owned by another tenant before the lookup happens.
    """

    def __init__(self, tenant_id: str) -> None:
        if not tenant_id:
            raise TenantPredicateError("Tenant scope requires a tenant_id")
        self.tenant_id = tenant_id

    def __repr__(self) -> str:
        return f"TenantScope({self.tenant_id!r})"

    def ref(self, local_id: str) -> TenantRef:
        return TenantRef(self.tenant_id, local_id)

    def owns(self, ref: TenantRef) -> bool:
        return ref.tenant_id == self.tenant_id

    def require(self, ref: TenantRef, kind: str = "entity") -> TenantRef:
        if ref.tenant_id != self.tenant_id:
            raise TenantViolationError(
                f"{kind} {ref.local_id} belongs to tenant {ref.tenant_id}, not {self.tenant_id}",
                tenant_id=self.tenant_id,
                other_tenant_id=ref.tenant_id,
            )
        return ref

    def require_principal(self, principal: PrincipalRef) -> PrincipalRef:
        self.require(principal.ref, principal.kind.value)
        return principal

    def require_all(self, refs: Iterable[TenantRef], kind: str = "entity") -> list[TenantRef]:
        return [self.require(ref, kind) for ref in refs]

    def require_owner(self, kind: str, local_id: str, owner_tenant_id: str | None) -> TenantRef:
        # Check a persisted owner before any tenant-filtered read would silently miss the row.
        if owner_tenant_id is None:
            raise NotFoundError(kind, local_id)
        return self.require(TenantRef(owner_tenant_id, local_id), kind)

    def lookup(self, mapping: Mapping[TenantRef, NodeT], ref: TenantRef, kind: str = "entity") -> NodeT | None:
        self.require(ref, kind)
        return mapping.get(ref)
