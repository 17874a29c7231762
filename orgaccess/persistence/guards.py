from __future__ import annotations

from sqlalchemy import Select, select

from orgaccess.core.config import get_settings


class TenantPredicateError(RuntimeError):
    """A repository query was about to run without an organization to scope it."""

    def __init__(self, message: str, *, table: str | None = None) -> None:
        super().__init__(message)
        self.table = table


def require_tenant_id(tenant_id: str | None, *, table: str | None = None) -> None:
    # AUTHZ_REQUIRE_TENANT_PREDICATE=false relaxes this for maintenance scripts only.
    if not get_settings().authz_require_tenant_predicate:
        return
    if not tenant_id:
        target = f" on {table}" if table else ""
        raise TenantPredicateError(f"tenant_id is required to query access tables{target}", table=table)


def tenant_predicate(model, tenant_id: str):
    # Single construction point for tenant filters on access tables.
    require_tenant_id(tenant_id, table=getattr(model, "__tablename__", None))
    return model.tenant_id == tenant_id


def scoped_select(model, tenant_id: str, *criteria) -> Select:
    return select(model).where(tenant_predicate(model, tenant_id), *criteria)
