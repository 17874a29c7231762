from __future__ import annotations

from orgaccess.apps.api.errors import status_for
from orgaccess.core.errors import (
    ConflictError,
    CycleDetectedError,
    InvalidSharingRuleError,
    NotFoundError,
    StructuralIntegrityError,
    TenantViolationError,
    error_code_for,
)


def test_error_codes_are_stable() -> None:
    assert error_code_for(TenantViolationError("x")) == "TENANT_VIOLATION"
    assert error_code_for(CycleDetectedError("a", "b")) == "ROLE_CYCLE"
    assert error_code_for(NotFoundError("role", "r-1")) == "NOT_FOUND"
    assert error_code_for(ConflictError("dup")) == "CONFLICT"
    assert error_code_for(InvalidSharingRuleError("bad")) == "INVALID_SHARING_RULE"
    assert error_code_for(StructuralIntegrityError("loop")) == "STRUCTURAL_INTEGRITY"
    assert error_code_for(RuntimeError("boom")) == "INTERNAL_ERROR"


def test_http_status_mapping() -> None:
    assert status_for(TenantViolationError("x")) == 403
    assert status_for(CycleDetectedError("a", "b")) == 409
    assert status_for(NotFoundError("role", "r-1")) == 404
    assert status_for(ConflictError("dup")) == 409
    assert status_for(InvalidSharingRuleError("bad")) == 422
    assert status_for(StructuralIntegrityError("loop")) == 500


def test_cycle_error_names_both_roles() -> None:
    error = CycleDetectedError("role-a", "role-b")
    assert error.role_id == "role-a"
    assert error.parent_id == "role-b"
    assert "role-a" in str(error) and "role-b" in str(error)
