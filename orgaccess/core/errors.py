from __future__ import annotations


class OrgAccessError(Exception):
    """Base error for orgaccess."""


class TenantViolationError(OrgAccessError):
    """A referenced entity belongs to a different tenant than the one being evaluated."""

    def __init__(self, message: str, *, tenant_id: str | None = None, other_tenant_id: str | None = None) -> None:
        super().__init__(message)
        self.tenant_id = tenant_id
        self.other_tenant_id = other_tenant_id


class CycleDetectedError(OrgAccessError):
    """A role parent assignment would make a role its own ancestor."""

    def __init__(self, role_id: str, parent_id: str) -> None:
        super().__init__(f"Assigning parent {parent_id} to role {role_id} would create a cycle")
        self.role_id = role_id
        self.parent_id = parent_id


class StructuralIntegrityError(OrgAccessError):
    """Malformed graph found during traversal; never silently repaired."""


class NotFoundError(OrgAccessError):
    """Referenced entity is absent from the tenant."""

    def __init__(self, kind: str, local_id: str) -> None:
        super().__init__(f"{kind} {local_id} not found")
        self.kind = kind
        self.local_id = local_id


class ConflictError(OrgAccessError):
    """Administrative write collides with an existing unique key."""


class InvalidSharingRuleError(OrgAccessError):
    """Sharing rule endpoints do not match its rule type."""


# Stable codes shared by audit rows and HTTP error envelopes; subclasses before bases.
_ERROR_CODES: tuple[tuple[type[Exception], str], ...] = (
    (TenantViolationError, "TENANT_VIOLATION"),
    (CycleDetectedError, "ROLE_CYCLE"),
    (NotFoundError, "NOT_FOUND"),
    (ConflictError, "CONFLICT"),
    (InvalidSharingRuleError, "INVALID_SHARING_RULE"),
    (StructuralIntegrityError, "STRUCTURAL_INTEGRITY"),
    (ValueError, "VALIDATION_ERROR"),
)


def error_code_for(error: Exception) -> str:
    for error_type, code in _ERROR_CODES:
        if isinstance(error, error_type):
            return code
    return "INTERNAL_ERROR"
