from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select

from orgaccess.core.config import PERMISSION_ACTIONS
from orgaccess.domain.models import (
    AuditEvent,
    Group,
    Module,
    Organization,
    Permission,
    Profile,
    ProfilePermission,
    Role,
    RoleProfile,
    SharingRule,
    User,
    UserGroup,
    UserRole,
)
from orgaccess.persistence.db import SessionLocal


def unique_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex[:12]}"


class TenantSeeder:
    """Insert one tenant's rows for integration tests; every id is globally unique."""

    def __init__(self, tenant_id: str | None = None) -> None:
        self.tenant_id = tenant_id or unique_id("t")

    async def organization(self) -> str:
        async with SessionLocal() as session:
            session.add(Organization(id=self.tenant_id, name=f"Org {self.tenant_id}", is_active=True))
            await session.commit()
        return self.tenant_id

    async def user(self, *, status: str = "active") -> str:
        user_id = unique_id("u")
        await self._add(User(id=user_id, tenant_id=self.tenant_id, username=user_id, status=status))
        return user_id

    async def module(self, *, code: str | None = None, active: bool = True) -> str:
        module_id = unique_id("m")
        await self._add(
            Module(
                id=module_id,
                tenant_id=self.tenant_id,
                name=code or module_id,
                code=code or module_id,
                is_active=active,
            )
        )
        return module_id

    async def role(self, *, parent_id: str | None = None, active: bool = True) -> str:
        role_id = unique_id("r")
        await self._add(
            Role(
                id=role_id,
                tenant_id=self.tenant_id,
                name=role_id,
                code=role_id,
                parent_role_id=parent_id,
                is_active=active,
            )
        )
        return role_id

    async def profile(self, *, active: bool = True) -> str:
        profile_id = unique_id("p")
        await self._add(
            Profile(id=profile_id, tenant_id=self.tenant_id, name=profile_id, code=profile_id, is_active=active)
        )
        return profile_id

    async def permission(self, module_id: str, action: str, *, active: bool = True) -> str:
        permission_id = unique_id("perm")
        await self._add(
            Permission(
                id=permission_id,
                tenant_id=self.tenant_id,
                module_id=module_id,
                action=action,
                is_active=active,
            )
        )
        return permission_id

    async def grant(self, profile_id: str, permission_id: str, effect: str = "allow") -> None:
        await self._add(
            ProfilePermission(
                tenant_id=self.tenant_id,
                profile_id=profile_id,
                permission_id=permission_id,
                effect=effect,
            )
        )

    async def attach(self, role_id: str, profile_id: str) -> None:
        await self._add(RoleProfile(tenant_id=self.tenant_id, role_id=role_id, profile_id=profile_id))

    async def assign(self, user_id: str, role_id: str) -> None:
        await self._add(UserRole(tenant_id=self.tenant_id, user_id=user_id, role_id=role_id))

    async def group(self, *, active: bool = True) -> str:
        group_id = unique_id("g")
        await self._add(Group(id=group_id, tenant_id=self.tenant_id, name=group_id, is_active=active))
        return group_id

    async def join(self, user_id: str, group_id: str) -> None:
        await self._add(UserGroup(tenant_id=self.tenant_id, user_id=user_id, group_id=group_id))

    async def user_share(self, source_user_id: str, target_user_id: str) -> str:
        rule_id = unique_id("sr")
        await self._add(
            SharingRule(
                id=rule_id,
                tenant_id=self.tenant_id,
                rule_type="user_to_user",
                source_user_id=source_user_id,
                target_user_id=target_user_id,
                is_active=True,
            )
        )
        return rule_id

    async def role_with_access(self, module_id: str, actions: tuple[str, ...], effect: str = "allow") -> str:
        # One role holding one profile that carries the given actions on a module.
        role_id = await self.role()
        profile_id = await self.profile()
        for action in actions:
            permission_id = await self.permission(module_id, action)
            await self.grant(profile_id, permission_id, effect)
        await self.attach(role_id, profile_id)
        return role_id

    async def admin(self, module_code: str = "rbac") -> tuple[str, dict[str, str]]:
        # Administrator allowed every action on the admin module; returns (user_id, headers).
        await self.organization()
        module_id = await self.module(code=module_code)
        role_id = await self.role_with_access(module_id, PERMISSION_ACTIONS)
        user_id = await self.user()
        await self.assign(user_id, role_id)
        return user_id, self.headers(user_id)

    def headers(self, user_id: str) -> dict[str, str]:
        return {"X-Tenant-Id": self.tenant_id, "X-User-Id": user_id}

    async def _add(self, row: object) -> None:
        async with SessionLocal() as session:
            session.add(row)
            await session.commit()


async def audit_events_for(tenant_id: str) -> list[AuditEvent]:
    async with SessionLocal() as session:
        result = await session.execute(
            select(AuditEvent).where(AuditEvent.tenant_id == tenant_id).order_by(AuditEvent.id.asc())
        )
        return list(result.scalars().all())
