from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping the schema portable for sqlite-backed tests.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# sqlite only autoincrements INTEGER primary keys.
AuditIdType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Organization(Base):
    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),
        # Composite key target so memberships can reference (tenant_id, id).
        UniqueConstraint("tenant_id", "id", name="uq_users_tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    username: Mapped[str] = mapped_column(String)
    # Lifecycle state; only active users accumulate signals.
    status: Mapped[str] = mapped_column(String, default="active", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Module(Base):
    __tablename__ = "modules"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_modules_tenant_code"),
        UniqueConstraint("tenant_id", "id", name="uq_modules_tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    code: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sort_order: Mapped[int | None] = mapped_column(Integer, nullable=True)


class Role(Base):
    __tablename__ = "roles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_roles_tenant_code"),
        UniqueConstraint("tenant_id", "id", name="uq_roles_tenant_id"),
        Index("ix_roles_parent_role_id", "parent_role_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    code: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Plain FK: the database cannot express same-tenant or acyclic parents, the hierarchy service does.
    parent_role_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("roles.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)


class Profile(Base):
    __tablename__ = "profiles"
    __table_args__ = (
        UniqueConstraint("tenant_id", "code", name="uq_profiles_tenant_code"),
        UniqueConstraint("tenant_id", "id", name="uq_profiles_tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    code: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "module_id", "action", name="uq_permissions_tenant_module_action"),
        UniqueConstraint("tenant_id", "id", name="uq_permissions_tenant_id"),
        ForeignKeyConstraint(
            ["tenant_id", "module_id"],
            ["modules.tenant_id", "modules.id"],
            ondelete="CASCADE",
            name="fk_permissions_module",
        ),
        CheckConstraint(
            "action IN ('create', 'read', 'update', 'delete', 'export')",
            name="ck_permissions_action",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    module_id: Mapped[str] = mapped_column(String)
    action: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ProfilePermission(Base):
    __tablename__ = "profile_permissions"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "profile_id"],
            ["profiles.tenant_id", "profiles.id"],
            ondelete="CASCADE",
            name="fk_profile_permissions_profile",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "permission_id"],
            ["permissions.tenant_id", "permissions.id"],
            ondelete="CASCADE",
            name="fk_profile_permissions_permission",
        ),
        CheckConstraint("effect IN ('allow', 'deny')", name="ck_profile_permissions_effect"),
    )

    # One effect per (profile, permission) is enforced by the primary key.
    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    profile_id: Mapped[str] = mapped_column(String, primary_key=True)
    permission_id: Mapped[str] = mapped_column(String, primary_key=True)
    effect: Mapped[str] = mapped_column(String)


class RoleProfile(Base):
    __tablename__ = "role_profiles"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "role_id"],
            ["roles.tenant_id", "roles.id"],
            ondelete="CASCADE",
            name="fk_role_profiles_role",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "profile_id"],
            ["profiles.tenant_id", "profiles.id"],
            ondelete="CASCADE",
            name="fk_role_profiles_profile",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    role_id: Mapped[str] = mapped_column(String, primary_key=True)
    profile_id: Mapped[str] = mapped_column(String, primary_key=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)


class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_groups_tenant_name"),
        UniqueConstraint("tenant_id", "id", name="uq_groups_tenant_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)


class UserGroup(Base):
    __tablename__ = "user_groups"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="CASCADE",
            name="fk_user_groups_user",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "group_id"],
            ["groups.tenant_id", "groups.id"],
            ondelete="CASCADE",
            name="fk_user_groups_group",
        ),
    )

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    group_id: Mapped[str] = mapped_column(String, primary_key=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)


class UserRole(Base):
    __tablename__ = "user_roles"
    __table_args__ = (
        ForeignKeyConstraint(
            ["tenant_id", "user_id"],
            ["users.tenant_id", "users.id"],
            ondelete="CASCADE",
            name="fk_user_roles_user",
        ),
        ForeignKeyConstraint(
            ["tenant_id", "role_id"],
            ["roles.tenant_id", "roles.id"],
            ondelete="CASCADE",
            name="fk_user_roles_role",
        ),
        Index("ix_user_roles_tenant_user", "tenant_id", "user_id"),
    )

    tenant_id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    role_id: Mapped[str] = mapped_column(String, primary_key=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    assigned_by: Mapped[str | None] = mapped_column(String, nullable=True)


class SharingRule(Base):
    __tablename__ = "sharing_rules"
    __table_args__ = (
        CheckConstraint(
            "(rule_type = 'user_to_user' AND source_user_id IS NOT NULL AND target_user_id IS NOT NULL"
            " AND source_role_id IS NULL AND target_role_id IS NULL"
            " AND source_group_id IS NULL AND target_group_id IS NULL) OR "
            "(rule_type = 'role_to_role' AND source_role_id IS NOT NULL AND target_role_id IS NOT NULL"
            " AND source_user_id IS NULL AND target_user_id IS NULL"
            " AND source_group_id IS NULL AND target_group_id IS NULL) OR "
            "(rule_type = 'group_to_group' AND source_group_id IS NOT NULL AND target_group_id IS NOT NULL"
            " AND source_user_id IS NULL AND target_user_id IS NULL"
            " AND source_role_id IS NULL AND target_role_id IS NULL) OR "
            "(rule_type = 'record_level' AND source_user_id IS NULL AND target_user_id IS NULL"
            " AND source_role_id IS NULL AND target_role_id IS NULL"
            " AND source_group_id IS NULL AND target_group_id IS NULL)",
            name="valid_sharing_rule_type",
        ),
        Index("ix_sharing_rules_tenant_active", "tenant_id", "is_active"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    rule_type: Mapped[str] = mapped_column(String)
    # Plain FKs; tenant ownership of endpoints is checked on read and write.
    source_user_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    target_user_id: Mapped[str | None] = mapped_column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True)
    source_role_id: Mapped[str | None] = mapped_column(String, ForeignKey("roles.id", ondelete="CASCADE"), nullable=True)
    target_role_id: Mapped[str | None] = mapped_column(String, ForeignKey("roles.id", ondelete="CASCADE"), nullable=True)
    source_group_id: Mapped[str | None] = mapped_column(String, ForeignKey("groups.id", ondelete="CASCADE"), nullable=True)
    target_group_id: Mapped[str | None] = mapped_column(String, ForeignKey("groups.id", ondelete="CASCADE"), nullable=True)
    module_id: Mapped[str | None] = mapped_column(String, ForeignKey("modules.id", ondelete="CASCADE"), nullable=True)
    # Record-level rules name one record and one recipient.
    record_id: Mapped[str | None] = mapped_column(String, nullable=True)
    shared_with_user_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    shared_with_group_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("groups.id", ondelete="CASCADE"), nullable=True
    )
    shared_with_role_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("roles.id", ondelete="CASCADE"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)


class RecordShare(Base):
    __tablename__ = "record_shares"
    __table_args__ = (
        CheckConstraint(
            "(CASE WHEN shared_with_user_id IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN shared_with_group_id IS NULL THEN 0 ELSE 1 END"
            " + CASE WHEN shared_with_role_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="ck_record_shares_single_target",
        ),
        Index("ix_record_shares_tenant_module_record", "tenant_id", "module_id", "record_id"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, ForeignKey("organizations.id", ondelete="CASCADE"), index=True)
    module_id: Mapped[str] = mapped_column(String, ForeignKey("modules.id", ondelete="CASCADE"))
    record_id: Mapped[str] = mapped_column(String)
    shared_with_user_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    shared_with_group_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("groups.id", ondelete="CASCADE"), nullable=True
    )
    shared_with_role_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("roles.id", ondelete="CASCADE"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_tenant_occurred_at", "tenant_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(AuditIdType, primary_key=True, autoincrement=True)
    # When the decision or change happened; created_at is when the row landed.
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    tenant_id: Mapped[str | None] = mapped_column(String, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    role_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # create/update/delete for administrative changes, evaluate for decisions.
    action: Mapped[str] = mapped_column(String, index=True)
    status: Mapped[str] = mapped_column(String)
    module_id: Mapped[str | None] = mapped_column(String, nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    entity_id: Mapped[str | None] = mapped_column(String, nullable=True)
    old_values: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    new_values: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JsonType, default=dict)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
