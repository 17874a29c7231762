from __future__ import annotations

import pytest

from orgaccess.core.errors import TenantViolationError
from orgaccess.domain.models import RecordShare, SharingRule
from orgaccess.domain.types import Action, Effect, PrincipalKind, SharingRuleType, TenantRef
from orgaccess.persistence.db import SessionLocal
from orgaccess.persistence.repos import rbac as rbac_repo
from orgaccess.services.audit import DatabaseAuditSink
from orgaccess.services.rbac.resolver import AccessDecisionResolver
from orgaccess.tests.utils.seed import TenantSeeder, audit_events_for, unique_id


async def _add(row: object) -> None:
    async with SessionLocal() as session:
        session.add(row)
        await session.commit()


@pytest.mark.asyncio
async def test_load_tenant_graph_reads_only_the_tenant() -> None:
    seeder = TenantSeeder()
    await seeder.organization()
    module_id = await seeder.module(code="invoices")
    ceo_id = await seeder.role()
    manager_id = await seeder.role(parent_id=ceo_id)
    profile_id = await seeder.profile()
    permission_id = await seeder.permission(module_id, "read")
    await seeder.grant(profile_id, permission_id, "deny")
    await seeder.attach(ceo_id, profile_id)
    user_id = await seeder.user()
    await seeder.assign(user_id, manager_id)
    group_id = await seeder.group()
    await seeder.join(user_id, group_id)

    other = TenantSeeder()
    await other.organization()
    await other.user()
    await other.role()

    async with SessionLocal() as session:
        graph = await rbac_repo.load_tenant_graph(session, tenant_id=seeder.tenant_id)

    tenant = seeder.tenant_id
    assert set(graph.users) == {TenantRef(tenant, user_id)}
    assert set(graph.roles) == {TenantRef(tenant, ceo_id), TenantRef(tenant, manager_id)}
    assert graph.roles[TenantRef(tenant, manager_id)].parent == TenantRef(tenant, ceo_id)
    assert graph.modules[TenantRef(tenant, module_id)].code == "invoices"
    assert graph.permissions[TenantRef(tenant, permission_id)].action is Action.READ
    expected_effects = {TenantRef(tenant, permission_id): Effect.DENY}
    assert graph.profile_permissions[TenantRef(tenant, profile_id)] == expected_effects
    assert graph.role_profiles[TenantRef(tenant, ceo_id)] == (TenantRef(tenant, profile_id),)
    assert graph.user_roles[TenantRef(tenant, user_id)] == (TenantRef(tenant, manager_id),)
    assert graph.user_groups[TenantRef(tenant, user_id)] == (TenantRef(tenant, group_id),)


@pytest.mark.asyncio
async def test_sharing_rows_are_loaded_as_principals() -> None:
    seeder = TenantSeeder()
    await seeder.organization()
    module_id = await seeder.module()
    owner_id = await seeder.user()
    reader_id = await seeder.user()
    rule_id = unique_id("sr")
    share_id = unique_id("rs")
    await _add(
        SharingRule(
            id=rule_id,
            tenant_id=seeder.tenant_id,
            rule_type="user_to_user",
            source_user_id=owner_id,
            target_user_id=reader_id,
            is_active=True,
        )
    )
    await _add(
        RecordShare(
            id=share_id,
            tenant_id=seeder.tenant_id,
            module_id=module_id,
            record_id="42",
            shared_with_user_id=reader_id,
        )
    )

    async with SessionLocal() as session:
        graph = await rbac_repo.load_tenant_graph(session, tenant_id=seeder.tenant_id)

    (rule,) = graph.sharing_rules
    assert rule.rule_type is SharingRuleType.USER_TO_USER
    assert rule.source.kind is PrincipalKind.USER
    assert rule.source.ref == TenantRef(seeder.tenant_id, owner_id)
    assert rule.target.ref == TenantRef(seeder.tenant_id, reader_id)
    assert rule.shared_with is None
    (share,) = graph.record_shares
    assert share.module == TenantRef(seeder.tenant_id, module_id)
    assert share.shared_with.ref == TenantRef(seeder.tenant_id, reader_id)


@pytest.mark.asyncio
async def test_foreign_parent_keeps_its_owner_and_blocks_evaluation() -> None:
    other = TenantSeeder()
    await other.organization()
    foreign_role = await other.role()

    seeder = TenantSeeder()
    await seeder.organization()
    module_id = await seeder.module()
    role_id = await seeder.role(parent_id=foreign_role)
    user_id = await seeder.user()
    await seeder.assign(user_id, role_id)

    async with SessionLocal() as session:
        graph = await rbac_repo.load_tenant_graph(session, tenant_id=seeder.tenant_id)
    assert graph.roles[TenantRef(seeder.tenant_id, role_id)].parent == TenantRef(other.tenant_id, foreign_role)

    resolver = AccessDecisionResolver(rbac_repo.SqlGraphSource(), audit_sink=DatabaseAuditSink())
    with pytest.raises(TenantViolationError):
        await resolver.evaluate(seeder.tenant_id, user_id, module_id, None, "read")

    events = await audit_events_for(seeder.tenant_id)
    assert [(event.action, event.status, event.error_code) for event in events] == [
        ("evaluate", "failed", "TENANT_VIOLATION")
    ]


@pytest.mark.asyncio
async def test_foreign_sharing_target_blocks_evaluation() -> None:
    other = TenantSeeder()
    await other.organization()
    outsider = await other.user()

    seeder = TenantSeeder()
    await seeder.organization()
    module_id = await seeder.module()
    owner_id = await seeder.user()
    reader_id = await seeder.user()
    await _add(
        SharingRule(
            id=unique_id("sr"),
            tenant_id=seeder.tenant_id,
            rule_type="user_to_user",
            source_user_id=owner_id,
            target_user_id=outsider,
            is_active=True,
        )
    )

    resolver = AccessDecisionResolver(rbac_repo.SqlGraphSource())
    with pytest.raises(TenantViolationError):
        await resolver.evaluate(seeder.tenant_id, reader_id, module_id, None, "read")


@pytest.mark.asyncio
async def test_sql_source_decisions_are_written_to_audit_events() -> None:
    seeder = TenantSeeder()
    await seeder.organization()
    module_id = await seeder.module()
    role_id = await seeder.role_with_access(module_id, ("read",))
    user_id = await seeder.user()
    await seeder.assign(user_id, role_id)

    resolver = AccessDecisionResolver(rbac_repo.SqlGraphSource(), audit_sink=DatabaseAuditSink())
    allowed = await resolver.evaluate(
        seeder.tenant_id, user_id, module_id, "rec-1", "read", request_context={"request_id": "req-loader"}
    )
    denied = await resolver.evaluate(seeder.tenant_id, user_id, module_id, "rec-1", "delete")
    assert allowed.allowed
    assert not denied.allowed

    events = await audit_events_for(seeder.tenant_id)
    assert [event.new_values["decision"] for event in events] == ["allow", "deny"]
    assert events[0].entity_type == "access_decision"
    assert events[0].entity_id == "rec-1"
    assert events[0].module_id == module_id
    assert events[0].request_id == "req-loader"
    assert events[1].new_values["reason"] == "default_deny"


@pytest.mark.asyncio
async def test_owner_lookup_and_unknown_ids() -> None:
    seeder = TenantSeeder()
    await seeder.organization()
    user_id = await seeder.user()
    missing = unique_id("missing")

    graph = await rbac_repo.SqlGraphSource().load(seeder.tenant_id, lookups={"user": [user_id, missing]})
    assert graph.owner_of("user", user_id) == seeder.tenant_id
    assert graph.owner_of("user", missing) is None
    with pytest.raises(ValueError):
        await rbac_repo.SqlGraphSource().load(seeder.tenant_id, lookups={"invoice": [user_id]})
    async with SessionLocal() as session:
        assert await rbac_repo.owner_of(session, "user", user_id) == seeder.tenant_id


@pytest.mark.asyncio
async def test_sql_source_reads_lookups_and_graph_in_one_snapshot(monkeypatch: pytest.MonkeyPatch) -> None:
    seeder = TenantSeeder()
    await seeder.organization()
    user_id = await seeder.user()

    sessions: list[object] = []
    statements: list[object] = []
    real_begin_snapshot = rbac_repo.begin_snapshot
    real_owners_of = rbac_repo.owners_of
    real_load = rbac_repo.load_tenant_graph

    async def recording_begin_snapshot(session):
        sessions.append(session)
        statements.append("snapshot")
        await real_begin_snapshot(session)

    async def recording_owners_of(session, model, ids):
        sessions.append(session)
        statements.append("owners")
        return await real_owners_of(session, model, ids)

    async def recording_load(session, *, tenant_id):
        sessions.append(session)
        statements.append("graph")
        return await real_load(session, tenant_id=tenant_id)

    monkeypatch.setattr(rbac_repo, "begin_snapshot", recording_begin_snapshot)
    monkeypatch.setattr(rbac_repo, "owners_of", recording_owners_of)
    monkeypatch.setattr(rbac_repo, "load_tenant_graph", recording_load)

    graph = await rbac_repo.SqlGraphSource().load(seeder.tenant_id, lookups={"user": [user_id]})
    assert graph.owner_of("user", user_id) == seeder.tenant_id
    # The isolation level is pinned first, then every read shares that session.
    assert statements[:3] == ["snapshot", "owners", "graph"]
    assert set(statements[3:]) <= {"owners"}
    assert len({id(session) for session in sessions}) == 1


@pytest.mark.asyncio
async def test_pair_rule_applies_to_records_of_the_target_owner() -> None:
    seeder = TenantSeeder()
    await seeder.organization()
    module_id = await seeder.module()
    reader_id = await seeder.user()
    owner_id = await seeder.user()
    await _add(
        SharingRule(
            id=unique_id("sr"),
            tenant_id=seeder.tenant_id,
            rule_type="user_to_user",
            source_user_id=reader_id,
            target_user_id=owner_id,
            is_active=True,
        )
    )

    resolver = AccessDecisionResolver(rbac_repo.SqlGraphSource())
    shared = await resolver.evaluate(seeder.tenant_id, reader_id, module_id, "rec-1", "read", record_owner_id=owner_id)
    assert shared.allowed
    assert shared.reason == "sharing_rule"
    reverse = await resolver.evaluate(seeder.tenant_id, owner_id, module_id, "rec-2", "read", record_owner_id=reader_id)
    assert not reverse.allowed
    module_wide = await resolver.evaluate(seeder.tenant_id, reader_id, module_id, None, "read")
    assert module_wide.reason == "default_deny"
