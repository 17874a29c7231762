from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Action(str, Enum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    EXPORT = "export"


class Effect(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class SharingRuleType(str, Enum):
    USER_TO_USER = "user_to_user"
    ROLE_TO_ROLE = "role_to_role"
    GROUP_TO_GROUP = "group_to_group"
    RECORD_LEVEL = "record_level"


class PrincipalKind(str, Enum):
    USER = "user"
    ROLE = "role"
    GROUP = "group"


class GrantKind(str, Enum):
    USER = "user"
    ROLE = "role"
    GROUP = "group"
    RECORD = "record"


class AuditAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    EVALUATE = "evaluate"


class AuditStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class SignalSource(str, Enum):
    ROLE = "role"
    GROUP = "group"
    SHARING = "sharing"
    DEFAULT = "default"


@dataclass(frozen=True, order=True)
class TenantRef:
    # Composite reference; a bare local id never crosses a component boundary.
    tenant_id: str
    local_id: str

    def __str__(self) -> str:
        return f"{self.tenant_id}:{self.local_id}"


@dataclass(frozen=True)
class PrincipalRef:
    kind: PrincipalKind
    ref: TenantRef


@dataclass(frozen=True)
class Resource:
    module: TenantRef
    record_id: str | None = None
    # User who owns the record; pair sharing rules need it to match.
    owner: TenantRef | None = None


@dataclass(frozen=True)
class Grant:
    # A sharing match. For pair rules source_principal is the rule principal the actor matched
    # and via is the target principal covering the record owner.
    kind: GrantKind
    source_principal: PrincipalRef | None
    rule_id: str
    via: PrincipalRef | None = None


@dataclass(frozen=True)
class Signal:
    source: SignalSource
    effect: Effect
    detail: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"source": self.source.value, "effect": self.effect.value, **self.detail}


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    source: SignalSource
    signals: tuple[Signal, ...] = ()

    @property
    def effect(self) -> Effect:
        return Effect.ALLOW if self.allowed else Effect.DENY

    def as_dict(self, *, include_signals: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "decision": self.effect.value,
            "allowed": self.allowed,
            "reason": self.reason,
            "source": self.source.value,
        }
        if include_signals:
            payload["signals"] = [signal.as_dict() for signal in self.signals]
        return payload
