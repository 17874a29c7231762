from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from orgaccess.core.config import get_settings
from orgaccess.domain.models import AuditEvent
from orgaccess.domain.types import AuditAction, AuditStatus
from orgaccess.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

# Key fragments whose values never reach audit_events.
REDACTED_KEY_FRAGMENTS = ("api_key", "authorization", "token", "secret", "password")
REDACTED = "[REDACTED]"


def sanitize_metadata(value: Any) -> Any:
    """Return a copy of ``value`` with credential-like keys masked at any depth."""
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _is_redacted_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def _is_redacted_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in REDACTED_KEY_FRAGMENTS)


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Correlation fields copied onto every event raised while serving the request.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    return {
        "request_id": getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id"),
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


@dataclass(frozen=True)
class AccessAuditEvent:
    """One decision or administrative change, handed to an ``AuditSink``."""

    tenant_id: str | None
    actor_id: str | None
    action: AuditAction
    status: AuditStatus
    entity_type: str
    entity_id: str | None = None
    module_id: str | None = None
    role_id: str | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_row(self) -> AuditEvent:
        return AuditEvent(
            occurred_at=self.occurred_at,
            tenant_id=self.tenant_id,
            actor_id=self.actor_id,
            role_id=self.role_id,
            action=self.action.value,
            status=self.status.value,
            module_id=self.module_id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            old_values=sanitize_metadata(self.old_values) if self.old_values is not None else None,
            new_values=sanitize_metadata(self.new_values) if self.new_values is not None else None,
            metadata_json=sanitize_metadata(self.metadata),
            error_code=self.error_code,
            request_id=self.request_id,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
        )


class AuditSink(Protocol):
    async def emit(self, event: AccessAuditEvent) -> None: ...


class DatabaseAuditSink:
    # Writes through its own session so an audit row never rides on the caller's transaction.

    def __init__(self, *, best_effort: bool = True) -> None:
        self.best_effort = best_effort

    async def emit(self, event: AccessAuditEvent) -> None:
        await record_event(event, best_effort=self.best_effort)


async def record_event(
    event: AccessAuditEvent,
    *,
    session: AsyncSession | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Persist ``event`` to audit_events.

    Without ``session`` a short-lived session is opened and committed. With one, the row is
    added to it and committed only when ``commit`` is set. Write errors are logged; they
    propagate only when ``best_effort`` is off.
    """
    row = event.to_row()
    try:
        if session is None:
            async with SessionLocal() as audit_session:
                audit_session.add(row)
                await audit_session.commit()
        else:
            session.add(row)
            if commit:
                await session.commit()
    except SQLAlchemyError as exc:
        if session is not None and commit:
            await session.rollback()
        log = logger.warning if best_effort else logger.error
        log(
            "audit_event_write_failed action=%s entity_type=%s tenant_id=%s request_id=%s",
            event.action.value,
            event.entity_type,
            event.tenant_id,
            event.request_id,
            exc_info=exc,
        )
        if not best_effort:
            raise


async def emit_event(sink: AuditSink | None, event: AccessAuditEvent) -> bool:
    """Hand an event to the sink without letting it delay or fail the caller.

    Returns ``False`` when the event was dropped (disabled, timed out, or the sink raised).
    """
    settings = get_settings()
    if sink is None or not settings.authz_audit_enabled:
        return False
    timeout_s = max(settings.authz_audit_timeout_ms, 1) / 1000.0
    try:
        await asyncio.wait_for(sink.emit(event), timeout=timeout_s)
    except asyncio.TimeoutError:
        logger.warning(
            "audit_sink_timeout action=%s entity_type=%s tenant_id=%s timeout_ms=%s",
            event.action.value,
            event.entity_type,
            event.tenant_id,
            settings.authz_audit_timeout_ms,
        )
        return False
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "audit_sink_failed action=%s entity_type=%s tenant_id=%s",
            event.action.value,
            event.entity_type,
            event.tenant_id,
            exc_info=exc,
        )
        return False
    return True
