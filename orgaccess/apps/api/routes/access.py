from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from orgaccess.apps.api.deps import Principal, get_current_principal, get_resolver
from orgaccess.apps.api.response import SuccessEnvelope, success_response
from orgaccess.core.config import get_settings
from orgaccess.domain.types import Action
from orgaccess.services.audit import get_request_context
from orgaccess.services.rbac.resolver import AccessDecisionResolver


router = APIRouter(prefix="/access", tags=["access"])


class EvaluateRequest(BaseModel):
    # Defaults to the calling actor; the tenant always comes from the principal.
    actor_id: str | None = Field(default=None, min_length=1, max_length=128)
    module_id: str = Field(min_length=1, max_length=128)
    record_id: str | None = Field(default=None, max_length=256)
    # Owning user of the record; pair sharing rules only apply when it is given.
    record_owner_id: str | None = Field(default=None, min_length=1, max_length=128)
    action: Action

    model_config = {"extra": "forbid"}


class DecisionResponse(BaseModel):
    decision: str
    allowed: bool
    reason: str
    source: str
    signals: list[dict[str, Any]] | None = None


@router.post("/evaluate", response_model=SuccessEnvelope[DecisionResponse])
async def evaluate_access(
    request: Request,
    payload: EvaluateRequest,
    principal: Principal = Depends(get_current_principal),
    resolver: AccessDecisionResolver = Depends(get_resolver),
) -> dict:
    decision = await resolver.evaluate(
        principal.tenant_id,
        payload.actor_id or principal.actor_id,
        payload.module_id,
        payload.record_id,
        payload.action,
        record_owner_id=payload.record_owner_id,
        request_context=get_request_context(request),
    )
    data = decision.as_dict(include_signals=get_settings().authz_include_signals)
    return success_response(request=request, data=DecisionResponse(**data).model_dump(exclude_none=True))
