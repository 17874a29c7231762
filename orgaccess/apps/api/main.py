from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from orgaccess.apps.api.errors import (
    http_exception_handler,
    orgaccess_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from orgaccess.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from orgaccess.apps.api.routes.access import router as access_router
from orgaccess.apps.api.routes.audit import router as audit_router
from orgaccess.apps.api.routes.roles import router as roles_router
from orgaccess.apps.api.routes.sharing import router as sharing_router
from orgaccess.core.config import get_settings
from orgaccess.core.errors import OrgAccessError
from orgaccess.core.logging import configure_logging
from orgaccess.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=get_settings().app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Echo the caller's request id, or mint one.
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed path=%s status=%s latency_ms=%.1f request_id=%s",
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(OrgAccessError, orgaccess_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(access_router, prefix=f"/{API_VERSION}")
    app.include_router(roles_router, prefix=f"/{API_VERSION}")
    app.include_router(sharing_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
