from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from leasekeeper.apps.api.errors import (
    http_exception_handler,
    leasekeeper_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from leasekeeper.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from leasekeeper.apps.api.routes.artifacts import router as artifacts_router
from leasekeeper.apps.api.routes.audit import router as audit_router
from leasekeeper.apps.api.routes.health import router as health_router
from leasekeeper.apps.api.routes.license import router as license_router
from leasekeeper.apps.api.routes.vms import router as vms_router
from leasekeeper.core.config import get_settings
from leasekeeper.core.errors import LeaseKeeperError
from leasekeeper.core.logging import configure_logging
from leasekeeper.persistence.guards import TenantPredicateError


logger = logging.getLogger("leasekeeper.access")


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title=f"{get_settings().app_name} API", openapi_url=f"/{API_VERSION}/openapi.json")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.info(
            "request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    app.add_exception_handler(LeaseKeeperError, leasekeeper_exception_handler)
    app.add_exception_handler(TenantPredicateError, tenant_predicate_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(license_router, prefix=f"/{API_VERSION}")
    app.include_router(artifacts_router, prefix=f"/{API_VERSION}")
    app.include_router(vms_router, prefix=f"/{API_VERSION}")
    # Admin-only generic audit trail for security investigations.
    app.include_router(audit_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth into every operation except the public health probes.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        public_paths = {f"/{API_VERSION}/health", f"/{API_VERSION}/health/storage"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
