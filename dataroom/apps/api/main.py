from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from dataroom.apps.api.errors import register_exception_handlers
from dataroom.apps.api.response import API_VERSION
from dataroom.apps.api.routes.access_logs import router as access_logs_router
from dataroom.apps.api.routes.documents import router as documents_router
from dataroom.apps.api.routes.health import router as health_router
from dataroom.apps.api.routes.links import router as links_router
from dataroom.apps.api.routes.rooms import router as rooms_router
from dataroom.apps.api.routes.share import router as share_router
from dataroom.apps.api.routes.viewers import router as viewers_router
from dataroom.core.config import get_settings
from dataroom.core.logging import configure_logging


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/v1/health", "/v1/share/{token}"}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Data Room API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request ids or assign a new one; audit rows carry it.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    register_exception_handlers(app)

    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(rooms_router, prefix=prefix)
    app.include_router(viewers_router, prefix=prefix)
    app.include_router(documents_router, prefix=prefix)
    app.include_router(links_router, prefix=prefix)
    app.include_router(access_logs_router, prefix=prefix)
    # Anonymous link redemption; answers every refusal with the same 403.
    app.include_router(share_router, prefix=prefix)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="Data Room API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Document the gateway identity headers on every non-public operation.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Data Room API", version=API_VERSION, routes=app.routes)
        schema["servers"] = [{"url": settings.public_base_url}]
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["TenantHeaders"] = {"type": "apiKey", "in": "header", "name": "X-Tenant-Id"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"TenantHeaders": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
