from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from authbridge.apps.api.errors import (
    auth_flow_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from authbridge.apps.api.response import API_VERSION, is_versioned_request
from authbridge.apps.api.routes.auth import router as auth_router
from authbridge.apps.api.routes.compliance import router as compliance_router
from authbridge.apps.api.routes.health import router as health_router
from authbridge.apps.api.routes.mfa import router as mfa_router
from authbridge.apps.api.routes.roles import router as roles_router
from authbridge.apps.api.routes.sessions import router as sessions_router
from authbridge.core.config import get_settings
from authbridge.core.errors import AuthFlowError
from authbridge.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)
_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/auth/login",
    "/v1/auth/register",
    "/v1/auth/confirm",
    "/v1/auth/resend-code",
    "/v1/auth/forgot-password",
    "/v1/auth/reset-password",
    "/v1/auth/refresh",
    "/v1/auth/check-duplicate",
    "/v1/auth/mfa/verify-login",
}
_ROUTERS = (
    health_router,
    auth_router,
    mfa_router,
    sessions_router,
    roles_router,
    compliance_router,
)


def _is_enveloped(payload: object) -> bool:
    return (
        isinstance(payload, dict)
        and "data" in payload
        and isinstance(payload.get("meta"), dict)
        and payload["meta"].get("api_version") == API_VERSION
    )


async def _wrap_in_envelope(response: Response, request_id: str) -> Response:
    # Buffer the streamed body so a bare JSON payload can be re-emitted inside the envelope.
    body = b"".join([chunk async for chunk in response.body_iterator])
    headers = {
        key: value
        for key, value in response.headers.items()
        if key.lower() not in {"content-length", "content-type"}
    }
    try:
        payload = json.loads(body) if body else None
    except ValueError:
        payload = None
    if payload is None or _is_enveloped(payload):
        return Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.headers.get("content-type"),
        )
    wrapped = {"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}}
    return JSONResponse(content=wrapped, status_code=response.status_code, headers=headers)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="AuthBridge API", docs_url=None, redoc_url=None)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.status_code != 204
            and response.headers.get("content-type", "").startswith("application/json")
        ):
            response = await _wrap_in_envelope(response, request_id)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
            request_id,
        )
        return response

    origins = [item.strip() for item in settings.cors_allowed_origins.split(",") if item.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "Retry-After"],
    )

    @app.exception_handler(AuthFlowError)
    async def _auth_flow_exception_handler(request: Request, exc: AuthFlowError):
        return await auth_flow_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Unversioned aliases (/auth/...) answer with bare payloads and stay out of the schema.
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="AuthBridge API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="AuthBridge API",
            version=API_VERSION,
            routes=app.routes,
        )
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    logger.info(
        "app_created environment=%s provider=%s mode=%s",
        settings.environment,
        settings.auth_provider_type,
        settings.auth_provider_mode,
    )
    return app


app = create_app()
