from __future__ import annotations

import json
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from channelplane.apps.api.errors import (
    channelplane_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from channelplane.apps.api.response import API_VERSION, is_versioned_request
from channelplane.apps.api.routes.channels import router as channels_router
from channelplane.apps.api.routes.health import router as health_router
from channelplane.apps.api.routes.ops import router as ops_router
from channelplane.apps.api.routes.webhooks import router as webhooks_router
from channelplane.core.config import get_settings
from channelplane.core.errors import ChannelPlaneError
from channelplane.core.logging import configure_logging
from channelplane.services.telemetry import record_request


_ENVELOPE_EXEMPT_PREFIXES = ("/v1/openapi.json", "/v1/docs")
_PUBLIC_PATHS = {"/v1/health", "/v1/webhooks/upstream"}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} API", docs_url="/v1/docs", openapi_url="/v1/openapi.json")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        # Wrap bare JSON bodies on versioned routes so every success shares one envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
        ):
            raw_body = getattr(response, "body", None)
            payload = None
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
            is_enveloped = isinstance(payload, dict) and "data" in payload and isinstance(payload.get("meta"), dict)
            if payload is not None and not is_enveloped:
                wrapped = JSONResponse(
                    content={"data": payload, "meta": {"request_id": request_id, "api_version": API_VERSION}},
                    status_code=response.status_code,
                )
                for key, value in response.headers.items():
                    if key.lower() not in {"content-length", "content-type"}:
                        wrapped.headers[key] = value
                response = wrapped
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(ChannelPlaneError)
    async def _channelplane_exception_handler(request: Request, exc: ChannelPlaneError):
        return await channelplane_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Upstream delivers events here; intake only enqueues.
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(channels_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Ops routes require the bearer token; health and the upstream webhook do not.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title=app.title, version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
