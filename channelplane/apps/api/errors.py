from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from channelplane.apps.api.response import error_response, is_versioned_request
from channelplane.core.errors import (
    ChannelPlaneError,
    CredentialUnavailableError,
    EventPayloadError,
    IdentityConflictError,
    KillSwitchActiveError,
    NotFoundError,
    UpstreamError,
    UpstreamRateLimitedError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[ChannelPlaneError], int, str], ...] = (
    (IdentityConflictError, 409, "IDENTITY_CONFLICT"),
    (KillSwitchActiveError, 409, "KILL_SWITCH_ACTIVE"),
    (NotFoundError, 404, "NOT_FOUND"),
    (WebhookSignatureError, 403, "WEBHOOK_SIGNATURE_INVALID"),
    (EventPayloadError, 400, "EVENT_PAYLOAD_INVALID"),
    (CredentialUnavailableError, 409, "CREDENTIAL_UNAVAILABLE"),
    (UpstreamRateLimitedError, 503, "UPSTREAM_RATE_LIMITED"),
    (UpstreamError, 502, "UPSTREAM_ERROR"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def channelplane_exception_handler(request: Request, exc: ChannelPlaneError) -> JSONResponse:
    # Map domain errors to stable codes; upstream bodies never reach the client.
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 500, "INTERNAL_ERROR"
    details: dict[str, Any] | None = None
    message = str(exc)
    if isinstance(exc, IdentityConflictError):
        details = {"external_id": exc.external_id}
    if isinstance(exc, UpstreamError):
        message = "Upstream platform request failed"
    if status_code >= 500:
        logger.warning("request_failed path=%s code=%s error=%s", request.url.path, code, exc)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_request_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
