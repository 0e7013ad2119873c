from __future__ import annotations

from typing import Any

from channelplane.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="EVENT_PAYLOAD_INVALID", message="event body is not valid json"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    403: _response("Forbidden", code="WEBHOOK_SIGNATURE_INVALID", message="signature mismatch"),
    404: _response("Not found", code="NOT_FOUND", message="tenant channel t-1 not found"),
    409: _response(
        "Conflict",
        code="IDENTITY_CONFLICT",
        message="external channel 1234567890 already bound",
        details={"external_id": "1234567890"},
    ),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _response("Upstream error", code="UPSTREAM_ERROR", message="Upstream platform request failed"),
}
