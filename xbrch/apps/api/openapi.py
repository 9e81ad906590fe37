from __future__ import annotations

from typing import Any

from xbrch.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation"),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response(
        "Internal error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

QUOTA_ERROR_RESPONSE: dict[int | str, dict[str, Any]] = {
    429: _response(
        "Monthly broadcast quota exhausted",
        _error_example(
            code="QUOTA_EXCEEDED",
            message="Monthly limit reached",
            details={"used": 10, "limit": 10},
        ),
    ),
}
