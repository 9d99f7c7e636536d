from __future__ import annotations

from typing import Any

from authbridge.apps.api.response import ErrorEnvelope


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
    400: _response(
        "Bad request",
        _error_example(
            code="VALIDATION_ERROR",
            message="Password does not meet requirements",
            details={"requirements": ["at least one digit"]},
        ),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Invalid credentials"),
    ),
    403: _response(
        "Forbidden or refresh token reuse detected",
        _error_example(code="TOKEN_REUSE_DETECTED", message="All sessions have been terminated"),
    ),
    404: _response(
        "Not found",
        _error_example(code="NOT_FOUND", message="Device not found"),
    ),
    409: _response(
        "Duplicate identity",
        _error_example(
            code="CONFLICT",
            message="An account with this email already exists",
            details={"field": "email"},
        ),
    ),
    422: _response(
        "Validation error",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    423: _response(
        "Account locked",
        _error_example(
            code="ACCOUNT_LOCKED",
            message="Account temporarily locked due to repeated failed logins",
            details={"locked_until": "2025-01-01T12:30:00+00:00"},
        ),
    ),
    429: _response(
        "Rate limited",
        _error_example(
            code="RATE_LIMITED",
            message="Too many attempts, try again later",
            details={"action": "login", "retry_after_s": 60},
        ),
    ),
    500: _response(
        "Internal or identity provider error",
        _error_example(code="PROVIDER_UNAVAILABLE", message="Authentication service unavailable"),
    ),
}
