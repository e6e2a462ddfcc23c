from __future__ import annotations

from typing import Any

from leasekeeper.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "success": False,
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
        _error_example(code="BAD_REQUEST", message="module is required", details={"field": "module"}),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="UNAUTHORIZED", message="Invalid lease token signature"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="VM_OWNER_MISMATCH", message="VM is owned by another user"),
    ),
    404: _response(
        "Not found",
        _error_example(code="LEASE_NOT_FOUND", message="Execution lease not found"),
    ),
    409: _response(
        "Conflict",
        _error_example(code="LEASE_EXPIRED", message="Execution lease is expired"),
    ),
    500: _response(
        "Internal error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
}

STORAGE_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    502: _response(
        "Storage or audit backend failure",
        _error_example(code="S3_PRESIGN_FAILED", message="Failed to generate presigned S3 download URL"),
    ),
    503: _response(
        "Storage not configured",
        _error_example(code="S3_NOT_CONFIGURED", message="STORAGE_PROVIDER is set to none"),
    ),
}
