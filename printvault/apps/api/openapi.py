from __future__ import annotations

from typing import Any

from printvault.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "X-User-Id header is required"),
    403: _response("Forbidden", "QUOTA_EXCEEDED", "Print quota exhausted"),
    404: _response("Not found", "NOT_FOUND", "Ledger entry not found"),
    409: _response("Conflict", "ALREADY_USED", "Print token already fetched"),
    410: _response("Gone", "EXPIRED", "Print token expired"),
    422: _response("Validation error", "INVALID_LAYOUT", "layout_pages must not be empty"),
    502: _response("Upstream failure", "UPSTREAM_FAILURE", "object_store.get failed"),
    503: _response("Unavailable", "FEATURE_DISABLED", "Offline printing is disabled"),
}
