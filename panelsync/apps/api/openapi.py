from __future__ import annotations

from typing import Any

from panelsync.apps.api.response import ErrorEnvelope


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


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    401: _response(
        "Unauthorized",
        _error_example(code="unauthorized", message="Missing bearer token"),
    ),
    404: _response(
        "Not found",
        _error_example(code="subscription_not_found", message="subscription sub-1 not found"),
    ),
    409: _response(
        "Already provisioned or wrong lifecycle state",
        _error_example(
            code="already_provisioned",
            message="subscription sub-1 is already provisioned on panel panel-de-1",
        ),
    ),
    422: _response(
        "Panel binding configuration fault",
        _error_example(
            code="family_mismatch",
            message="plan plus requires marzban panels but is bound to nl-1=marzneshin",
        ),
    ),
    502: _response(
        "Panel rejected the call or could not be reached",
        _error_example(
            code="panel_rejected",
            message="de-1 returned 409: User already exists",
            details={"panel_status_code": 409},
        ),
    ),
    504: _response(
        "Panel timed out",
        _error_example(code="transport_timeout", message="de-1 timed out calling https://de-1/api/user"),
    ),
}
