from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from panelsync.apps.api.response import error_response
from panelsync.core.errors import (
    AccountNotFoundError,
    AlreadyProvisionedError,
    FamilyMismatchError,
    InvalidRequestError,
    NoPanelBoundError,
    NotImplementedForFamilyError,
    PanelAuthError,
    PanelConfigError,
    PanelNotFoundError,
    PanelRejectedError,
    PanelSyncError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
    TransportError,
    TransportTimeoutError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "bad_request",
    401: "unauthorized",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "internal_error",
}

# First match wins; order subclasses before their bases.
_STATUS_BY_ERROR: list[tuple[type[PanelSyncError], int]] = [
    (SubscriptionNotFoundError, 404),
    (PanelNotFoundError, 404),
    (AccountNotFoundError, 404),
    (AlreadyProvisionedError, 409),
    (SubscriptionStateError, 409),
    (NoPanelBoundError, 422),
    (FamilyMismatchError, 422),
    (PanelConfigError, 422),
    (InvalidRequestError, 422),
    (NotImplementedForFamilyError, 501),
    (TransportTimeoutError, 504),
    (TransportError, 502),
    (PanelAuthError, 502),
    (PanelRejectedError, 502),
]


def status_for_error(exc: PanelSyncError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    if isinstance(detail, dict):
        code = str(detail.get("code") or _DEFAULT_ERROR_CODES.get(status_code, "error"))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _DEFAULT_ERROR_CODES.get(status_code, "error"), detail, None
    return _DEFAULT_ERROR_CODES.get(status_code, "error"), "Request failed", None


async def panelsync_error_handler(request: Request, exc: PanelSyncError) -> JSONResponse:
    # Panel error text is passed through verbatim so operators see the real cause.
    status_code = status_for_error(exc)
    details = None
    if isinstance(exc, PanelRejectedError):
        details = {"panel_status_code": exc.status_code}
    if status_code >= 500:
        logger.warning("api_panel_error path=%s kind=%s error=%s", request.url.path, exc.kind, exc)
    payload = error_response(request=request, code=exc.kind, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="request_validation_error",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("api_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="internal_error", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
