from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION

    @classmethod
    def for_request(cls, request: Request) -> ResponseMeta:
        return cls(request_id=get_request_id(request))


class ErrorDetail(BaseModel):
    # code is the error kind, e.g. "family_mismatch" or "transport_timeout".
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # The middleware assigns one per request; handlers that run before it still need an id.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = f"req_{uuid4().hex}"
    request.state.request_id = request_id
    return request_id


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": data, "meta": ResponseMeta.for_request(request).model_dump()}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details or None)
    return {
        "error": error.model_dump(exclude_none=True),
        "meta": ResponseMeta.for_request(request).model_dump(),
    }
