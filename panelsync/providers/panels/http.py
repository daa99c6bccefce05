from __future__ import annotations

from typing import Any

import httpx

from panelsync.core.config import get_settings
from panelsync.core.errors import PanelRejectedError, TransportError, TransportTimeoutError


_shared_client: httpx.AsyncClient | None = None


def get_panel_http_client() -> httpx.AsyncClient:
    # One pooled client per process; the timeout applies to every panel call.
    global _shared_client
    if _shared_client is None or _shared_client.is_closed:
        timeout_s = get_settings().panel_http_timeout_s
        _shared_client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s))
    return _shared_client


async def close_panel_http_client() -> None:
    global _shared_client
    if _shared_client is not None and not _shared_client.is_closed:
        await _shared_client.aclose()
    _shared_client = None


def panel_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def translate_transport_error(exc: httpx.HTTPError, *, panel_name: str, url: str) -> Exception:
    # Timeouts stay distinguishable from every other transport failure.
    if isinstance(exc, httpx.TimeoutException):
        return TransportTimeoutError(f"{panel_name}: request to {url} timed out ({exc.__class__.__name__})")
    return TransportError(f"{panel_name}: request to {url} failed: {exc}")


def response_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def error_detail(response: httpx.Response) -> str:
    """Extract the panel's own error text without paraphrasing it.

    Both panel families are FastAPI apps: ``detail`` is either a string or a list
    of validation errors with ``loc``/``msg`` keys.
    """
    payload = response_json(response)
    if isinstance(payload, dict) and "detail" in payload:
        detail = payload["detail"]
        if isinstance(detail, str):
            return detail
        if isinstance(detail, list):
            parts = []
            for item in detail:
                if isinstance(item, dict):
                    loc = ".".join(str(part) for part in item.get("loc") or ["field"])
                    parts.append(f"{loc}: {item.get('msg')}")
                else:
                    parts.append(str(item))
            return ", ".join(parts)
        return str(detail)
    text = response.text.strip()
    return text or f"HTTP {response.status_code}"


def rejected(response: httpx.Response, *, panel_name: str) -> PanelRejectedError:
    detail = error_detail(response)
    return PanelRejectedError(
        f"{panel_name} returned {response.status_code}: {detail}",
        status_code=response.status_code,
        body=response_json(response),
    )
