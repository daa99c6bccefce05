from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable

import httpx

from panelsync.core.config import get_settings
from panelsync.core.errors import PanelAuthError
from panelsync.domain.models import Panel
from panelsync.providers.panels.http import (
    error_detail,
    get_panel_http_client,
    panel_url,
    rejected,
    response_json,
    translate_transport_error,
)
from panelsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float


class TokenCache:
    """Process-wide admin bearer tokens, keyed by panel id.

    Refreshes are single-flight per panel: callers that find no valid token
    queue on that panel's lock, and whoever gets it second re-reads the cache
    instead of logging in again.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        ttl_s: int | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._client = client
        self._ttl_s = ttl_s if ttl_s is not None else get_settings().panel_token_ttl_s
        self._time = time_source or time.monotonic
        self._tokens: dict[str, CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_client(self) -> httpx.AsyncClient:
        return self._client or get_panel_http_client()

    def _lock_for(self, panel_id: str) -> asyncio.Lock:
        lock = self._locks.get(panel_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[panel_id] = lock
        return lock

    def _cached(self, panel_id: str) -> str | None:
        # Expired entries are left in place; the next login overwrites them.
        cached = self._tokens.get(panel_id)
        if cached is None or cached.expires_at <= self._time():
            return None
        return cached.token

    async def get_token(self, panel: Panel, *, token_path: str) -> str:
        token = self._cached(panel.id)
        if token is not None:
            return token
        async with self._lock_for(panel.id):
            # Another caller may have finished the login while we waited.
            token = self._cached(panel.id)
            if token is not None:
                return token
            token = await self._login(panel, token_path)
            self._tokens[panel.id] = CachedToken(token=token, expires_at=self._time() + self._ttl_s)
            return token

    def invalidate(self, panel_id: str, token: str | None = None) -> None:
        # Drop only the token the caller saw rejected; a newer one may already be cached.
        cached = self._tokens.get(panel_id)
        if cached is None:
            return
        if token is None or cached.token == token:
            self._tokens.pop(panel_id, None)

    def clear(self) -> None:
        self._tokens.clear()

    async def _login(self, panel: Panel, token_path: str) -> str:
        url = panel_url(panel.base_url, token_path)
        increment_counter(f"panel_logins_total.{panel.id}")
        logger.info("panel_login panel=%s family=%s", panel.name, panel.family)
        try:
            response = await self._get_client().post(
                url,
                data={
                    "grant_type": "password",
                    "username": panel.username,
                    "password": panel.password,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise translate_transport_error(exc, panel_name=panel.name, url=url) from exc

        if response.status_code >= 500:
            raise rejected(response, panel_name=panel.name)
        if response.status_code >= 400:
            logger.warning("panel_login_rejected panel=%s status=%s", panel.name, response.status_code)
            raise PanelAuthError(
                f"{panel.name} rejected admin credentials ({response.status_code}): {error_detail(response)}"
            )
        payload = response_json(response)
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise PanelAuthError(f"{panel.name} login response carried no access_token")
        return str(token)


_token_cache: TokenCache | None = None


def get_token_cache() -> TokenCache:
    global _token_cache
    if _token_cache is None:
        _token_cache = TokenCache()
    return _token_cache


def reset_token_cache() -> None:
    global _token_cache
    _token_cache = None
