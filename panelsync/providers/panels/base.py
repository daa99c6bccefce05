from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol

import httpx

from panelsync.core.config import BYTES_PER_GB, SECONDS_PER_DAY, get_settings
from panelsync.core.errors import (
    InvalidRequestError,
    NotImplementedForFamilyError,
    PanelAuthError,
    PanelRejectedError,
    TransportError,
    TransportTimeoutError,
)
from panelsync.domain.models import Panel, PlanPanelBinding
from panelsync.domain.provisioning import AccountState, CreatedAccount, DateRange, SystemStats
from panelsync.providers.panels.http import (
    get_panel_http_client,
    panel_url,
    rejected,
    response_json,
    translate_transport_error,
)
from panelsync.services.resilience import CircuitBreaker, retry_async
from panelsync.services.telemetry import record_panel_call
from panelsync.services.tokens import TokenCache


logger = logging.getLogger(__name__)

DEFAULT_PROTOCOLS = ["vless", "vmess", "trojan", "shadowsocks"]


class PanelAdapter(Protocol):
    family: str
    last_request: dict[str, Any] | None

    def operation_name(self, operation: str) -> str:
        ...

    async def create_account(
        self, username: str, quota_gb: float, duration_days: int, notes: str
    ) -> CreatedAccount:
        ...

    async def delete_account(self, username: str) -> bool:
        ...

    async def fetch_account(self, username: str) -> AccountState:
        ...

    async def renew_account(self, username: str, quota_gb: float, duration_days: int) -> AccountState:
        ...

    async def search_accounts(self, query: str, *, limit: int = 20) -> list[AccountState]:
        ...

    async def fetch_system_stats(self, date_range: DateRange | None = None) -> SystemStats:
        ...

    async def fetch_panel_config(self) -> dict[str, Any]:
        ...


def quota_to_bytes(quota_gb: float) -> int:
    return int(round(quota_gb * BYTES_PER_GB))


def expire_timestamp(duration_days: int, now: float) -> int:
    return int(now) + int(duration_days) * SECONDS_PER_DAY


def unwrap_items(payload: Any) -> list[Any]:
    # Marzneshin wraps lists as {"items": [...], "total": ...}; Marzban returns them bare.
    if isinstance(payload, dict) and isinstance(payload.get("items"), list):
        return payload["items"]
    if isinstance(payload, list):
        return payload
    return []


class PanelHttpAdapter:
    """Shared HTTP plumbing for panel families.

    Subclasses only describe endpoints and payload shapes. Everything here is
    family-neutral: bearer auth through the token cache with one re-login on
    401, breaker bookkeeping, transport error translation and telemetry.
    """

    family = "unknown"
    token_path = ""

    def __init__(
        self,
        panel: Panel,
        *,
        token_cache: TokenCache,
        binding: PlanPanelBinding | None = None,
        client: httpx.AsyncClient | None = None,
        breaker: CircuitBreaker | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._panel = panel
        self._tokens = token_cache
        self._binding = binding
        self._client = client
        self._breaker = breaker
        self._now = time_source or time.time
        self._settings = get_settings()
        # Last outbound request, kept for the attempt log even when the call fails.
        self.last_request: dict[str, Any] | None = None

    @property
    def panel(self) -> Panel:
        return self._panel

    def operation_name(self, operation: str) -> str:
        return f"{self.family}.{operation}"

    def _get_client(self) -> httpx.AsyncClient:
        return self._client or get_panel_http_client()

    def _url(self, path: str) -> str:
        return panel_url(self._panel.base_url, path)

    def _absolute_url(self, url: str | None) -> str | None:
        # Panels without a subscription URL prefix return paths like "/sub/<token>".
        if url and url.startswith("/"):
            return self._url(url)
        return url

    def _account_note(self, notes: str) -> str:
        prefix = self._settings.account_note_prefix
        return f"{prefix} - {notes}" if notes else prefix

    def _protocols(self) -> list[str]:
        return list(self._panel.enabled_protocols or DEFAULT_PROTOCOLS)

    def _validate_request(self, username: str, quota_gb: float, duration_days: int) -> None:
        if not username:
            raise InvalidRequestError("username is required")
        if quota_gb is None or quota_gb <= 0:
            raise InvalidRequestError(f"quota must be a positive number of GB, got {quota_gb!r}")
        max_days = self._settings.max_duration_days
        if duration_days is None or duration_days <= 0 or duration_days > max_days:
            raise InvalidRequestError(
                f"duration must be between 1 and {max_days} days, got {duration_days!r}"
            )

    def renewed_limits(
        self, current: AccountState, quota_gb: float, duration_days: int
    ) -> tuple[int, int]:
        """Data limit and expiry after a renewal.

        The purchased quota is added on top of the current limit. The new period
        starts at the current expiry, or now when the account has already expired.
        """
        data_limit = (current.quota_bytes or 0) + quota_to_bytes(quota_gb)
        start = max(self._now(), float(current.expire or 0))
        return data_limit, expire_timestamp(duration_days, start)

    def _not_implemented(self, operation: str) -> NotImplementedForFamilyError:
        return NotImplementedForFamilyError(f"{operation} is not implemented for {self.family} panels")

    async def _send_once(
        self,
        method: str,
        url: str,
        token: str,
        *,
        json: dict[str, Any] | None,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        try:
            return await self._get_client().request(
                method,
                url,
                json=json,
                params=params,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise translate_transport_error(exc, panel_name=self._panel.name, url=url) from exc

    async def _send_authorized(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = self._url(path)
        self.last_request = {"method": method, "url": url, "json": json, "params": params}
        if self._breaker is not None:
            await self._breaker.before_call()
        start = time.monotonic()
        try:
            token = await self._tokens.get_token(self._panel, token_path=self.token_path)
            response = await self._send_once(method, url, token, json=json, params=params)
            if response.status_code == 401:
                # Token expired or was revoked panel-side: one fresh login, one retry.
                logger.info("panel_token_rejected panel=%s path=%s", self._panel.name, path)
                self._tokens.invalidate(self._panel.id, token)
                token = await self._tokens.get_token(self._panel, token_path=self.token_path)
                response = await self._send_once(method, url, token, json=json, params=params)
                if response.status_code == 401:
                    raise PanelAuthError(f"{self._panel.name} rejected a freshly issued admin token")
        except (TransportTimeoutError, TransportError):
            await self._record(start, success=False)
            raise
        except PanelRejectedError as exc:
            # The token endpoint answered; only a 5xx counts against the panel.
            await self._record(start, success=False, reachable=exc.status_code < 500)
            raise
        except PanelAuthError:
            # Refused credentials still prove the panel is up.
            await self._record(start, success=False, reachable=True)
            raise
        except Exception:
            await self._record(start, success=False)
            raise
        await self._record(start, success=response.status_code < 500)
        return response

    async def _record(self, start: float, *, success: bool, reachable: bool | None = None) -> None:
        record_panel_call(
            family=self.family,
            panel=self._panel.name,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=success,
        )
        if self._breaker is None:
            return
        if reachable is None:
            reachable = success
        if reachable:
            await self._breaker.record_success()
        else:
            await self._breaker.record_failure()

    async def _read(self, path: str, *, params: dict[str, Any] | None = None) -> httpx.Response:
        # Reads are safe to repeat on transport failures; writes never go through here.
        async def _call() -> httpx.Response:
            return await self._send_authorized("GET", path, params=params)

        return await retry_async(_call)

    def _json_or_reject(self, response: httpx.Response) -> Any:
        if response.status_code >= 400:
            raise rejected(response, panel_name=self._panel.name)
        return response_json(response)
