from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from urllib.parse import quote

from panelsync.core.errors import AccountNotFoundError, PanelConfigError
from panelsync.domain.models import FAMILY_MARZNESHIN
from panelsync.domain.provisioning import AccountState, CreatedAccount, DateRange, SystemStats
from panelsync.providers.panels.base import (
    PanelHttpAdapter,
    expire_timestamp,
    quota_to_bytes,
    unwrap_items,
)


logger = logging.getLogger(__name__)


def _int_or_none(value: Any) -> int | None:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _parse_expire(data: dict[str, Any]) -> int | None:
    # Marzneshin reports expiry as an ISO datetime; older builds also send unix seconds.
    raw = data.get("expire_date") or data.get("expire")
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        return int(raw)
    try:
        parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


class MarzneshinAdapter(PanelHttpAdapter):
    family = FAMILY_MARZNESHIN
    token_path = "/api/admins/token"

    def _user_path(self, username: str) -> str:
        return f"/api/users/{quote(username, safe='')}"

    def _account_state(self, data: dict[str, Any], username: str) -> AccountState:
        status = data.get("status")
        if not status:
            status = "active" if data.get("is_active", data.get("enabled")) else "inactive"
        return AccountState(
            username=data.get("username") or username,
            access_url=self._absolute_url(data.get("subscription_url")),
            expire=_parse_expire(data),
            quota_bytes=_int_or_none(data.get("data_limit")),
            used_traffic=_int_or_none(data.get("used_traffic")) or 0,
            status=str(status),
            raw=data,
        )

    async def _list_services(self) -> list[dict[str, Any]]:
        response = await self._read("/api/services")
        payload = self._json_or_reject(response)
        return [item for item in unwrap_items(payload) if isinstance(item, dict)]

    async def _resolve_service_ids(self) -> list[int]:
        if self._binding is not None and self._binding.inbound_ids:
            return [int(service_id) for service_id in self._binding.inbound_ids]
        wanted = self._settings.marzneshin_service_name_list()
        services = await self._list_services()
        if wanted:
            selected = [service for service in services if service.get("name") in wanted]
        else:
            selected = services
        service_ids = [int(service["id"]) for service in selected if service.get("id") is not None]
        if not service_ids:
            raise PanelConfigError(
                f"{self.panel.name} has no matching services to attach (wanted={wanted or 'any'})"
            )
        return service_ids

    def build_create_payload(
        self,
        username: str,
        quota_gb: float,
        duration_days: int,
        notes: str,
        service_ids: list[int],
    ) -> dict[str, Any]:
        expire = expire_timestamp(duration_days, self._now())
        return {
            "username": username,
            "expire_strategy": "fixed_date",
            "expire_date": datetime.fromtimestamp(expire, tz=timezone.utc).isoformat(),
            "data_limit": quota_to_bytes(quota_gb),
            "service_ids": service_ids,
            "note": f"{self._account_note(notes)} - Protocols: {', '.join(self._protocols())}",
            "data_limit_reset_strategy": "no_reset",
        }

    async def create_account(
        self, username: str, quota_gb: float, duration_days: int, notes: str
    ) -> CreatedAccount:
        self._validate_request(username, quota_gb, duration_days)
        service_ids = await self._resolve_service_ids()
        payload = self.build_create_payload(username, quota_gb, duration_days, notes, service_ids)
        response = await self._send_authorized("POST", "/api/users", json=payload)
        data = self._json_or_reject(response) or {}
        logger.info(
            "marzneshin_user_created panel=%s username=%s services=%s",
            self.panel.name,
            username,
            len(service_ids),
        )
        return CreatedAccount(
            username=data.get("username") or username,
            access_url=self._absolute_url(data.get("subscription_url")) or "",
            expire=_parse_expire(data) or _parse_expire(payload),
            quota_bytes=_int_or_none(data.get("data_limit")) or payload["data_limit"],
            raw=data,
        )

    async def delete_account(self, username: str) -> bool:
        response = await self._send_authorized("DELETE", self._user_path(username))
        if response.status_code == 404:
            logger.info("marzneshin_user_already_absent panel=%s username=%s", self.panel.name, username)
            return True
        self._json_or_reject(response)
        return True

    async def fetch_account(self, username: str) -> AccountState:
        response = await self._read(self._user_path(username))
        if response.status_code == 404:
            raise AccountNotFoundError(f"{self.panel.name} has no user {username!r}")
        data = self._json_or_reject(response) or {}
        return self._account_state(data, username)

    async def renew_account(self, username: str, quota_gb: float, duration_days: int) -> AccountState:
        self._validate_request(username, quota_gb, duration_days)
        current = await self.fetch_account(username)
        data_limit, expire = self.renewed_limits(current, quota_gb, duration_days)
        payload = {
            "data_limit": data_limit,
            "expire_strategy": "fixed_date",
            "expire_date": datetime.fromtimestamp(expire, tz=timezone.utc).isoformat(),
        }
        response = await self._send_authorized("PATCH", self._user_path(username), json=payload)
        if response.status_code == 404:
            raise AccountNotFoundError(f"{self.panel.name} has no user {username!r}")
        data = self._json_or_reject(response) or {}
        logger.info(
            "marzneshin_user_renewed panel=%s username=%s data_limit=%s expire=%s",
            self.panel.name,
            username,
            data_limit,
            expire,
        )
        return self._account_state(data, username)

    async def search_accounts(self, query: str, *, limit: int = 20) -> list[AccountState]:
        response = await self._read("/api/users", params={"search": query, "limit": limit})
        users = unwrap_items(self._json_or_reject(response))
        return [self._account_state(user, "") for user in users if isinstance(user, dict)]

    async def fetch_system_stats(self, date_range: DateRange | None = None) -> SystemStats:
        if date_range is not None:
            raise self._not_implemented("date-ranged system stats")
        response = await self._read("/api/system/stats/users")
        data = self._json_or_reject(response) or {}
        return SystemStats(
            total_users=_int_or_none(data.get("total")) or 0,
            active_users=_int_or_none(data.get("active")) or 0,
            expired_users=_int_or_none(data.get("expired")) or 0,
            limited_users=_int_or_none(data.get("limited")) or 0,
            on_hold_users=_int_or_none(data.get("on_hold")) or 0,
            online_users=_int_or_none(data.get("online")) or 0,
            incoming_bandwidth=None,
            outgoing_bandwidth=None,
            raw=data,
        )

    async def fetch_panel_config(self) -> dict[str, Any]:
        services = await self._list_services()
        return {"family": self.family, "services": services}
