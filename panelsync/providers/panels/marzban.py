from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from panelsync.core.errors import AccountNotFoundError
from panelsync.domain.models import FAMILY_MARZBAN
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


class MarzbanAdapter(PanelHttpAdapter):
    family = FAMILY_MARZBAN
    token_path = "/api/admin/token"

    def _user_path(self, username: str) -> str:
        return f"/api/user/{quote(username, safe='')}"

    def _account_state(self, data: dict[str, Any], username: str) -> AccountState:
        return AccountState(
            username=data.get("username") or username,
            access_url=self._absolute_url(data.get("subscription_url")),
            expire=_int_or_none(data.get("expire")),
            quota_bytes=_int_or_none(data.get("data_limit")),
            used_traffic=_int_or_none(data.get("used_traffic")) or 0,
            status=str(data.get("status") or "unknown"),
            raw=data,
        )

    def build_create_payload(
        self, username: str, quota_gb: float, duration_days: int, notes: str
    ) -> dict[str, Any]:
        return {
            "username": username,
            # Empty settings let Marzban generate per-protocol credentials.
            "proxies": {protocol: {} for protocol in self._protocols()},
            "data_limit": quota_to_bytes(quota_gb),
            "expire": expire_timestamp(duration_days, self._now()),
            "data_limit_reset_strategy": "no_reset",
            "status": "active",
            "note": self._account_note(notes),
        }

    async def create_account(
        self, username: str, quota_gb: float, duration_days: int, notes: str
    ) -> CreatedAccount:
        self._validate_request(username, quota_gb, duration_days)
        payload = self.build_create_payload(username, quota_gb, duration_days, notes)
        response = await self._send_authorized("POST", "/api/user", json=payload)
        data = self._json_or_reject(response) or {}
        logger.info("marzban_user_created panel=%s username=%s", self.panel.name, username)
        return CreatedAccount(
            username=data.get("username") or username,
            access_url=self._absolute_url(data.get("subscription_url")) or "",
            expire=_int_or_none(data.get("expire")) or payload["expire"],
            quota_bytes=_int_or_none(data.get("data_limit")) or payload["data_limit"],
            raw=data,
        )

    async def delete_account(self, username: str) -> bool:
        response = await self._send_authorized("DELETE", self._user_path(username))
        if response.status_code == 404:
            logger.info("marzban_user_already_absent panel=%s username=%s", self.panel.name, username)
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
        payload = {"data_limit": data_limit, "expire": expire, "status": "active"}
        response = await self._send_authorized("PUT", self._user_path(username), json=payload)
        if response.status_code == 404:
            raise AccountNotFoundError(f"{self.panel.name} has no user {username!r}")
        data = self._json_or_reject(response) or {}
        logger.info(
            "marzban_user_renewed panel=%s username=%s data_limit=%s expire=%s",
            self.panel.name,
            username,
            data_limit,
            expire,
        )
        return self._account_state(data, username)

    async def search_accounts(self, query: str, *, limit: int = 20) -> list[AccountState]:
        response = await self._read("/api/users", params={"search": query, "limit": limit})
        data = self._json_or_reject(response)
        users = data.get("users", []) if isinstance(data, dict) else unwrap_items(data)
        return [self._account_state(user, "") for user in users if isinstance(user, dict)]

    async def fetch_system_stats(self, date_range: DateRange | None = None) -> SystemStats:
        response = await self._read("/api/system")
        data = self._json_or_reject(response) or {}
        traffic_in_range = None
        if date_range is not None:
            usage_response = await self._read(
                "/api/users/usage",
                params={"start": date_range.start.isoformat(), "end": date_range.end.isoformat()},
            )
            usage = self._json_or_reject(usage_response) or {}
            traffic_in_range = sum(
                _int_or_none(item.get("used_traffic")) or 0
                for item in usage.get("usages", [])
                if isinstance(item, dict)
            )
        return SystemStats(
            total_users=_int_or_none(data.get("total_user")) or 0,
            active_users=_int_or_none(data.get("users_active")) or 0,
            expired_users=_int_or_none(data.get("users_expired")) or 0,
            limited_users=_int_or_none(data.get("users_limited")) or 0,
            on_hold_users=_int_or_none(data.get("users_on_hold")) or 0,
            online_users=_int_or_none(data.get("online_users")) or 0,
            incoming_bandwidth=_int_or_none(data.get("incoming_bandwidth")),
            outgoing_bandwidth=_int_or_none(data.get("outgoing_bandwidth")),
            traffic_in_range=traffic_in_range,
            raw=data,
        )

    async def fetch_panel_config(self) -> dict[str, Any]:
        response = await self._read("/api/inbounds")
        data = self._json_or_reject(response) or {}
        return {"family": self.family, "inbounds": data}
