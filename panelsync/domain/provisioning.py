from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from panelsync.domain.models import Panel, PlanPanelBinding


@dataclass(frozen=True)
class CreatedAccount:
    # Normalized result of a panel create call, whatever the family.
    username: str
    access_url: str
    expire: int | None
    quota_bytes: int
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AccountState:
    # Panel-side account as last read; the panel remains the source of truth.
    username: str
    access_url: str | None
    expire: int | None
    quota_bytes: int | None
    used_traffic: int
    status: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AccountMatch:
    panel_id: str
    panel_name: str
    family: str
    account: AccountState


@dataclass(frozen=True)
class AccountSearchResult:
    matches: list[AccountMatch]
    # Panel name -> error text for panels that could not be searched.
    failures: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class SystemStats:
    total_users: int
    active_users: int
    expired_users: int
    limited_users: int
    on_hold_users: int
    online_users: int
    incoming_bandwidth: int | None
    outgoing_bandwidth: int | None
    # Only populated for date-ranged requests.
    traffic_in_range: int | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ResolvedTarget:
    # Panel to call now, plus ordered alternates of the same family.
    primary: Panel
    fallbacks: list[Panel]
    binding: PlanPanelBinding | None


@dataclass(frozen=True)
class ProvisionResult:
    success: bool
    access_url: str | None = None
    expire_at: datetime | None = None
    quota_bytes: int | None = None
    panel_id: str | None = None
    panel_name: str | None = None
    # Verbatim error text from the failing layer.
    error: str | None = None
    error_kind: str | None = None


@dataclass(frozen=True)
class PanelSummary:
    id: str
    name: str
    family: str
    health_status: str
    is_active: bool


@dataclass(frozen=True)
class AttemptSummary:
    id: int
    operation: str
    success: bool
    error_kind: str | None
    error_message: str | None
    panel_id: str | None
    panel_name: str | None
    created_at: datetime | None


@dataclass(frozen=True)
class DiagnosticReport:
    subscription_id: str
    issues: list[str]
    recommendations: list[str]
    available_panels: list[PanelSummary]
    attempts: list[AttemptSummary]

    @property
    def is_valid(self) -> bool:
        # Configuration validity only; says nothing about whether the account exists.
        return not self.issues

    @property
    def last_attempt(self) -> AttemptSummary | None:
        return self.attempts[0] if self.attempts else None


@dataclass(frozen=True)
class PanelHealthReport:
    panel_id: str
    panel_name: str
    family: str
    health_status: str
    checked_at: datetime
    authenticated: bool
    error: str | None = None
    error_kind: str | None = None
