from __future__ import annotations

from datetime import datetime, timezone
import logging

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.core.errors import (
    FamilyMismatchError,
    NoPanelBoundError,
    PanelConfigError,
    PanelNotFoundError,
    ProvisioningError,
)
from panelsync.domain.models import (
    HEALTH_OFFLINE,
    HEALTH_ONLINE,
    HEALTH_UNKNOWN,
    Panel,
    Plan,
    PlanPanelBinding,
)
from panelsync.domain.provisioning import (
    AccountMatch,
    AccountSearchResult,
    DateRange,
    PanelHealthReport,
    ResolvedTarget,
    SystemStats,
)
from panelsync.persistence.repos import panels as panels_repo
from panelsync.persistence.repos import plans as plans_repo
from panelsync.providers.panels.base import PanelAdapter
from panelsync.providers.panels.factory import build_panel_adapter
from panelsync.services.resilience import CircuitBreaker, get_resilience_redis
from panelsync.services.tokens import TokenCache, get_token_cache


logger = logging.getLogger(__name__)

_HEALTH_RANK = {HEALTH_ONLINE: 0, HEALTH_UNKNOWN: 1, HEALTH_OFFLINE: 2}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def order_candidates(panels: list[Panel]) -> list[Panel]:
    """Active panels ordered online, then unknown; offline only when nothing else is left."""
    active = [panel for panel in panels if panel.is_active]
    healthy = [panel for panel in active if panel.health_status != HEALTH_OFFLINE]
    if healthy:
        # sorted() is stable, so binding order breaks ties.
        return sorted(healthy, key=lambda panel: _HEALTH_RANK.get(panel.health_status, 1))
    return [panel for panel in active if panel.health_status == HEALTH_OFFLINE]


async def resolve_target(
    session: AsyncSession,
    plan: Plan,
    *,
    relaxed: bool = False,
) -> ResolvedTarget:
    # relaxed=True is reserved for explicit repair: unbound same-family panels become
    # candidates and an offline primary is demoted behind healthier ones. A plan with
    # no bindings at all never resolves, relaxed or not.
    rows = await plans_repo.list_bindings_with_panels(session, plan.id)
    if not rows:
        raise NoPanelBoundError(f"plan {plan.code} ({plan.id}) has no bound panel")

    mismatched = [panel for _binding, panel in rows if panel.family != plan.family]
    if mismatched:
        names = ", ".join(f"{panel.name}={panel.family}" for panel in mismatched)
        raise FamilyMismatchError(
            f"plan {plan.code} requires {plan.family} panels but is bound to {names}"
        )

    primaries = [(binding, panel) for binding, panel in rows if binding.is_primary]
    if len(primaries) > 1:
        raise PanelConfigError(f"plan {plan.code} has {len(primaries)} primary panel bindings")

    bindings_by_panel: dict[str, PlanPanelBinding] = {panel.id: binding for binding, panel in rows}
    others = [panel for binding, panel in rows if not binding.is_primary]
    if relaxed:
        extra = await panels_repo.list_active_panels(session, family=plan.family)
        others.extend(panel for panel in extra if panel.id not in bindings_by_panel)
    # Healthiest first; offline ones only when nothing else is left.
    fallbacks = order_candidates(others)

    if primaries and primaries[0][1].is_active:
        primary_binding, primary = primaries[0]
        demote = (
            relaxed
            and primary.health_status == HEALTH_OFFLINE
            and any(panel.health_status != HEALTH_OFFLINE for panel in fallbacks)
        )
        if not demote:
            return ResolvedTarget(primary=primary, fallbacks=fallbacks, binding=primary_binding)
        logger.info("primary_panel_demoted plan=%s panel=%s", plan.code, primary.name)
        fallbacks = fallbacks + [primary]

    if not fallbacks:
        raise NoPanelBoundError(f"plan {plan.code} ({plan.id}) has no active bound panel")
    selected = fallbacks[0]
    return ResolvedTarget(
        primary=selected,
        fallbacks=fallbacks[1:],
        binding=bindings_by_panel.get(selected.id),
    )


class PanelRegistry:
    """Builds adapters for panels; the only place that looks at a panel's family."""

    def __init__(
        self,
        *,
        token_cache: TokenCache | None = None,
        client: httpx.AsyncClient | None = None,
        use_redis: bool = True,
    ) -> None:
        if token_cache is None and client is not None:
            token_cache = TokenCache(client)
        self._token_cache = token_cache
        self._client = client
        self._use_redis = use_redis
        self._breakers: dict[str, CircuitBreaker] = {}

    @property
    def token_cache(self) -> TokenCache:
        return self._token_cache or get_token_cache()

    async def breaker_for(self, panel: Panel) -> CircuitBreaker:
        # One breaker per panel for the registry's lifetime.
        breaker = self._breakers.get(panel.id)
        if breaker is None:
            redis = await get_resilience_redis() if self._use_redis else None
            breaker = CircuitBreaker(f"panel.{panel.id}", redis=redis)
            self._breakers[panel.id] = breaker
        return breaker

    async def breaker_states(self) -> dict[str, str]:
        # Only panels this process has talked to have a breaker.
        return {panel_id: (await breaker.load()).state for panel_id, breaker in self._breakers.items()}

    async def adapter_for(self, panel: Panel, binding: PlanPanelBinding | None = None) -> PanelAdapter:
        # A fresh adapter per call; tokens and breakers are shared.
        return build_panel_adapter(
            panel,
            token_cache=self.token_cache,
            binding=binding,
            client=self._client,
            breaker=await self.breaker_for(panel),
        )


_registry: PanelRegistry | None = None


def get_panel_registry() -> PanelRegistry:
    global _registry
    if _registry is None:
        _registry = PanelRegistry()
    return _registry


def reset_panel_registry() -> None:
    global _registry
    _registry = None


async def _load_panel(session: AsyncSession, panel_id: str) -> Panel:
    # Unknown ids raise PanelNotFoundError (404 at the API).
    panel = await panels_repo.get_panel(session, panel_id)
    if panel is None:
        raise PanelNotFoundError(f"panel {panel_id} not found")
    return panel


async def check_panel_health(
    session: AsyncSession,
    panel_id: str,
    *,
    registry: PanelRegistry | None = None,
) -> PanelHealthReport:
    """Log in, read the panel's inbound/service listing and persist the health verdict."""
    registry = registry or get_panel_registry()
    panel = await _load_panel(session, panel_id)
    adapter = await registry.adapter_for(panel)
    checked_at = _utc_now()
    error: ProvisioningError | None = None
    config = None
    try:
        config = await adapter.fetch_panel_config()
    except ProvisioningError as exc:
        error = exc
        logger.warning(
            "panel_health_check_failed panel=%s kind=%s error=%s", panel.name, exc.kind, exc
        )

    health_status = HEALTH_ONLINE if error is None else HEALTH_OFFLINE
    await panels_repo.update_health(
        session,
        panel,
        health_status=health_status,
        checked_at=checked_at,
        config_json=config,
    )
    await session.commit()
    return PanelHealthReport(
        panel_id=panel.id,
        panel_name=panel.name,
        family=panel.family,
        health_status=health_status,
        checked_at=checked_at,
        authenticated=error is None,
        error=str(error) if error is not None else None,
        error_kind=error.kind if error is not None else None,
    )


async def fetch_panel_stats(
    session: AsyncSession,
    panel_id: str,
    *,
    date_range: DateRange | None = None,
    registry: PanelRegistry | None = None,
) -> SystemStats:
    registry = registry or get_panel_registry()
    panel = await _load_panel(session, panel_id)
    adapter = await registry.adapter_for(panel)
    return await adapter.fetch_system_stats(date_range)


async def search_accounts(
    session: AsyncSession,
    query: str,
    *,
    plan_id: str | None = None,
    limit: int = 20,
    registry: PanelRegistry | None = None,
) -> AccountSearchResult:
    """Look a username up across active panels, or only the panels bound to `plan_id`.

    A panel that cannot be searched is reported in `failures` and the others
    are still searched. Queries shorter than two characters match nothing.
    """
    query = query.strip()
    if len(query) < 2:
        return AccountSearchResult(matches=[])
    registry = registry or get_panel_registry()
    if plan_id is not None:
        rows = await plans_repo.list_bindings_with_panels(session, plan_id)
        panels = [panel for _binding, panel in rows if panel.is_active]
    else:
        panels = await panels_repo.list_active_panels(session)

    matches: list[AccountMatch] = []
    failures: dict[str, str] = {}
    for panel in panels:
        try:
            adapter = await registry.adapter_for(panel)
            accounts = await adapter.search_accounts(query, limit=limit)
        except ProvisioningError as exc:
            logger.warning("panel_search_failed panel=%s kind=%s error=%s", panel.name, exc.kind, exc)
            failures[panel.name] = str(exc)
            continue
        matches.extend(
            AccountMatch(panel_id=panel.id, panel_name=panel.name, family=panel.family, account=account)
            for account in accounts
        )
    return AccountSearchResult(matches=matches, failures=failures)
