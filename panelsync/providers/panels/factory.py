from __future__ import annotations

from typing import Callable

import httpx

from panelsync.core.errors import PanelConfigError
from panelsync.domain.models import FAMILY_MARZBAN, FAMILY_MARZNESHIN, Panel, PlanPanelBinding
from panelsync.providers.panels.base import PanelAdapter, PanelHttpAdapter
from panelsync.providers.panels.marzban import MarzbanAdapter
from panelsync.providers.panels.marzneshin import MarzneshinAdapter
from panelsync.services.resilience import CircuitBreaker
from panelsync.services.tokens import TokenCache


_ADAPTERS: dict[str, type[PanelHttpAdapter]] = {
    FAMILY_MARZBAN: MarzbanAdapter,
    FAMILY_MARZNESHIN: MarzneshinAdapter,
}


def build_panel_adapter(
    panel: Panel,
    *,
    token_cache: TokenCache,
    binding: PlanPanelBinding | None = None,
    client: httpx.AsyncClient | None = None,
    breaker: CircuitBreaker | None = None,
    time_source: Callable[[], float] | None = None,
) -> PanelAdapter:
    adapter_cls = _ADAPTERS.get((panel.family or "").lower())
    if adapter_cls is None:
        raise PanelConfigError(f"panel {panel.name} declares unsupported family {panel.family!r}")
    return adapter_cls(
        panel,
        token_cache=token_cache,
        binding=binding,
        client=client,
        breaker=breaker,
        time_source=time_source,
    )
