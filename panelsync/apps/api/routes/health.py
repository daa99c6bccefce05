from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from panelsync.apps.api.deps import get_provisioning_orchestrator
from panelsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from panelsync.apps.api.response import SuccessEnvelope, success_response
from panelsync.core.config import get_settings
from panelsync.services.provisioning import ProvisioningOrchestrator
from panelsync.services.telemetry import counters_snapshot, gauges_snapshot, panel_call_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)

_PANEL_STATS_WINDOW_S = 300


class HealthResponse(BaseModel):
    status: str
    app: str
    counters: dict[str, int]
    gauges: dict[str, float]
    panel_calls: dict[str, dict[str, float | None]]
    panel_breakers: dict[str, str]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(
    request: Request,
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    # Process liveness plus recent panel call stats; no panel is contacted here.
    payload = HealthResponse(
        status="ok",
        app=get_settings().app_name,
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        panel_calls=panel_call_stats(_PANEL_STATS_WINDOW_S),
        panel_breakers=await orchestrator.registry.breaker_states(),
    )
    return success_response(request=request, data=payload.model_dump())
