from __future__ import annotations

from dataclasses import asdict
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.apps.api.deps import get_db, get_provisioning_orchestrator, require_admin
from panelsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from panelsync.apps.api.response import SuccessEnvelope, success_response
from panelsync.domain.provisioning import DateRange
from panelsync.services.provisioning import ProvisioningOrchestrator
from panelsync.services.registry import check_panel_health, fetch_panel_stats, search_accounts


router = APIRouter(
    prefix="/panels",
    tags=["panels"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class PanelHealthResponse(BaseModel):
    panel_id: str
    panel_name: str
    family: str
    health_status: str
    checked_at: datetime
    authenticated: bool
    error: str | None = None
    error_kind: str | None = None


class SystemStatsResponse(BaseModel):
    total_users: int
    active_users: int
    expired_users: int
    limited_users: int
    on_hold_users: int
    online_users: int
    incoming_bandwidth: int | None = None
    outgoing_bandwidth: int | None = None
    traffic_in_range: int | None = None


class AccountMatchResponse(BaseModel):
    panel_id: str
    panel_name: str
    family: str
    username: str
    access_url: str | None = None
    expire: int | None = None
    quota_bytes: int | None = None
    used_traffic: int
    status: str


class AccountSearchResponse(BaseModel):
    matches: list[AccountMatchResponse]
    failures: dict[str, str]


@router.get("/accounts/search", response_model=SuccessEnvelope[AccountSearchResponse])
async def search_panel_accounts(
    request: Request,
    q: str = Query(min_length=1, max_length=64),
    plan_id: str | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    # Panels that fail are listed under failures; the rest are still searched.
    result = await search_accounts(
        db, q, plan_id=plan_id, limit=limit, registry=orchestrator.registry
    )
    matches = []
    for match in result.matches:
        account = asdict(match.account)
        account.pop("raw", None)
        matches.append(
            {"panel_id": match.panel_id, "panel_name": match.panel_name, "family": match.family, **account}
        )
    return success_response(
        request=request, data=jsonable_encoder({"matches": matches, "failures": result.failures})
    )


@router.post("/{panel_id}/health-check", response_model=SuccessEnvelope[PanelHealthResponse])
async def panel_health_check(
    panel_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    report = await check_panel_health(db, panel_id, registry=orchestrator.registry)
    return success_response(request=request, data=jsonable_encoder(asdict(report)))


@router.get("/{panel_id}/stats", response_model=SuccessEnvelope[SystemStatsResponse])
async def panel_stats(
    panel_id: str,
    request: Request,
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    date_range = None
    if start is not None or end is not None:
        if start is None or end is None or end < start:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"code": "bad_request", "message": "start and end must both be set, start <= end"},
            )
        date_range = DateRange(start=start, end=end)
    stats = await fetch_panel_stats(db, panel_id, date_range=date_range, registry=orchestrator.registry)
    payload = asdict(stats)
    payload.pop("raw", None)
    return success_response(request=request, data=jsonable_encoder(payload))
