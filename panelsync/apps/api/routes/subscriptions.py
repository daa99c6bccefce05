from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.apps.api.deps import get_db, get_provisioning_orchestrator, require_admin
from panelsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from panelsync.apps.api.response import SuccessEnvelope, success_response
from panelsync.core.config import get_settings
from panelsync.domain.provisioning import AccountState, DiagnosticReport, ProvisionResult
from panelsync.services import diagnostics
from panelsync.services.attempt_log import attempt_history
from panelsync.services.provisioning import ProvisioningOrchestrator


router = APIRouter(
    prefix="/subscriptions",
    tags=["subscriptions"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class ProvisionResultResponse(BaseModel):
    success: bool
    access_url: str | None = None
    expire_at: datetime | None = None
    quota_bytes: int | None = None
    panel_id: str | None = None
    panel_name: str | None = None
    error: str | None = None
    error_kind: str | None = None


class AttemptResponse(BaseModel):
    id: int
    operation: str
    success: bool
    error_kind: str | None = None
    error_message: str | None = None
    panel_id: str | None = None
    panel_name: str | None = None
    created_at: datetime | None = None


class PanelSummaryResponse(BaseModel):
    id: str
    name: str
    family: str
    health_status: str
    is_active: bool


class DiagnosticReportResponse(BaseModel):
    subscription_id: str
    is_valid: bool
    issues: list[str]
    recommendations: list[str]
    available_panels: list[PanelSummaryResponse]
    last_attempt: AttemptResponse | None = None
    attempts: list[AttemptResponse]


class AccountStateResponse(BaseModel):
    username: str
    access_url: str | None = None
    expire: int | None = None
    quota_bytes: int | None = None
    used_traffic: int
    status: str


class RenewRequest(BaseModel):
    # Omitted values fall back to the subscription's request, then the plan defaults.
    quota_gb: float | None = Field(default=None, gt=0)
    duration_days: int | None = Field(default=None, gt=0)


class SubscriptionStatusResponse(BaseModel):
    id: str
    status: str
    provisioned: bool
    panel_id: str | None = None
    access_url: str | None = None


def _result_payload(result: ProvisionResult) -> dict[str, Any]:
    return jsonable_encoder(asdict(result))


def _account_payload(state: AccountState) -> dict[str, Any]:
    payload = asdict(state)
    payload.pop("raw", None)
    return jsonable_encoder(payload)


def _report_payload(report: DiagnosticReport) -> dict[str, Any]:
    payload = asdict(report)
    payload["is_valid"] = report.is_valid
    payload["last_attempt"] = asdict(report.last_attempt) if report.last_attempt else None
    return jsonable_encoder(payload)


@router.post("/{subscription_id}/retry", response_model=SuccessEnvelope[ProvisionResultResponse])
async def retry_subscription(
    subscription_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    # A failed provision is still a 200; the result carries the panel's error.
    result = await orchestrator.retry_provisioning(db, subscription_id)
    return success_response(request=request, data=_result_payload(result))


@router.get(
    "/{subscription_id}/diagnostics", response_model=SuccessEnvelope[DiagnosticReportResponse]
)
async def diagnose_subscription(
    subscription_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    report = await diagnostics.diagnose(db, subscription_id)
    return success_response(request=request, data=_report_payload(report))


@router.post("/{subscription_id}/repair", response_model=SuccessEnvelope[ProvisionResultResponse])
async def repair_subscription(
    subscription_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    result = await diagnostics.repair(db, subscription_id, orchestrator=orchestrator)
    return success_response(request=request, data=_result_payload(result))


@router.post("/{subscription_id}/refresh", response_model=SuccessEnvelope[AccountStateResponse])
async def refresh_subscription(
    subscription_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    state = await orchestrator.refresh_account(db, subscription_id)
    return success_response(request=request, data=_account_payload(state))


@router.post("/{subscription_id}/renew", response_model=SuccessEnvelope[AccountStateResponse])
async def renew_subscription(
    subscription_id: str,
    request: Request,
    body: RenewRequest | None = None,
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    body = body or RenewRequest()
    state = await orchestrator.renew(
        db, subscription_id, quota_gb=body.quota_gb, duration_days=body.duration_days
    )
    return success_response(request=request, data=_account_payload(state))


@router.delete("/{subscription_id}/account", response_model=SuccessEnvelope[SubscriptionStatusResponse])
async def delete_subscription_account(
    subscription_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    subscription = await orchestrator.deprovision(db, subscription_id)
    payload = {
        "id": subscription.id,
        "status": subscription.status,
        "provisioned": subscription.provisioned,
        "panel_id": subscription.panel_id,
        "access_url": subscription.access_url,
    }
    return success_response(request=request, data=payload)


@router.get("/{subscription_id}/attempts", response_model=SuccessEnvelope[list[AttemptResponse]])
async def list_subscription_attempts(
    subscription_id: str,
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    # 404 for unknown subscriptions rather than an empty list.
    await orchestrator.load_subscription(db, subscription_id)
    attempts = await attempt_history(
        db, subscription_id, limit=limit or get_settings().attempt_log_page_size
    )
    return success_response(request=request, data=jsonable_encoder([asdict(a) for a in attempts]))
