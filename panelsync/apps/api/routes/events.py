from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.apps.api.deps import get_db, get_provisioning_orchestrator, require_admin
from panelsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from panelsync.apps.api.response import SuccessEnvelope, success_response
from panelsync.apps.api.routes.subscriptions import ProvisionResultResponse
from panelsync.services.provisioning import ProvisioningOrchestrator


router = APIRouter(
    prefix="/events",
    tags=["events"],
    responses=DEFAULT_ERROR_RESPONSES,
    dependencies=[Depends(require_admin)],
)


class SubscriptionApprovedEvent(BaseModel):
    subscription_id: str = Field(min_length=1)


@router.post(
    "/subscription-approved",
    response_model=SuccessEnvelope[ProvisionResultResponse],
)
async def subscription_approved(
    event: SubscriptionApprovedEvent,
    request: Request,
    db: AsyncSession = Depends(get_db),
    orchestrator: ProvisioningOrchestrator = Depends(get_provisioning_orchestrator),
) -> dict:
    """Upstream approval hook; provisions the subscription once."""
    result = await orchestrator.handle_subscription_approved(db, event.subscription_id)
    return success_response(request=request, data=jsonable_encoder(asdict(result)))
