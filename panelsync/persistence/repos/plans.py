from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.domain.models import Panel, Plan, PlanPanelBinding


async def get_plan(session: AsyncSession, plan_id: str) -> Plan | None:
    result = await session.execute(select(Plan).where(Plan.id == plan_id))
    return result.scalar_one_or_none()


async def list_bindings_with_panels(
    session: AsyncSession, plan_id: str
) -> list[tuple[PlanPanelBinding, Panel]]:
    # Primary first, then creation order, so callers see a stable binding list.
    result = await session.execute(
        select(PlanPanelBinding, Panel)
        .join(Panel, Panel.id == PlanPanelBinding.panel_id)
        .where(PlanPanelBinding.plan_id == plan_id)
        .order_by(PlanPanelBinding.is_primary.desc(), PlanPanelBinding.created_at, PlanPanelBinding.id)
    )
    return [(binding, panel) for binding, panel in result.all()]


async def bind_panel(
    session: AsyncSession,
    *,
    plan_id: str,
    panel_id: str,
    is_primary: bool = False,
    inbound_ids: list[int] | None = None,
) -> PlanPanelBinding:
    # Demote any existing primary so a plan never carries two.
    if is_primary:
        await session.execute(
            update(PlanPanelBinding)
            .where(PlanPanelBinding.plan_id == plan_id, PlanPanelBinding.is_primary.is_(True))
            .values(is_primary=False)
        )
    binding = PlanPanelBinding(
        id=str(uuid4()),
        plan_id=plan_id,
        panel_id=panel_id,
        is_primary=is_primary,
        inbound_ids=inbound_ids,
    )
    session.add(binding)
    await session.flush()
    return binding
