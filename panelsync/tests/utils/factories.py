from __future__ import annotations

from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.domain.models import (
    FAMILY_MARZBAN,
    HEALTH_ONLINE,
    SUBSCRIPTION_PAID,
    Panel,
    Plan,
    Subscription,
)
from panelsync.persistence.repos.plans import bind_panel


async def create_panel(
    session: AsyncSession,
    *,
    host: str,
    family: str = FAMILY_MARZBAN,
    name: str | None = None,
    health_status: str = HEALTH_ONLINE,
    is_active: bool = True,
    password: str = "secret",
) -> Panel:
    panel = Panel(
        id=f"panel-{uuid4().hex[:8]}",
        name=name or host.split(".")[0],
        base_url=f"https://{host}",
        username="admin",
        password=password,
        family=family,
        is_active=is_active,
        health_status=health_status,
        enabled_protocols=["vless", "vmess"],
    )
    session.add(panel)
    await session.flush()
    return panel


async def create_plan(
    session: AsyncSession,
    *,
    family: str = FAMILY_MARZBAN,
    code: str = "plus",
    panels: list[Panel] | None = None,
    primary: Panel | None = None,
) -> Plan:
    """Create a plan and bind `panels` to it; `primary` (if given) is bound as primary."""
    plan = Plan(
        id=f"plan-{uuid4().hex[:8]}",
        code=code,
        name_en=code.title(),
        default_data_limit_gb=10,
        default_duration_days=30,
        family=family,
    )
    session.add(plan)
    await session.flush()
    if primary is not None:
        await bind_panel(session, plan_id=plan.id, panel_id=primary.id, is_primary=True)
    for panel in panels or []:
        await bind_panel(session, plan_id=plan.id, panel_id=panel.id)
    return plan


async def create_subscription(
    session: AsyncSession,
    *,
    plan: Plan | None,
    username: str | None = None,
    status: str = SUBSCRIPTION_PAID,
    data_limit_gb: int = 10,
    duration_days: int = 30,
    provisioned: bool = False,
) -> Subscription:
    subscription = Subscription(
        id=f"sub-{uuid4().hex[:8]}",
        username=username or f"user_{uuid4().hex[:6]}",
        mobile="09120000000",
        data_limit_gb=data_limit_gb,
        duration_days=duration_days,
        status=status,
        plan_id=plan.id if plan is not None else None,
        provisioned=provisioned,
    )
    session.add(subscription)
    await session.commit()
    return subscription
