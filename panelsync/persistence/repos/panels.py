from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.domain.models import Panel


async def get_panel(session: AsyncSession, panel_id: str) -> Panel | None:
    result = await session.execute(select(Panel).where(Panel.id == panel_id))
    return result.scalar_one_or_none()


async def list_active_panels(session: AsyncSession, *, family: str | None = None) -> list[Panel]:
    # Stable ordering keeps fallback selection deterministic across calls.
    stmt = select(Panel).where(Panel.is_active.is_(True))
    if family is not None:
        stmt = stmt.where(Panel.family == family)
    result = await session.execute(stmt.order_by(Panel.name, Panel.id))
    return list(result.scalars().all())


async def update_health(
    session: AsyncSession,
    panel: Panel,
    *,
    health_status: str,
    checked_at: datetime,
    config_json: dict[str, Any] | None = None,
) -> Panel:
    panel.health_status = health_status
    panel.last_health_check = checked_at
    if config_json is not None:
        panel.config_json = config_json
    return panel
