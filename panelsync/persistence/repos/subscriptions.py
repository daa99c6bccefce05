from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.domain.models import Subscription


async def get_subscription(session: AsyncSession, subscription_id: str) -> Subscription | None:
    result = await session.execute(select(Subscription).where(Subscription.id == subscription_id))
    return result.scalar_one_or_none()


def mark_provisioned(
    subscription: Subscription,
    *,
    access_url: str,
    expire_at: datetime | None,
    quota_bytes: int,
    panel_id: str,
    status: str,
) -> Subscription:
    subscription.provisioned = True
    subscription.access_url = access_url
    subscription.expire_at = expire_at
    subscription.quota_bytes = quota_bytes
    subscription.panel_id = panel_id
    subscription.status = status
    return subscription


def refresh_reflection(
    subscription: Subscription,
    *,
    access_url: str | None,
    expire_at: datetime | None,
    quota_bytes: int | None,
) -> Subscription:
    # Only overwrite fields the panel actually reported.
    if access_url:
        subscription.access_url = access_url
    if expire_at is not None:
        subscription.expire_at = expire_at
    if quota_bytes is not None:
        subscription.quota_bytes = quota_bytes
    return subscription


def mark_deprovisioned(subscription: Subscription, *, status: str) -> Subscription:
    # Keep access_url and panel_id so the row still points at what was removed.
    subscription.provisioned = False
    subscription.status = status
    return subscription
