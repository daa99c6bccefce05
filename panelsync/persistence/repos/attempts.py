from __future__ import annotations

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.domain.models import ProvisioningAttempt


async def list_attempts(
    session: AsyncSession,
    subscription_id: str,
    *,
    limit: int | None = None,
) -> list[ProvisioningAttempt]:
    # Newest first; id order is call order, timestamps can tie.
    stmt = (
        select(ProvisioningAttempt)
        .where(ProvisioningAttempt.subscription_id == subscription_id)
        .order_by(ProvisioningAttempt.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def has_successful_attempt(
    session: AsyncSession,
    subscription_id: str,
    *,
    operation_suffix: str = ".create_account",
) -> bool:
    # Operations are namespaced by family, e.g. "marzban.create_account".
    result = await session.execute(
        select(ProvisioningAttempt.id)
        .where(
            ProvisioningAttempt.subscription_id == subscription_id,
            ProvisioningAttempt.success.is_(True),
            ProvisioningAttempt.operation.like(f"%{operation_suffix}"),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_last_account_change(session: AsyncSession, subscription_id: str) -> ProvisioningAttempt | None:
    # Newest successful create or delete; tells whether the panel should hold an account.
    result = await session.execute(
        select(ProvisioningAttempt)
        .where(
            ProvisioningAttempt.subscription_id == subscription_id,
            ProvisioningAttempt.success.is_(True),
            or_(
                ProvisioningAttempt.operation.like("%.create_account"),
                ProvisioningAttempt.operation.like("%.delete_account"),
            ),
        )
        .order_by(ProvisioningAttempt.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
