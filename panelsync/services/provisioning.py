from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.core.errors import (
    AlreadyProvisionedError,
    FamilyMismatchError,
    NoPanelBoundError,
    PanelConfigError,
    PanelNotFoundError,
    PanelRejectedError,
    ProvisioningError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from panelsync.domain.models import (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_PAID,
    SUBSCRIPTION_PENDING,
    Panel,
    Plan,
    Subscription,
)
from panelsync.domain.provisioning import AccountState, ProvisionResult, ResolvedTarget
from panelsync.persistence.repos import attempts as attempts_repo
from panelsync.persistence.repos import panels as panels_repo
from panelsync.persistence.repos import plans as plans_repo
from panelsync.persistence.repos import subscriptions as subscriptions_repo
from panelsync.services.attempt_log import record_attempt
from panelsync.services.registry import PanelRegistry, get_panel_registry, resolve_target
from panelsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

OPERATION_RESOLVE_TARGET = "resolve_target"

# Statuses that never get a panel account through retry or repair.
_UNPROVISIONABLE_STATUSES = {SUBSCRIPTION_PENDING, SUBSCRIPTION_CANCELLED, SUBSCRIPTION_DELETED}
_APPROVABLE_STATUSES = {SUBSCRIPTION_PENDING, SUBSCRIPTION_PAID, SUBSCRIPTION_ACTIVE}
_RENEWABLE_STATUSES = {SUBSCRIPTION_ACTIVE, SUBSCRIPTION_EXPIRED}


def _expire_at(expire: int | None) -> datetime | None:
    if expire is None:
        return None
    return datetime.fromtimestamp(expire, tz=timezone.utc)


def _account_notes(subscription: Subscription) -> str:
    parts = [f"subscription={subscription.id}"]
    if subscription.mobile:
        parts.append(f"mobile={subscription.mobile}")
    if subscription.email:
        parts.append(f"email={subscription.email}")
    return " ".join(parts)


class ProvisioningOrchestrator:
    """Turns approved subscriptions into panel accounts.

    Every panel call made here leaves exactly one attempt row, committed in the
    same transaction as the subscription change it produced.
    """

    def __init__(self, registry: PanelRegistry | None = None) -> None:
        self._registry = registry or get_panel_registry()

    @property
    def registry(self) -> PanelRegistry:
        return self._registry

    async def load_subscription(self, session: AsyncSession, subscription_id: str) -> Subscription:
        subscription = await subscriptions_repo.get_subscription(session, subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(f"subscription {subscription_id} not found")
        return subscription

    async def load_plan(self, session: AsyncSession, subscription: Subscription) -> Plan:
        if not subscription.plan_id:
            raise NoPanelBoundError(f"subscription {subscription.id} has no plan")
        plan = await plans_repo.get_plan(session, subscription.plan_id)
        if plan is None:
            raise NoPanelBoundError(
                f"subscription {subscription.id} references missing plan {subscription.plan_id}"
            )
        return plan

    async def _account_panel(self, session: AsyncSession, subscription: Subscription) -> Panel:
        # The panel that holds the account, not whatever the plan resolves to today.
        if not subscription.panel_id:
            raise SubscriptionStateError(f"subscription {subscription.id} has no panel account")
        panel = await panels_repo.get_panel(session, subscription.panel_id)
        if panel is None:
            raise PanelNotFoundError(f"panel {subscription.panel_id} not found")
        return panel

    async def ensure_provisionable(self, session: AsyncSession, subscription: Subscription) -> None:
        """Reject anything that could create a second account, before any network call."""
        if subscription.provisioned:
            raise AlreadyProvisionedError(
                f"subscription {subscription.id} is already provisioned on panel {subscription.panel_id}"
            )
        if subscription.status in _UNPROVISIONABLE_STATUSES:
            raise SubscriptionStateError(
                f"subscription {subscription.id} is {subscription.status} and cannot be provisioned"
            )
        last_change = await attempts_repo.get_last_account_change(session, subscription.id)
        if last_change is not None and last_change.operation.endswith(".create_account"):
            raise AlreadyProvisionedError(
                f"attempt {last_change.id} already created an account for subscription "
                f"{subscription.id} on {last_change.panel_name}; refresh it instead"
            )

    def _quota_and_duration(self, subscription: Subscription, plan: Plan | None) -> tuple[int, int]:
        # The subscription's own request wins; plan defaults fill the gaps.
        quota_gb = subscription.data_limit_gb
        duration_days = subscription.duration_days
        if plan is not None:
            quota_gb = quota_gb or plan.default_data_limit_gb
            duration_days = duration_days or plan.default_duration_days
        return quota_gb, duration_days

    async def fail_unresolved(
        self,
        session: AsyncSession,
        subscription: Subscription,
        exc: ProvisioningError,
    ) -> ProvisionResult:
        await record_attempt(
            session,
            subscription_id=subscription.id,
            operation=OPERATION_RESOLVE_TARGET,
            request={"plan_id": subscription.plan_id},
            success=False,
            error=exc,
        )
        await session.commit()
        increment_counter(f"provisioning_failures_total.{exc.kind}")
        logger.warning(
            "provisioning_target_unresolved subscription=%s kind=%s error=%s",
            subscription.id,
            exc.kind,
            exc,
        )
        return ProvisionResult(success=False, error=str(exc), error_kind=exc.kind)

    async def provision(
        self,
        session: AsyncSession,
        subscription: Subscription,
        *,
        target: ResolvedTarget | None = None,
    ) -> ProvisionResult:
        """Create the panel account for one subscription on its resolved primary panel.

        Callers must run `ensure_provisionable` first; this method does not look at
        the provisioned flag. Configuration faults fail fast without touching the
        network. Adapter errors are returned, never raised, with their text intact.
        """
        plan: Plan | None = None
        if target is None:
            try:
                plan = await self.load_plan(session, subscription)
                target = await resolve_target(session, plan)
            except (NoPanelBoundError, FamilyMismatchError, PanelConfigError) as exc:
                return await self.fail_unresolved(session, subscription, exc)
        elif subscription.plan_id:
            plan = await plans_repo.get_plan(session, subscription.plan_id)

        panel = target.primary
        # Named after the family until the adapter exists; an unsupported family never gets one.
        operation = f"{panel.family}.create_account"
        quota_gb, duration_days = self._quota_and_duration(subscription, plan)
        fallback_request = {
            "username": subscription.username,
            "quota_gb": quota_gb,
            "duration_days": duration_days,
        }
        adapter: Any = None
        response: Any = None
        try:
            adapter = await self._registry.adapter_for(panel, target.binding)
            operation = adapter.operation_name("create_account")
            try:
                created = await adapter.create_account(
                    subscription.username, quota_gb, duration_days, _account_notes(subscription)
                )
            except PanelRejectedError as exc:
                if exc.status_code != 409:
                    raise
                request = adapter.last_request
                state = await self._adopt_existing(adapter, subscription.username, exc)
                adapter.last_request = request
                access_url, expire, quota_bytes = state.access_url, state.expire, state.quota_bytes
                response = {"conflict": exc.body, "account": state.raw}
            else:
                access_url, expire, quota_bytes = created.access_url, created.expire, created.quota_bytes
                response = created.raw
                if not access_url:
                    access_url = await self._read_back_access_url(adapter, subscription.username)
            if not access_url:
                raise PanelRejectedError(
                    f"{panel.name} accepted {subscription.username} but reported no subscription URL",
                    status_code=200,
                    body=response,
                )
        except ProvisioningError as exc:
            last_request = adapter.last_request if adapter is not None else None
            await record_attempt(
                session,
                subscription_id=subscription.id,
                operation=operation,
                request=last_request or fallback_request,
                success=False,
                error=exc,
                panel=panel,
            )
            await session.commit()
            increment_counter(f"provisioning_failures_total.{exc.kind}")
            logger.warning(
                "provisioning_failed subscription=%s panel=%s kind=%s error=%s",
                subscription.id,
                panel.name,
                exc.kind,
                exc,
            )
            return ProvisionResult(
                success=False,
                panel_id=panel.id,
                panel_name=panel.name,
                error=str(exc),
                error_kind=exc.kind,
            )

        expire_at = _expire_at(expire)
        quota_bytes = quota_bytes if quota_bytes is not None else 0
        subscriptions_repo.mark_provisioned(
            subscription,
            access_url=access_url,
            expire_at=expire_at,
            quota_bytes=quota_bytes,
            panel_id=panel.id,
            status=SUBSCRIPTION_ACTIVE,
        )
        await record_attempt(
            session,
            subscription_id=subscription.id,
            operation=operation,
            request=adapter.last_request or fallback_request,
            response=response,
            success=True,
            panel=panel,
        )
        await session.commit()
        increment_counter("provisioning_success_total")
        logger.info(
            "provisioning_succeeded subscription=%s panel=%s username=%s",
            subscription.id,
            panel.name,
            subscription.username,
        )
        return ProvisionResult(
            success=True,
            access_url=access_url,
            expire_at=expire_at,
            quota_bytes=quota_bytes,
            panel_id=panel.id,
            panel_name=panel.name,
        )

    async def _adopt_existing(self, adapter: Any, username: str, conflict: PanelRejectedError) -> AccountState:
        # A 409 is only harmless when the account can be read back right away.
        try:
            state = await adapter.fetch_account(username)
        except ProvisioningError as exc:
            logger.warning("provisioning_conflict_unresolved username=%s error=%s", username, exc)
            raise conflict from exc
        logger.info("provisioning_conflict_adopted username=%s", username)
        return state

    async def _read_back_access_url(self, adapter: Any, username: str) -> str | None:
        # Some panel builds leave subscription_url out of the create answer.
        request = adapter.last_request
        state = await adapter.fetch_account(username)
        adapter.last_request = request
        logger.info("provisioning_access_url_read_back username=%s found=%s", username, bool(state.access_url))
        return state.access_url

    async def retry_provisioning(self, session: AsyncSession, subscription_id: str) -> ProvisionResult:
        subscription = await self.load_subscription(session, subscription_id)
        await self.ensure_provisionable(session, subscription)
        logger.info("provisioning_retry subscription=%s", subscription_id)
        return await self.provision(session, subscription)

    async def handle_subscription_approved(
        self, session: AsyncSession, subscription_id: str
    ) -> ProvisionResult:
        """Entry point for the upstream approval event."""
        subscription = await self.load_subscription(session, subscription_id)
        if subscription.provisioned:
            raise AlreadyProvisionedError(f"subscription {subscription_id} is already provisioned")
        if subscription.status not in _APPROVABLE_STATUSES:
            raise SubscriptionStateError(
                f"subscription {subscription_id} is {subscription.status} and cannot be approved"
            )
        subscription.status = SUBSCRIPTION_ACTIVE
        await session.flush()
        await self.ensure_provisionable(session, subscription)
        return await self.provision(session, subscription)

    async def refresh_account(self, session: AsyncSession, subscription_id: str) -> AccountState:
        """Re-read the account from its panel and update the cached reflection."""
        subscription = await self.load_subscription(session, subscription_id)
        if not subscription.provisioned:
            raise SubscriptionStateError(f"subscription {subscription_id} is not provisioned")
        panel = await self._account_panel(session, subscription)
        adapter = await self._registry.adapter_for(panel)
        operation = adapter.operation_name("fetch_account")
        try:
            state = await adapter.fetch_account(subscription.username)
        except ProvisioningError as exc:
            await record_attempt(
                session,
                subscription_id=subscription.id,
                operation=operation,
                request=adapter.last_request,
                success=False,
                error=exc,
                panel=panel,
            )
            await session.commit()
            raise
        subscriptions_repo.refresh_reflection(
            subscription,
            access_url=state.access_url,
            expire_at=_expire_at(state.expire),
            quota_bytes=state.quota_bytes,
        )
        await record_attempt(
            session,
            subscription_id=subscription.id,
            operation=operation,
            request=adapter.last_request,
            response=state.raw,
            success=True,
            panel=panel,
        )
        await session.commit()
        return state

    async def renew(
        self,
        session: AsyncSession,
        subscription_id: str,
        *,
        quota_gb: float | None = None,
        duration_days: int | None = None,
    ) -> AccountState:
        """Add quota and time to the subscription's existing panel account.

        Missing values fall back to the subscription's own request, then to its
        plan's defaults. The renewal write is never repeated automatically.
        """
        subscription = await self.load_subscription(session, subscription_id)
        if not subscription.provisioned:
            raise SubscriptionStateError(f"subscription {subscription_id} is not provisioned")
        if subscription.status not in _RENEWABLE_STATUSES:
            raise SubscriptionStateError(
                f"subscription {subscription_id} is {subscription.status} and cannot be renewed"
            )
        plan = await plans_repo.get_plan(session, subscription.plan_id) if subscription.plan_id else None
        default_quota, default_days = self._quota_and_duration(subscription, plan)
        quota_gb = quota_gb or default_quota
        duration_days = duration_days or default_days
        panel = await self._account_panel(session, subscription)
        adapter = await self._registry.adapter_for(panel)
        operation = adapter.operation_name("renew_account")
        try:
            state = await adapter.renew_account(subscription.username, quota_gb, duration_days)
        except ProvisioningError as exc:
            await record_attempt(
                session,
                subscription_id=subscription.id,
                operation=operation,
                request=adapter.last_request
                or {"username": subscription.username, "quota_gb": quota_gb, "duration_days": duration_days},
                success=False,
                error=exc,
                panel=panel,
            )
            await session.commit()
            increment_counter(f"renewal_failures_total.{exc.kind}")
            raise
        subscriptions_repo.refresh_reflection(
            subscription,
            access_url=state.access_url,
            expire_at=_expire_at(state.expire),
            quota_bytes=state.quota_bytes,
        )
        subscription.status = SUBSCRIPTION_ACTIVE
        await record_attempt(
            session,
            subscription_id=subscription.id,
            operation=operation,
            request=adapter.last_request,
            response=state.raw,
            success=True,
            panel=panel,
        )
        await session.commit()
        logger.info(
            "account_renewed subscription=%s panel=%s quota_gb=%s duration_days=%s",
            subscription_id,
            panel.name,
            quota_gb,
            duration_days,
        )
        return state

    async def deprovision(self, session: AsyncSession, subscription_id: str) -> Subscription:
        subscription = await self.load_subscription(session, subscription_id)
        panel = await self._account_panel(session, subscription)
        adapter = await self._registry.adapter_for(panel)
        operation = adapter.operation_name("delete_account")
        try:
            await adapter.delete_account(subscription.username)
        except ProvisioningError as exc:
            await record_attempt(
                session,
                subscription_id=subscription.id,
                operation=operation,
                request=adapter.last_request,
                success=False,
                error=exc,
                panel=panel,
            )
            await session.commit()
            raise
        subscriptions_repo.mark_deprovisioned(subscription, status=SUBSCRIPTION_DELETED)
        await record_attempt(
            session,
            subscription_id=subscription.id,
            operation=operation,
            request=adapter.last_request,
            success=True,
            panel=panel,
        )
        await session.commit()
        logger.info("account_deprovisioned subscription=%s panel=%s", subscription_id, panel.name)
        return subscription


_orchestrator: ProvisioningOrchestrator | None = None


def get_orchestrator() -> ProvisioningOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ProvisioningOrchestrator()
    return _orchestrator
