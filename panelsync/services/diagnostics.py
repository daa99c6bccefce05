from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from panelsync.core.config import get_settings
from panelsync.core.errors import (
    FamilyMismatchError,
    NoPanelBoundError,
    PanelConfigError,
    SubscriptionNotFoundError,
)
from panelsync.domain.models import HEALTH_OFFLINE, SUBSCRIPTION_ACTIVE, Panel
from panelsync.domain.provisioning import (
    DiagnosticReport,
    PanelSummary,
    ProvisionResult,
    ResolvedTarget,
)
from panelsync.persistence.repos import attempts as attempts_repo
from panelsync.persistence.repos import panels as panels_repo
from panelsync.persistence.repos import plans as plans_repo
from panelsync.persistence.repos import subscriptions as subscriptions_repo
from panelsync.services.attempt_log import attempt_history
from panelsync.services.provisioning import ProvisioningOrchestrator, get_orchestrator
from panelsync.services.registry import resolve_target


logger = logging.getLogger(__name__)


def _summary(panel: Panel) -> PanelSummary:
    # Snapshot that outlives the session.
    return PanelSummary(
        id=panel.id,
        name=panel.name,
        family=panel.family,
        health_status=panel.health_status,
        is_active=panel.is_active,
    )


def _alternative(available: list[PanelSummary], excluded_id: str) -> PanelSummary | None:
    # First non-offline panel other than the excluded one; offline only as a last resort.
    candidates = [panel for panel in available if panel.id != excluded_id]
    healthy = [panel for panel in candidates if panel.health_status != HEALTH_OFFLINE]
    if healthy:
        return healthy[0]
    return candidates[0] if candidates else None


async def diagnose(session: AsyncSession, subscription_id: str) -> DiagnosticReport:
    """Explain why a subscription's provisioning state is inconsistent.

    Read-only: nothing is written and no panel is contacted. Checks run in a
    fixed order and each failed check adds one issue with one paired
    recommendation. An empty issue list means the configuration is valid; it
    does not prove that the panel account exists.
    """
    subscription = await subscriptions_repo.get_subscription(session, subscription_id)
    if subscription is None:
        raise SubscriptionNotFoundError(f"subscription {subscription_id} not found")

    issues: list[str] = []
    recommendations: list[str] = []
    plan = await plans_repo.get_plan(session, subscription.plan_id) if subscription.plan_id else None
    family = plan.family if plan is not None else None
    available = [_summary(panel) for panel in await panels_repo.list_active_panels(session, family=family)]
    attempts = await attempt_history(
        session, subscription.id, limit=get_settings().attempt_log_page_size
    )

    # (a) plan bound at all
    bindings = await plans_repo.list_bindings_with_panels(session, plan.id) if plan is not None else []
    if not subscription.plan_id:
        issues.append("Subscription has no plan assigned.")
        recommendations.append("Assign a plan to the subscription before provisioning.")
    elif plan is None:
        issues.append(f"Subscription references plan {subscription.plan_id}, which does not exist.")
        recommendations.append("Point the subscription at an existing plan.")
    elif not bindings:
        issues.append(f"Plan {plan.code} has no bound panel.")
        recommendations.append(f"Bind an active {plan.family} panel to plan {plan.code}.")

    # (b) plan resolves to an active, family-matching panel
    target: ResolvedTarget | None = None
    if plan is not None and bindings:
        try:
            target = await resolve_target(session, plan)
        except FamilyMismatchError as exc:
            issues.append(f"Panel family mismatch: {exc}.")
            recommendations.append(
                f"Unbind panels that are not {plan.family} from plan {plan.code}, "
                "or change the plan's family."
            )
        except NoPanelBoundError:
            issues.append(f"Every panel bound to plan {plan.code} is inactive.")
            alternative = available[0] if available else None
            if alternative is not None:
                recommendations.append(
                    f"Activate a bound panel or bind {alternative.name} to plan {plan.code}."
                )
            else:
                recommendations.append(f"Activate a {plan.family} panel and bind it to plan {plan.code}.")
        except PanelConfigError as exc:
            issues.append(f"Plan binding configuration is invalid: {exc}.")
            recommendations.append(f"Keep exactly one primary binding on plan {plan.code}.")

    # (c) resolved panel offline
    if target is not None and target.primary.health_status == HEALTH_OFFLINE:
        panel = target.primary
        issues.append(f"Panel {panel.name} is offline.")
        alternative = _alternative(available, panel.id)
        if alternative is not None:
            recommendations.append(
                f"Repair onto alternative panel {alternative.name} ({alternative.health_status}), "
                f"or bring {panel.name} back online."
            )
        else:
            recommendations.append(
                f"Bring {panel.name} back online or bind another active {panel.family} panel."
            )

    # (d) active but never provisioned
    if subscription.status == SUBSCRIPTION_ACTIVE and not subscription.provisioned:
        if not await attempts_repo.has_successful_attempt(session, subscription.id):
            issues.append("Subscription is active but was never provisioned.")
            recommendations.append(
                "Retry provisioning, or run repair if the bound panel stays unusable."
            )

    if issues:
        logger.info("diagnostics_issues_found subscription=%s count=%s", subscription.id, len(issues))
    return DiagnosticReport(
        subscription_id=subscription.id,
        issues=issues,
        recommendations=recommendations,
        available_panels=available,
        attempts=attempts,
    )


async def repair(
    session: AsyncSession,
    subscription_id: str,
    *,
    orchestrator: ProvisioningOrchestrator | None = None,
) -> ProvisionResult:
    """Re-provision with relaxed panel selection; operator-triggered only."""
    orchestrator = orchestrator or get_orchestrator()
    subscription = await orchestrator.load_subscription(session, subscription_id)
    await orchestrator.ensure_provisionable(session, subscription)
    try:
        plan = await orchestrator.load_plan(session, subscription)
        target = await resolve_target(session, plan, relaxed=True)
    except (NoPanelBoundError, FamilyMismatchError, PanelConfigError) as exc:
        return await orchestrator.fail_unresolved(session, subscription, exc)
    logger.info(
        "repair_target_resolved subscription=%s panel=%s fallbacks=%s",
        subscription.id,
        target.primary.name,
        len(target.fallbacks),
    )
    return await orchestrator.provision(session, subscription, target=target)
