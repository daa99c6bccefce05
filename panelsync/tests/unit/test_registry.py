from __future__ import annotations

import pytest

from panelsync.core.errors import (
    FamilyMismatchError,
    NoPanelBoundError,
    PanelConfigError,
    PanelNotFoundError,
)
from panelsync.domain.models import (
    FAMILY_MARZBAN,
    FAMILY_MARZNESHIN,
    HEALTH_OFFLINE,
    HEALTH_ONLINE,
    HEALTH_UNKNOWN,
    PlanPanelBinding,
)
from panelsync.services.registry import (
    check_panel_health,
    fetch_panel_stats,
    resolve_target,
    search_accounts,
)
from panelsync.tests.utils.factories import create_panel, create_plan
from panelsync.tests.utils.fake_panels import FakePanel


@pytest.mark.asyncio
async def test_active_primary_wins(session) -> None:
    primary = await create_panel(session, host="de.panel.test", health_status=HEALTH_UNKNOWN)
    other = await create_panel(session, host="nl.panel.test")
    plan = await create_plan(session, primary=primary, panels=[other])

    target = await resolve_target(session, plan)

    assert target.primary.id == primary.id
    assert [panel.id for panel in target.fallbacks] == [other.id]
    assert target.binding is not None and target.binding.is_primary


@pytest.mark.asyncio
async def test_plan_without_bindings_is_no_panel_bound(session) -> None:
    plan = await create_plan(session)
    with pytest.raises(NoPanelBoundError):
        await resolve_target(session, plan)


@pytest.mark.asyncio
async def test_relaxed_resolution_never_picks_panels_for_an_unbound_plan(session) -> None:
    await create_panel(session, host="nl.panel.test", health_status=HEALTH_ONLINE)
    plan = await create_plan(session)
    with pytest.raises(NoPanelBoundError):
        await resolve_target(session, plan, relaxed=True)


@pytest.mark.asyncio
async def test_plan_with_only_inactive_panels_is_no_panel_bound(session) -> None:
    primary = await create_panel(session, host="de.panel.test", is_active=False)
    other = await create_panel(session, host="nl.panel.test", is_active=False)
    plan = await create_plan(session, primary=primary, panels=[other])
    with pytest.raises(NoPanelBoundError):
        await resolve_target(session, plan)


@pytest.mark.asyncio
async def test_family_mismatch_is_rejected(session) -> None:
    wrong = await create_panel(session, host="nl.panel.test", family=FAMILY_MARZNESHIN)
    plan = await create_plan(session, family=FAMILY_MARZBAN, primary=wrong)
    with pytest.raises(FamilyMismatchError) as excinfo:
        await resolve_target(session, plan)
    assert "marzneshin" in str(excinfo.value)


@pytest.mark.asyncio
async def test_fallbacks_ordered_by_health_and_offline_excluded(session) -> None:
    primary = await create_panel(session, host="de.panel.test", is_active=False)
    offline = await create_panel(session, host="fr.panel.test", health_status=HEALTH_OFFLINE)
    unknown = await create_panel(session, host="nl.panel.test", health_status=HEALTH_UNKNOWN)
    online = await create_panel(session, host="uk.panel.test", health_status=HEALTH_ONLINE)
    plan = await create_plan(session, primary=primary, panels=[offline, unknown, online])

    target = await resolve_target(session, plan)

    assert target.primary.id == online.id
    assert [panel.id for panel in target.fallbacks] == [unknown.id]


@pytest.mark.asyncio
async def test_offline_fallback_used_when_nothing_else_is_left(session) -> None:
    primary = await create_panel(session, host="de.panel.test", is_active=False)
    offline = await create_panel(session, host="fr.panel.test", health_status=HEALTH_OFFLINE)
    plan = await create_plan(session, primary=primary, panels=[offline])

    target = await resolve_target(session, plan)

    assert target.primary.id == offline.id
    assert target.fallbacks == []


@pytest.mark.asyncio
async def test_two_primary_bindings_are_a_config_error(session) -> None:
    first = await create_panel(session, host="de.panel.test")
    second = await create_panel(session, host="nl.panel.test")
    plan = await create_plan(session)
    session.add_all(
        [
            PlanPanelBinding(id="b1", plan_id=plan.id, panel_id=first.id, is_primary=True),
            PlanPanelBinding(id="b2", plan_id=plan.id, panel_id=second.id, is_primary=True),
        ]
    )
    await session.flush()
    with pytest.raises(PanelConfigError):
        await resolve_target(session, plan)


@pytest.mark.asyncio
async def test_relaxed_resolution_demotes_offline_primary(session) -> None:
    primary = await create_panel(session, host="de.panel.test", health_status=HEALTH_OFFLINE)
    spare = await create_panel(session, host="nl.panel.test", health_status=HEALTH_ONLINE)
    await create_panel(session, host="fr.panel.test", family=FAMILY_MARZNESHIN)
    plan = await create_plan(session, primary=primary)

    strict = await resolve_target(session, plan)
    relaxed = await resolve_target(session, plan, relaxed=True)

    assert strict.primary.id == primary.id
    assert relaxed.primary.id == spare.id
    assert relaxed.binding is None
    assert [panel.id for panel in relaxed.fallbacks] == [primary.id]


@pytest.mark.asyncio
async def test_health_check_marks_panel_online_and_stores_config(session, network, registry) -> None:
    network.add("de.panel.test", FakePanel("marzban"))
    panel = await create_panel(session, host="de.panel.test", health_status=HEALTH_UNKNOWN)

    report = await check_panel_health(session, panel.id, registry=registry)

    assert report.health_status == HEALTH_ONLINE
    assert report.authenticated is True
    assert panel.health_status == HEALTH_ONLINE
    assert panel.last_health_check is not None
    assert panel.config_json["family"] == "marzban"


@pytest.mark.asyncio
async def test_health_check_with_bad_credentials_marks_offline(session, network, registry) -> None:
    network.add("nl.panel.test", FakePanel("marzneshin"))
    panel = await create_panel(
        session, host="nl.panel.test", family=FAMILY_MARZNESHIN, password="wrong"
    )

    report = await check_panel_health(session, panel.id, registry=registry)

    assert report.health_status == HEALTH_OFFLINE
    assert report.authenticated is False
    assert report.error_kind == "auth_error"
    assert panel.health_status == HEALTH_OFFLINE


@pytest.mark.asyncio
async def test_stats_for_unknown_panel(session, registry) -> None:
    with pytest.raises(PanelNotFoundError):
        await fetch_panel_stats(session, "missing", registry=registry)


@pytest.mark.asyncio
async def test_stats_are_normalized(session, network, registry) -> None:
    network.add("nl.panel.test", FakePanel("marzneshin"))
    panel = await create_panel(session, host="nl.panel.test", family=FAMILY_MARZNESHIN)

    stats = await fetch_panel_stats(session, panel.id, registry=registry)

    assert stats.total_users == 0
    assert stats.on_hold_users == 0


@pytest.mark.asyncio
async def test_search_spans_active_panels_and_reports_failures(session, network, registry) -> None:
    de = network.add("de.panel.test", FakePanel("marzban"))
    nl = network.add("nl.panel.test", FakePanel("marzneshin"))
    de.users["omid_de"] = {"username": "omid_de", "status": "active"}
    nl.users["omid_nl"] = {"username": "omid_nl", "is_active": True}
    de.users["sara"] = {"username": "sara", "status": "active"}
    await create_panel(session, host="de.panel.test")
    await create_panel(session, host="nl.panel.test", family=FAMILY_MARZNESHIN)
    await create_panel(session, host="gone.panel.test")
    await create_panel(session, host="off.panel.test", is_active=False)

    result = await search_accounts(session, "omid", registry=registry)

    assert sorted((m.panel_name, m.account.username) for m in result.matches) == [
        ("de", "omid_de"),
        ("nl", "omid_nl"),
    ]
    assert list(result.failures) == ["gone"]
    assert "failed" in result.failures["gone"]


@pytest.mark.asyncio
async def test_search_scoped_to_plan_and_short_queries(session, network, registry) -> None:
    de = network.add("de.panel.test", FakePanel("marzban"))
    nl = network.add("nl.panel.test", FakePanel("marzban"))
    de.users["omid"] = {"username": "omid"}
    nl.users["omid2"] = {"username": "omid2"}
    de_panel = await create_panel(session, host="de.panel.test")
    await create_panel(session, host="nl.panel.test")
    plan = await create_plan(session, primary=de_panel)

    scoped = await search_accounts(session, "omid", plan_id=plan.id, registry=registry)
    too_short = await search_accounts(session, " o ", registry=registry)

    assert [m.panel_id for m in scoped.matches] == [de_panel.id]
    assert too_short.matches == []
    assert nl.requests == []
