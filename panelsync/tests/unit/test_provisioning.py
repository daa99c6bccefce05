from __future__ import annotations

from datetime import datetime, timezone

import httpx
import pytest

from panelsync.core.errors import (
    AccountNotFoundError,
    AlreadyProvisionedError,
    SubscriptionNotFoundError,
    SubscriptionStateError,
)
from panelsync.domain.models import (
    FAMILY_MARZBAN,
    FAMILY_MARZNESHIN,
    HEALTH_OFFLINE,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELLED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_EXPIRED,
    SUBSCRIPTION_PENDING,
)
from panelsync.persistence.repos.attempts import list_attempts
from panelsync.services.provisioning import ProvisioningOrchestrator
from panelsync.services.registry import PanelRegistry
from panelsync.tests.utils.down_redis import DownRedis
from panelsync.tests.utils.factories import create_panel, create_plan, create_subscription
from panelsync.tests.utils.fake_panels import FakePanel


async def _marzban_setup(session, network, *, username: str = "alice"):
    fake = network.add("de.panel.test", FakePanel("marzban"))
    panel = await create_panel(session, host="de.panel.test")
    plan = await create_plan(session, primary=panel)
    subscription = await create_subscription(session, plan=plan, username=username)
    return fake, panel, plan, subscription


@pytest.mark.asyncio
async def test_provision_success_records_one_attempt(session, network, orchestrator) -> None:
    fake, panel, _plan, subscription = await _marzban_setup(session, network)

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is True
    assert result.panel_id == panel.id
    assert result.access_url == "https://de.panel.test/sub/alice-token"
    assert result.quota_bytes == 10 * 1073741824
    assert result.expire_at > datetime.now(timezone.utc)
    assert subscription.provisioned is True
    assert subscription.status == SUBSCRIPTION_ACTIVE
    assert subscription.access_url == result.access_url
    assert subscription.panel_id == panel.id
    assert "alice" in fake.users

    attempts = await list_attempts(session, subscription.id)
    assert len(attempts) == 1
    assert attempts[0].operation == "marzban.create_account"
    assert attempts[0].success is True
    assert attempts[0].panel_url == "https://de.panel.test"


@pytest.mark.asyncio
async def test_provision_failure_keeps_panel_text_and_kind(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    fake.fail_next(
        "POST",
        "/api/user",
        httpx.Response(400, json={"detail": "Proxy vless is disabled"}),
    )

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is False
    assert result.error_kind == "panel_rejected"
    assert "Proxy vless is disabled" in result.error
    assert subscription.provisioned is False

    attempts = await list_attempts(session, subscription.id)
    assert len(attempts) == 1
    assert attempts[0].success is False
    assert attempts[0].error_kind == "panel_rejected"
    assert attempts[0].response_json["status_code"] == 400
    assert attempts[0].request_json["json"]["username"] == "alice"


@pytest.mark.asyncio
async def test_unbound_plan_fails_without_network(session, network, orchestrator) -> None:
    network.add("de.panel.test", FakePanel("marzban"))
    plan = await create_plan(session)
    subscription = await create_subscription(session, plan=plan)

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is False
    assert result.error_kind == "no_panel_bound"
    assert network.total_requests() == 0
    attempts = await list_attempts(session, subscription.id)
    assert [a.operation for a in attempts] == ["resolve_target"]
    assert attempts[0].panel_id is None


@pytest.mark.asyncio
async def test_family_mismatch_fails_without_network(session, network, orchestrator) -> None:
    network.add("nl.panel.test", FakePanel("marzneshin"))
    panel = await create_panel(session, host="nl.panel.test", family=FAMILY_MARZNESHIN)
    plan = await create_plan(session, family=FAMILY_MARZBAN, primary=panel)
    subscription = await create_subscription(session, plan=plan)

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.error_kind == "family_mismatch"
    assert network.total_requests() == 0
    assert subscription.provisioned is False


@pytest.mark.asyncio
async def test_subscription_without_plan_is_no_panel_bound(session, network, orchestrator) -> None:
    subscription = await create_subscription(session, plan=None)

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.error_kind == "no_panel_bound"
    assert network.total_requests() == 0


@pytest.mark.asyncio
async def test_retry_of_provisioned_subscription_is_refused(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    await orchestrator.retry_provisioning(session, subscription.id)
    requests_after_first = network.total_requests()

    with pytest.raises(AlreadyProvisionedError):
        await orchestrator.retry_provisioning(session, subscription.id)

    assert network.total_requests() == requests_after_first
    assert len(fake.users) == 1
    assert len(await list_attempts(session, subscription.id)) == 1


@pytest.mark.asyncio
async def test_attempt_log_blocks_second_create_even_if_flag_lost(session, network, orchestrator) -> None:
    _fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    await orchestrator.retry_provisioning(session, subscription.id)
    subscription.provisioned = False
    await session.commit()

    with pytest.raises(AlreadyProvisionedError) as excinfo:
        await orchestrator.retry_provisioning(session, subscription.id)
    assert "refresh" in str(excinfo.value)


@pytest.mark.asyncio
async def test_failed_then_retried_provision_succeeds(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    fake.fail_next("POST", "/api/user", httpx.Response(500, text="Internal Server Error"))

    first = await orchestrator.retry_provisioning(session, subscription.id)
    second = await orchestrator.retry_provisioning(session, subscription.id)

    assert first.success is False
    assert second.success is True
    attempts = await list_attempts(session, subscription.id)
    assert [a.success for a in attempts] == [True, False]


@pytest.mark.asyncio
async def test_conflict_adopts_existing_account(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network, username="zoe")
    fake.users["zoe"] = {
        "username": "zoe",
        "data_limit": 5 * 1073741824,
        "expire": 2_000_000_000,
        "status": "active",
        "used_traffic": 12,
        "subscription_url": "/sub/zoe-existing",
    }

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is True
    assert result.access_url == "https://de.panel.test/sub/zoe-existing"
    assert result.quota_bytes == 5 * 1073741824
    attempts = await list_attempts(session, subscription.id)
    assert len(attempts) == 1
    assert attempts[0].response_json["conflict"] == {"detail": "User already exists"}


@pytest.mark.asyncio
async def test_offline_primary_is_still_attempted(session, network, orchestrator) -> None:
    network.add("de.panel.test", FakePanel("marzban"))
    panel = await create_panel(session, host="de.panel.test", health_status=HEALTH_OFFLINE)
    plan = await create_plan(session, primary=panel)
    subscription = await create_subscription(session, plan=plan)

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is True
    assert result.panel_id == panel.id


@pytest.mark.asyncio
async def test_unreachable_panel_is_transport_failure(session, orchestrator) -> None:
    panel = await create_panel(session, host="gone.panel.test")
    plan = await create_plan(session, primary=panel)
    subscription = await create_subscription(session, plan=plan)

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is False
    assert result.error_kind == "transport_error"
    attempts = await list_attempts(session, subscription.id)
    assert attempts[0].error_kind == "transport_error"


@pytest.mark.asyncio
async def test_marzneshin_plan_provisions_through_marzneshin(session, network, orchestrator) -> None:
    fake = network.add("nl.panel.test", FakePanel("marzneshin"))
    panel = await create_panel(session, host="nl.panel.test", family=FAMILY_MARZNESHIN)
    plan = await create_plan(session, family=FAMILY_MARZNESHIN, primary=panel)
    subscription = await create_subscription(session, plan=plan, username="mona")

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is True
    assert result.access_url == "https://sub.example.test/mona"
    assert fake.users["mona"]["service_ids"] == [1, 2]
    attempts = await list_attempts(session, subscription.id)
    assert attempts[0].operation == "marzneshin.create_account"


@pytest.mark.asyncio
async def test_unknown_subscription(session, orchestrator) -> None:
    with pytest.raises(SubscriptionNotFoundError):
        await orchestrator.retry_provisioning(session, "missing")


@pytest.mark.asyncio
async def test_pending_subscription_cannot_be_retried(session, network, orchestrator) -> None:
    network.add("de.panel.test", FakePanel("marzban"))
    panel = await create_panel(session, host="de.panel.test")
    plan = await create_plan(session, primary=panel)
    subscription = await create_subscription(session, plan=plan, status=SUBSCRIPTION_PENDING)

    with pytest.raises(SubscriptionStateError):
        await orchestrator.retry_provisioning(session, subscription.id)
    assert network.total_requests() == 0


@pytest.mark.asyncio
async def test_approval_event_activates_and_provisions(session, network, orchestrator) -> None:
    network.add("de.panel.test", FakePanel("marzban"))
    panel = await create_panel(session, host="de.panel.test")
    plan = await create_plan(session, primary=panel)
    subscription = await create_subscription(session, plan=plan, status=SUBSCRIPTION_PENDING)

    result = await orchestrator.handle_subscription_approved(session, subscription.id)

    assert result.success is True
    assert subscription.status == SUBSCRIPTION_ACTIVE
    with pytest.raises(AlreadyProvisionedError):
        await orchestrator.handle_subscription_approved(session, subscription.id)


@pytest.mark.asyncio
async def test_refresh_updates_reflection_from_panel(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    await orchestrator.retry_provisioning(session, subscription.id)
    fake.users["alice"]["data_limit"] = 20 * 1073741824
    fake.users["alice"]["used_traffic"] = 512

    state = await orchestrator.refresh_account(session, subscription.id)

    assert state.used_traffic == 512
    assert subscription.quota_bytes == 20 * 1073741824
    attempts = await list_attempts(session, subscription.id)
    assert attempts[0].operation == "marzban.fetch_account"


@pytest.mark.asyncio
async def test_refresh_requires_provisioned_subscription(session, network, orchestrator) -> None:
    _fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    with pytest.raises(SubscriptionStateError):
        await orchestrator.refresh_account(session, subscription.id)


@pytest.mark.asyncio
async def test_deprovision_deletes_account_and_keeps_row(session, network, orchestrator) -> None:
    fake, panel, _plan, subscription = await _marzban_setup(session, network)
    await orchestrator.retry_provisioning(session, subscription.id)

    await orchestrator.deprovision(session, subscription.id)

    assert fake.users == {}
    assert subscription.provisioned is False
    assert subscription.status == SUBSCRIPTION_DELETED
    assert subscription.panel_id == panel.id
    attempts = await list_attempts(session, subscription.id)
    assert [a.operation for a in attempts] == ["marzban.delete_account", "marzban.create_account"]


@pytest.mark.asyncio
async def test_create_answer_without_url_is_read_back(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network, username="zed")
    fake.fail_next("POST", "/api/user", httpx.Response(200, json={"username": "zed"}))
    fake.users["zed"] = {"username": "zed", "data_limit": 1024, "subscription_url": "/sub/zed-token"}

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is True
    assert result.access_url == "https://de.panel.test/sub/zed-token"
    assert subscription.access_url == result.access_url
    attempts = await list_attempts(session, subscription.id)
    assert len(attempts) == 1
    assert attempts[0].request_json["method"] == "POST"


@pytest.mark.asyncio
async def test_create_without_any_access_url_is_a_failure(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network, username="zed")
    fake.fail_next("POST", "/api/user", httpx.Response(200, json={"username": "zed"}))
    fake.users["zed"] = {"username": "zed", "data_limit": 1024}

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is False
    assert result.error_kind == "panel_rejected"
    assert "no subscription URL" in result.error
    assert subscription.provisioned is False
    attempts = await list_attempts(session, subscription.id)
    assert len(attempts) == 1
    assert attempts[0].success is False
    assert attempts[0].response_json["body"] == {"username": "zed"}
    assert attempts[0].request_json["json"]["username"] == "zed"


@pytest.mark.asyncio
async def test_unreachable_redis_does_not_block_provisioning(
    monkeypatch, session, network, http_client
) -> None:
    async def _down_redis():
        return DownRedis()

    monkeypatch.setattr("panelsync.services.registry.get_resilience_redis", _down_redis)
    orchestrator = ProvisioningOrchestrator(PanelRegistry(client=http_client))
    fake, _panel, _plan, subscription = await _marzban_setup(session, network)

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is True
    assert "alice" in fake.users
    attempts = await list_attempts(session, subscription.id)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_unsupported_panel_family_is_recorded(session, network, orchestrator) -> None:
    panel = await create_panel(session, host="xr.panel.test", family="xray")
    plan = await create_plan(session, family="xray", primary=panel)
    subscription = await create_subscription(session, plan=plan)

    result = await orchestrator.retry_provisioning(session, subscription.id)

    assert result.success is False
    assert result.error_kind == "panel_config"
    assert network.total_requests() == 0
    attempts = await list_attempts(session, subscription.id)
    assert [a.operation for a in attempts] == ["xray.create_account"]
    assert attempts[0].panel_id == panel.id


@pytest.mark.asyncio
async def test_renew_adds_quota_and_extends_expiry(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    await orchestrator.retry_provisioning(session, subscription.id)
    previous_expire = fake.users["alice"]["expire"]
    subscription.status = SUBSCRIPTION_EXPIRED
    await session.commit()

    state = await orchestrator.renew(session, subscription.id, quota_gb=5, duration_days=10)

    assert fake.users["alice"]["data_limit"] == 15 * 1073741824
    assert fake.users["alice"]["expire"] == previous_expire + 10 * 86400
    assert state.quota_bytes == 15 * 1073741824
    assert subscription.quota_bytes == 15 * 1073741824
    assert subscription.status == SUBSCRIPTION_ACTIVE
    attempts = await list_attempts(session, subscription.id)
    assert [a.operation for a in attempts] == ["marzban.renew_account", "marzban.create_account"]
    assert attempts[0].request_json["method"] == "PUT"


@pytest.mark.asyncio
async def test_renew_defaults_to_subscription_request(session, network, orchestrator) -> None:
    fake = network.add("nl.panel.test", FakePanel("marzneshin"))
    panel = await create_panel(session, host="nl.panel.test", family=FAMILY_MARZNESHIN)
    plan = await create_plan(session, family=FAMILY_MARZNESHIN, primary=panel)
    subscription = await create_subscription(session, plan=plan, username="bob", data_limit_gb=3)
    await orchestrator.retry_provisioning(session, subscription.id)

    await orchestrator.renew(session, subscription.id)

    assert fake.users["bob"]["data_limit"] == 6 * 1073741824
    assert len(fake.calls("PATCH", "/api/users/bob")) == 1


@pytest.mark.asyncio
async def test_renew_of_missing_account_records_failure(session, network, orchestrator) -> None:
    fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    await orchestrator.retry_provisioning(session, subscription.id)
    fake.users.clear()

    with pytest.raises(AccountNotFoundError):
        await orchestrator.renew(session, subscription.id, quota_gb=5, duration_days=10)

    attempts = await list_attempts(session, subscription.id)
    assert attempts[0].operation == "marzban.renew_account"
    assert attempts[0].success is False
    assert attempts[0].error_kind == "account_not_found"


@pytest.mark.asyncio
@pytest.mark.parametrize("provisioned", [False, True])
async def test_renew_requires_live_account(session, network, orchestrator, provisioned) -> None:
    _fake, _panel, _plan, subscription = await _marzban_setup(session, network)
    if provisioned:
        await orchestrator.retry_provisioning(session, subscription.id)
        subscription.status = SUBSCRIPTION_CANCELLED
        await session.commit()

    with pytest.raises(SubscriptionStateError):
        await orchestrator.renew(session, subscription.id, quota_gb=5, duration_days=10)
