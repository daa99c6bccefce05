from __future__ import annotations

import pytest
from panelsync.core.config import get_settings
from panelsync.domain.models import Base
from panelsync.persistence.db import build_engine, build_sessionmaker
from panelsync.services.provisioning import ProvisioningOrchestrator
from panelsync.services.registry import PanelRegistry, reset_panel_registry
from panelsync.services.telemetry import reset_telemetry
from panelsync.services.tokens import reset_token_cache
from panelsync.tests.utils.fake_panels import PanelNetwork


@pytest.fixture(autouse=True)
def _fast_retries(monkeypatch) -> None:
    # Keep read retries quick and Redis out of the picture.
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    monkeypatch.setenv("REDIS_URL", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
    reset_telemetry()
    reset_token_cache()
    reset_panel_registry()


@pytest.fixture
async def session_factory():
    # In-memory SQLite; build_engine pins it to one shared connection.
    engine = build_engine("sqlite+aiosqlite://")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def network() -> PanelNetwork:
    return PanelNetwork()


@pytest.fixture
async def http_client(network: PanelNetwork):
    client = network.client()
    yield client
    await client.aclose()


@pytest.fixture
def registry(http_client) -> PanelRegistry:
    return PanelRegistry(client=http_client, use_redis=False)


@pytest.fixture
def orchestrator(registry: PanelRegistry) -> ProvisioningOrchestrator:
    return ProvisioningOrchestrator(registry)
