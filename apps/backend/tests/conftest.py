"""
pytest configuration and shared fixtures for the CivicPulse API tests.

Key concern: tests must not require a live MongoDB, TensorFlow training runs
or any upstream context API. We achieve this by:
  1. Patching connect_to_mongo / close_mongo_connection to no-ops so
     FastAPI's lifespan doesn't try to reach a real database.
  2. Setting db_client.client = None (disconnected) so health check
     correctly reports "disconnected" and nothing is persisted.
  3. Ensuring CONTEXT_MOCK_MODE=true so weather / events / demographics
     come from the deterministic hash instead of HTTP.
  4. Building every engine on a ManualClock: nothing runs until a test
     advances the clock and calls `await scheduler.run_due()`.

The `engine` fixture uses the statistical fallback only (its network
factory raises). Tests that exercise the learned model build their own
predictor and skip when tensorflow is not installed.
"""

import os
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

# Set env vars BEFORE importing the app so Settings picks them up correctly
os.environ.setdefault("CONTEXT_MOCK_MODE", "true")
os.environ.setdefault("ENVIRONMENT", "test")

# 2025-10-19 12:00:00 UTC (a Sunday)
NOW_MS = 1_760_875_200_000
CENTRE = (77.5946, 12.9716)   # (lon, lat)


def no_network(n_features: int):
    raise RuntimeError("learned model disabled in tests")


@pytest.fixture(autouse=True)
async def mock_db():
    """
    Patch the MongoDB lifecycle for every test.

    - connect_to_mongo → no-op AsyncMock (startup doesn't attempt real connection)
    - close_mongo_connection → no-op AsyncMock
    - db_client.client → None  (health check reports "disconnected", which is fine)
    - db_client.db → None

    Tests that need a real db should override this fixture locally.
    """
    with (
        patch("civicpulse.core.database.connect_to_mongo", new_callable=AsyncMock),
        patch("civicpulse.core.database.close_mongo_connection", new_callable=AsyncMock),
    ):
        import civicpulse.core.database as db_module

        # Save originals so we can restore after the test
        original_client = db_module.db_client.client
        original_db = db_module.db_client.db

        db_module.db_client.client = None
        db_module.db_client.db = None

        yield

        db_module.db_client.client = original_client
        db_module.db_client.db = original_db


@pytest.fixture()
def clock():
    from civicpulse.core.scheduler import ManualClock

    return ManualClock(start=NOW_MS / 1000)


@pytest.fixture()
def make_observation():
    """
    Factory for observations near CENTRE.

        obs = make_observation(value=80, minutes_ago=30, dlon=0.01)
    """
    from civicpulse.models.observation import Observation

    def _make(value=50.0, minutes_ago=0, dlon=0.0, dlat=0.0, category="pothole", **extra):
        return Observation(
            timestamp=NOW_MS - int(minutes_ago * 60_000),
            location=(CENTRE[0] + dlon, CENTRE[1] + dlat),
            value=value,
            category=category,
            **extra,
        )

    return _make


@pytest.fixture()
async def engine(clock):
    """Started HeatmapEngine on a manual clock; the scheduler loop is not running."""
    from civicpulse.core.scheduler import TaskScheduler
    from civicpulse.services.context_provider import ContextProvider
    from civicpulse.services.engine import HeatmapEngine

    eng = HeatmapEngine(
        scheduler=TaskScheduler(clock=clock),
        context=ContextProvider(mock_mode=True),
        network_factory=no_network,
        clock_ms=lambda: int(clock() * 1000),
    )
    eng.start(run_loop=False)
    yield eng
    await eng.shutdown()


@pytest.fixture()
async def client(mock_db, engine):  # noqa: ARG001  (mock_db must run first)
    """
    HTTPX async test client wired to the FastAPI app and the test engine.

    Usage:
        async def test_something(client):
            response = await client.get("/health")
            assert response.status_code == 200
    """
    from civicpulse.core.rate_limit import limiter
    from civicpulse.main import app
    from civicpulse.services.engine import get_engine

    # Reset in-memory rate-limit counters so tests are independent.
    limiter.reset()
    app.dependency_overrides[get_engine] = lambda: engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
