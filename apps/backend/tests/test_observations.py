"""
test_observations.py — Tests for POST /api/v1/observations, the batch
endpoint and GET /api/v1/observations/stats.
"""

from unittest.mock import patch

import pytest

from conftest import CENTRE, NOW_MS


def observation_json(value=50, dlat=0.0, **extra):
    return {
        "timestamp": NOW_MS,
        "location": [CENTRE[0], CENTRE[1] + dlat],
        "value": value,
        "category": "pothole",
        **extra,
    }


class TestIngest:
    async def test_ingest_returns_201(self, client):
        r = await client.post("/api/v1/observations", json=observation_json(value=70))
        assert r.status_code == 201
        data = r.json()
        assert data["ok"] is True
        assert data["pointId"]
        assert data["intensityLevel"] == "high"
        assert data["bufferedRecords"] == 1
        assert len(data["h3Index"]) == 15

    async def test_ingest_with_context(self, client, engine):
        payload = observation_json(
            weather={"temperature": 31, "precipitation": 4.5},
            events=[{"type": "festival", "distance": 300, "capacity": 5000}],
        )
        r = await client.post("/api/v1/observations", json=payload)
        assert r.status_code == 201
        [stored] = engine.store.snapshot()
        assert stored.weather.precipitation == 4.5
        assert stored.events[0].type == "festival"

    @pytest.mark.parametrize("location", [[200, 10], [10, -95], [1.0]])
    async def test_bad_location_rejected(self, client, location):
        r = await client.post("/api/v1/observations", json=observation_json() | {"location": location})
        assert r.status_code == 422

    async def test_missing_value_rejected(self, client):
        payload = observation_json()
        del payload["value"]
        r = await client.post("/api/v1/observations", json=payload)
        assert r.status_code == 422

    async def test_rate_limit_returns_429(self, client):
        from civicpulse.core.rate_limit import limiter

        with patch.object(limiter.limiter, "hit", return_value=False):
            r = await client.post("/api/v1/observations", json=observation_json())
        assert r.status_code == 429


class TestBatch:
    async def test_batch_ingests_in_order(self, client, engine):
        batch = [observation_json(value=v, dlat=i * 0.001) for i, v in enumerate((10, 20, 30))]
        r = await client.post("/api/v1/observations/batch", json={"observations": batch})
        assert r.status_code == 201
        assert r.json() == {"ok": True, "accepted": 3, "bufferedRecords": 3}
        assert [o.value for o in engine.store.snapshot()] == [10, 20, 30]

    async def test_empty_batch_rejected(self, client):
        r = await client.post("/api/v1/observations/batch", json={"observations": []})
        assert r.status_code == 422

    async def test_one_bad_item_rejects_the_batch(self, client, engine):
        batch = [observation_json(), observation_json() | {"location": [500, 0]}]
        r = await client.post("/api/v1/observations/batch", json={"observations": batch})
        assert r.status_code == 422
        assert len(engine.store) == 0


class TestStats:
    async def test_stats_after_ingest(self, client):
        await client.post("/api/v1/observations", json=observation_json())
        await client.post("/api/v1/observations", json=observation_json(dlat=0.5))
        data = (await client.get("/api/v1/observations/stats")).json()
        assert data["totalIngested"] == 2
        assert data["bufferedRecords"] == 2
        assert data["points"] == 2
        assert data["clusters"] == 2
        assert data["anomalies"] == 0
        assert data["activeSubscriptions"] == 0
        assert data["predictionCycles"] == 0
