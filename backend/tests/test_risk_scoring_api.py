"""
API Integration Tests — Risk scores, thresholds and risk alerts.

Publishing to Redis is patched out; the refresh endpoint must still
persist scores and alerts.
"""

import uuid
from unittest.mock import AsyncMock, patch

import pytest
from httpx import AsyncClient

PUBLISH = "api.v1.routers.risk_scoring.publish_risk_alerts"

TIGHT_THRESHOLDS = {"low_max": 5, "medium_max": 10, "high_max": 15}


async def _refresh(client: AsyncClient) -> dict:
    with patch(PUBLISH, new=AsyncMock(return_value=0)) as publish:
        resp = await client.post("/api/v1/risk-scoring/refresh")
    assert resp.status_code == 200
    return {"body": resp.json(), "publish": publish}


@pytest.mark.asyncio
class TestRefreshAndScores:
    async def test_refresh_scores_every_entity(self, client: AsyncClient, seeded_db):
        result = await _refresh(client)
        body = result["body"]
        assert body["success"] is True
        assert body["scores_updated"] == 5
        assert body["alerts_created"] == 0
        result["publish"].assert_awaited_once()

    async def test_list_highest_first(self, client: AsyncClient, seeded_db):
        await _refresh(client)
        resp = await client.get("/api/v1/risk-scoring/")
        data = resp.json()
        assert data["total"] == 5
        assert data["page"] == 1
        scores = [item["score"] for item in data["items"]]
        assert scores == sorted(scores, reverse=True)

    async def test_list_filters_by_entity_type(self, client: AsyncClient, seeded_db):
        await _refresh(client)
        data = (await client.get("/api/v1/risk-scoring/", params={"entity_type": "store"})).json()
        assert data["total"] == 2
        assert {item["entity_name"] for item in data["items"]} == {"Loja Centro", "Loja Bairro"}

    async def test_entity_score(self, client: AsyncClient, seeded_db):
        await _refresh(client)
        store_id = str(seeded_db["store"].store_id)
        resp = await client.get(f"/api/v1/risk-scoring/entities/store/{store_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["score"] == 19
        assert body["level"] == "low"
        assert body["trend"] == "stable"
        assert body["previous_score"] is None

    async def test_second_refresh_bumps_version_and_keeps_one_history_row(self, client: AsyncClient, seeded_db):
        await _refresh(client)
        await _refresh(client)
        store_id = str(seeded_db["store"].store_id)

        score = (await client.get(f"/api/v1/risk-scoring/entities/store/{store_id}")).json()
        assert score["version"] == 2
        assert score["previous_score"] == 19

        history = (await client.get(f"/api/v1/risk-scoring/entities/store/{store_id}/history")).json()
        assert len(history) == 1
        assert history[0]["score"] == 19

    async def test_unknown_entity(self, client: AsyncClient, org):
        resp = await client.get("/api/v1/risk-scoring/entities/store/missing")
        assert resp.status_code == 404

    async def test_dashboard(self, client: AsyncClient, seeded_db):
        await _refresh(client)
        data = (await client.get("/api/v1/risk-scoring/dashboard")).json()
        assert data["summary"]["total_entities"] == 3
        assert data["top_stores"][0]["entity_name"] == "Loja Centro"
        assert data["top_stores"][0]["rank"] == 1
        assert len(data["top_products"]) == 1
        assert len(data["top_categories"]) == 2
        assert data["recent_alerts"] == []

    async def test_distribution(self, client: AsyncClient, seeded_db):
        await _refresh(client)
        data = (await client.get("/api/v1/risk-scoring/distribution", params={"entity_type": "store"})).json()
        assert data["total"] == 2
        by_level = {row["level"]: row for row in data["distribution"]}
        assert by_level["low"]["count"] == 2
        assert by_level["low"]["percentage"] == 100

    async def test_distribution_invalid_type(self, client: AsyncClient, org):
        resp = await client.get("/api/v1/risk-scoring/distribution", params={"entity_type": "warehouse"})
        assert resp.status_code == 400


@pytest.mark.asyncio
class TestThresholds:
    async def test_defaults(self, client: AsyncClient, org):
        data = (await client.get("/api/v1/risk-scoring/thresholds")).json()
        weights = [data[k] for k in data if k.startswith("weight_")]
        assert sum(weights) == 100
        assert data["low_max"] < data["medium_max"] < data["high_max"]

    async def test_partial_update(self, client: AsyncClient, org):
        resp = await client.put("/api/v1/risk-scoring/thresholds", json=TIGHT_THRESHOLDS)
        assert resp.status_code == 200
        assert resp.json()["high_max"] == 15

        data = (await client.get("/api/v1/risk-scoring/thresholds")).json()
        assert data["low_max"] == 5

    async def test_unordered_levels_rejected(self, client: AsyncClient, org):
        resp = await client.put("/api/v1/risk-scoring/thresholds", json={"low_max": 80, "medium_max": 50})
        assert resp.status_code == 400

    async def test_weights_must_sum_to_100(self, client: AsyncClient, org):
        resp = await client.put("/api/v1/risk-scoring/thresholds", json={"weight_expiry": 90})
        assert resp.status_code == 400

    async def test_operator_cannot_update(self, client: AsyncClient, org, mock_user):
        mock_user["role"] = "operador"
        resp = await client.put("/api/v1/risk-scoring/thresholds", json=TIGHT_THRESHOLDS)
        assert resp.status_code == 403

    async def test_operator_cannot_refresh(self, client: AsyncClient, seeded_db, mock_user):
        mock_user["role"] = "operador"
        resp = await client.post("/api/v1/risk-scoring/refresh")
        assert resp.status_code == 403


@pytest.mark.asyncio
class TestRiskAlerts:
    async def _critical_alerts(self, client: AsyncClient) -> list[dict]:
        await client.put("/api/v1/risk-scoring/thresholds", json=TIGHT_THRESHOLDS)
        result = await _refresh(client)
        assert result["body"]["alerts_created"] == 2
        published = result["publish"].await_args.args[0]
        assert len(published) == 2
        return (await client.get("/api/v1/risk-scoring/alerts")).json()

    async def test_critical_alerts_raised(self, client: AsyncClient, seeded_db):
        alerts = await self._critical_alerts(client)
        assert len(alerts) == 2
        assert {a["alert_type"] for a in alerts} == {"critical_level"}
        assert {a["entity_type"] for a in alerts} == {"store", "product"}

    async def test_alert_filters(self, client: AsyncClient, seeded_db):
        await self._critical_alerts(client)
        stores = (await client.get("/api/v1/risk-scoring/alerts", params={"entity_type": "store"})).json()
        assert len(stores) == 1
        assert stores[0]["entity_name"] == "Loja Centro"
        assert stores[0]["store_id"] == str(seeded_db["store"].store_id)

    async def test_no_duplicate_critical_alert_on_rerun(self, client: AsyncClient, seeded_db):
        await self._critical_alerts(client)
        again = await _refresh(client)
        assert again["body"]["alerts_created"] == 0

    async def test_acknowledge_and_resolve(self, client: AsyncClient, seeded_db):
        alerts = await self._critical_alerts(client)
        alert_id = alerts[0]["alert_id"]

        acked = await client.post(f"/api/v1/risk-scoring/alerts/{alert_id}/acknowledge")
        assert acked.status_code == 200
        assert acked.json()["acknowledged_by"] == "user-test-admin"
        assert acked.json()["is_active"] is True

        resolved = await client.post(f"/api/v1/risk-scoring/alerts/{alert_id}/resolve", json={"notes": "Audited"})
        assert resolved.json()["is_active"] is False
        assert resolved.json()["resolved_by"] == "user-test-admin"

        remaining = (await client.get("/api/v1/risk-scoring/alerts")).json()
        assert len(remaining) == 1

    async def test_unknown_alert(self, client: AsyncClient, org):
        resp = await client.post(f"/api/v1/risk-scoring/alerts/{uuid.uuid4()}/acknowledge")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Risk alert not found"


@pytest.mark.asyncio
class TestPlanGate:
    async def test_starter_plan_blocked(self, client: AsyncClient, test_db, mock_user):
        from db.models import Organization

        starter = Organization(name="Mercado Pequeno", email="dono@pequeno.com.br", plan="starter", status="active")
        test_db.add(starter)
        await test_db.commit()
        mock_user["org_id"] = str(starter.org_id)

        resp = await client.get("/api/v1/risk-scoring/")
        assert resp.status_code == 403
        assert "has_risk_scoring" in resp.json()["detail"]
