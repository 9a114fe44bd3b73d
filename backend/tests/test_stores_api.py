"""
API Integration Tests — Store CRUD with seeded data.
"""

import uuid

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
class TestStoresIntegration:
    async def test_create_and_list_store(self, client: AsyncClient, org):
        """Create a store, then list should include it."""
        create_resp = await client.post(
            "/api/v1/stores/",
            json={"name": "Loja Norte", "code": "L010", "city": "Londrina", "state": "PR"},
        )
        assert create_resp.status_code == 201
        body = create_resp.json()
        assert body["status"] == "active"
        assert body["risk_score"] is None

        list_resp = await client.get("/api/v1/stores/")
        assert list_resp.status_code == 200
        assert body["store_id"] in [s["store_id"] for s in list_resp.json()]

    async def test_list_is_ordered_by_name(self, client: AsyncClient, seeded_db):
        resp = await client.get("/api/v1/stores/")
        names = [s["name"] for s in resp.json()]
        assert names == sorted(names)

    async def test_get_store_by_id(self, client: AsyncClient, seeded_db):
        store_id = str(seeded_db["store"].store_id)
        resp = await client.get(f"/api/v1/stores/{store_id}")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Loja Centro"
        assert resp.json()["city"] == "Curitiba"

    async def test_store_includes_current_risk(self, client: AsyncClient, seeded_db, test_db):
        from db.models import RiskScore

        store = seeded_db["store"]
        test_db.add(
            RiskScore(
                org_id=seeded_db["org_id"],
                entity_type="store",
                entity_id=str(store.store_id),
                entity_name=store.name,
                score=64,
                level="high",
                trend="stable",
            )
        )
        await test_db.commit()

        resp = await client.get(f"/api/v1/stores/{store.store_id}")
        assert resp.json()["risk_score"] == 64
        assert resp.json()["risk_level"] == "high"

    async def test_update_store(self, client: AsyncClient, seeded_db):
        store_id = str(seeded_db["store"].store_id)
        resp = await client.patch(f"/api/v1/stores/{store_id}", json={"name": "Loja Centro Renovada"})
        assert resp.status_code == 200
        assert resp.json()["name"] == "Loja Centro Renovada"

    async def test_delete_store(self, client: AsyncClient, org):
        create_resp = await client.post("/api/v1/stores/", json={"name": "Temporaria", "state": "SP"})
        store_id = create_resp.json()["store_id"]

        del_resp = await client.delete(f"/api/v1/stores/{store_id}")
        assert del_resp.status_code == 204

        get_resp = await client.get(f"/api/v1/stores/{store_id}")
        assert get_resp.status_code == 404

    async def test_create_store_missing_name(self, client: AsyncClient):
        resp = await client.post("/api/v1/stores/", json={"city": "Curitiba", "state": "PR"})
        assert resp.status_code == 422

    async def test_state_must_be_two_letters(self, client: AsyncClient):
        resp = await client.post("/api/v1/stores/", json={"name": "Loja", "state": "Parana"})
        assert resp.status_code == 422

    async def test_unknown_store_404(self, client: AsyncClient, org):
        resp = await client.get(f"/api/v1/stores/{uuid.uuid4()}")
        assert resp.status_code == 404
