"""
Tests for the recommendation rules, candidate filtering and status flow.
"""

from datetime import datetime, timedelta

import pandas as pd
import pytest

from db.models import Recommendation
from ml.recommendations import (
    apply_status_update,
    dedupe_key,
    expire_stale,
    filter_candidates,
    investigation_priority,
    loss_recommendations,
    markdown_recommendations,
    pending_summary,
    risk_recommendations,
    supplier_recommendations,
)


def _store_losses() -> pd.DataFrame:
    return pd.DataFrame(
        [
            {"store_id": "s1", "store_name": "Loja A", "loss_type": "expiry", "total_cost": 6000.0, "record_count": 10},
            {"store_id": "s2", "store_name": "Loja B", "loss_type": "theft", "total_cost": 800.0, "record_count": 3},
        ]
    )


class TestLossRules:
    def test_investigation_priority(self):
        assert investigation_priority(12_000) == "critical"
        assert investigation_priority(6_000) == "high"
        assert investigation_priority(1_500) == "medium"

    def test_investigation_and_process_change(self):
        candidates = loss_recommendations(_store_losses())
        types = [c["recommendation_type"] for c in candidates]
        assert types == ["investigation", "process_change"]

        investigation = candidates[0]
        assert investigation["entity_id"] == "s1"
        assert investigation["priority"] == "high"
        assert investigation["estimated_savings"] == 1800.0

        process = candidates[1]
        assert process["entity_id"] == "expiry"
        assert process["estimated_savings"] == 1500.0
        assert "FEFO" in process["suggested_action"]["steps"][0]

    def test_small_losses_produce_nothing(self):
        frame = _store_losses().assign(total_cost=[500.0, 200.0])
        assert loss_recommendations(frame) == []


class TestMarkdownRule:
    def test_threshold_and_priority(self):
        candidates = markdown_recommendations(
            [
                {"store_id": "s1", "store_name": "Loja A", "items": 3, "d0_count": 1, "value_at_risk": 300.0},
                {"store_id": "s2", "store_name": "Loja B", "items": 1, "d0_count": 0, "value_at_risk": 150.0},
            ]
        )
        assert len(candidates) == 1
        assert candidates[0]["priority"] == "high"
        assert candidates[0]["estimated_savings"] == 150.0


class TestSupplierRule:
    def test_concentrated_supplier(self):
        frame = pd.DataFrame([{"supplier": "Sul", "total_cost": 3000.0}, {"supplier": "Norte", "total_cost": 500.0}])
        candidates = supplier_recommendations(frame, total_cost=3500.0)
        assert [c["entity_id"] for c in candidates] == ["Sul"]
        assert candidates[0]["priority"] == "high"


class TestRiskRule:
    def test_critical_store_gets_audit_and_training(self):
        candidates = risk_recommendations(
            [{"entity_id": "s1", "entity_name": "Loja A", "score": 82, "level": "critical", "efficiency_score": 70}]
        )
        assert {c["recommendation_type"] for c in candidates} == {"audit", "training"}

    def test_healthy_store(self):
        assert risk_recommendations(
            [{"entity_id": "s1", "entity_name": "Loja A", "score": 20, "level": "low", "efficiency_score": 10}]
        ) == []


class TestFilterCandidates:
    def test_confidence_dedup_and_order(self):
        candidates = [
            {"recommendation_type": "training", "priority": "medium", "entity_id": "s1", "confidence_score": 0.72},
            {"recommendation_type": "markdown", "priority": "high", "entity_id": "s1", "confidence_score": 0.8},
            {"recommendation_type": "audit", "priority": "critical", "entity_id": "s1", "confidence_score": 0.8},
            {"recommendation_type": "audit", "priority": "critical", "entity_id": "s2", "confidence_score": 0.8},
            {"recommendation_type": "markdown", "priority": "high", "entity_id": "s1", "confidence_score": 0.9},
        ]
        kept = filter_candidates(candidates, min_confidence=0.75, active_keys={("audit", "s2", None)})
        assert [(c["recommendation_type"], c["entity_id"]) for c in kept] == [("audit", "s1"), ("markdown", "s1")]

    def test_investigations_kept_per_loss_type(self):
        losses = pd.DataFrame(
            [
                {"store_id": "s1", "store_name": "Loja A", "loss_type": "expiry", "total_cost": 3000.0, "record_count": 8},
                {"store_id": "s1", "store_name": "Loja A", "loss_type": "damage", "total_cost": 2000.0, "record_count": 5},
            ]
        )
        kept = filter_candidates(loss_recommendations(losses), min_confidence=0.7, active_keys=set())
        investigations = [c for c in kept if c["recommendation_type"] == "investigation"]
        assert sorted(c["suggested_action"]["loss_type"] for c in investigations) == ["damage", "expiry"]

    def test_active_investigation_blocks_only_its_loss_type(self):
        losses = pd.DataFrame(
            [
                {"store_id": "s1", "store_name": "Loja A", "loss_type": "expiry", "total_cost": 3000.0, "record_count": 8},
                {"store_id": "s1", "store_name": "Loja A", "loss_type": "damage", "total_cost": 2000.0, "record_count": 5},
            ]
        )
        active = {dedupe_key("investigation", "s1", {"loss_type": "expiry"})}
        kept = filter_candidates(loss_recommendations(losses), min_confidence=0.7, active_keys=active)
        investigations = [c for c in kept if c["recommendation_type"] == "investigation"]
        assert [c["suggested_action"]["loss_type"] for c in investigations] == ["damage"]

    def test_key_ignores_loss_type_outside_investigations(self):
        assert dedupe_key("audit", "s1", {"loss_type": "theft"}) == ("audit", "s1", None)


class TestStatusFlow:
    def test_viewed_and_accepted(self):
        rec = Recommendation(status="pending")
        apply_status_update(rec, "viewed", "user-1")
        assert rec.status == "viewed"
        assert rec.viewed_by == "user-1"

        apply_status_update(rec, "completed", "user-2", notes="done", actual_savings=420.0)
        assert rec.action_taken_by == "user-2"
        assert rec.action_notes == "done"
        assert rec.actual_savings == 420.0

    def test_invalid_status(self):
        with pytest.raises(ValueError):
            apply_status_update(Recommendation(status="pending"), "archived", "user-1")


def test_pending_summary():
    summary = pending_summary(
        [
            {"recommendation_type": "markdown", "priority": "high", "estimated_savings": 100.0, "confidence_score": 0.8},
            {"recommendation_type": "markdown", "priority": "high", "estimated_savings": 50.5, "confidence_score": 0.9},
            {"recommendation_type": "audit", "priority": "critical", "estimated_savings": None, "confidence_score": 0.8},
        ]
    )
    assert [g["recommendation_type"] for g in summary] == ["audit", "markdown"]
    markdown = summary[1]
    assert markdown["count"] == 2
    assert markdown["total_estimated_savings"] == 150.5
    assert markdown["avg_confidence"] == 0.85


@pytest.mark.asyncio
class TestExpireStale:
    async def test_only_active_past_deadline_expire(self, test_db, org):
        now = datetime.utcnow()

        def rec(status, expires_at):
            return Recommendation(
                org_id=org.org_id,
                recommendation_type="audit",
                priority="high",
                title="Audit Loja A",
                status=status,
                expires_at=expires_at,
            )

        stale_pending = rec("pending", now - timedelta(days=1))
        stale_viewed = rec("viewed", now - timedelta(hours=1))
        accepted = rec("accepted", now - timedelta(days=1))
        fresh = rec("pending", now + timedelta(days=3))
        open_ended = rec("pending", None)
        test_db.add_all([stale_pending, stale_viewed, accepted, fresh, open_ended])
        await test_db.commit()

        assert await expire_stale(test_db, org.org_id) == 2

        for row in (stale_pending, stale_viewed, accepted, fresh, open_ended):
            await test_db.refresh(row)
        assert stale_pending.status == "expired"
        assert stale_viewed.status == "expired"
        assert accepted.status == "accepted"
        assert fresh.status == "pending"
        assert open_ended.status == "pending"
