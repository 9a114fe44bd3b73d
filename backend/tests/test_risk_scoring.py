"""
Tests for Risk Scoring — component math, levels, trends and alert rules.

Covers:
  - Component formulas and clamping
  - Weighted score with custom weights
  - Level cut-offs and trend deltas
  - Threshold / weight validation
  - Metric aggregation from report + loss frames
  - Alert transitions (critical, increase, trend flip, new high)
"""

from datetime import date, datetime, timedelta

import pandas as pd
import pytest

from ml.risk_scoring import (
    LOSS_COLUMNS,
    REPORT_COLUMNS,
    EntityScore,
    ThresholdConfig,
    build_alerts,
    build_entity_metrics,
    category_score,
    compute_weighted_score,
    efficiency_component,
    expiry_component,
    financial_component,
    level_distribution,
    level_from_score,
    product_recurrence_component,
    rupture_component,
    score_change,
    score_entity,
    summarize_scores,
    trend_from_change,
    trend_points,
    validate_thresholds,
    validate_weights,
)

TODAY = date(2026, 6, 15)


# ── Components ─────────────────────────────────────────────────────────


class TestComponents:
    def test_expiry_component(self):
        # 2 overdue × 15 + 3 near × 5 = 45
        assert expiry_component(2, 3) == 45

    def test_expiry_component_clamped(self):
        assert expiry_component(10, 10) == 100

    def test_rupture_component(self):
        assert rupture_component(5) == 20

    def test_product_recurrence_rounds_half_up(self):
        # 2.25 × 10 = 22.5 → 23
        assert product_recurrence_component(2.25) == 23

    def test_financial_component(self):
        assert financial_component(4550) == 46
        assert financial_component(50_000) == 100

    def test_efficiency_without_resolutions_is_neutral(self):
        assert efficiency_component(0, 0) == 50

    def test_efficiency_inverts_rate(self):
        # 3 of 4 in time → 75% → 25
        assert efficiency_component(3, 4) == 25


class TestWeightedScore:
    def test_default_weights(self):
        components = {"expiry": 100, "rupture": 0, "recurrence": 0, "financial": 0, "efficiency": 0}
        assert compute_weighted_score(components) == 25

    def test_custom_weights(self):
        thresholds = ThresholdConfig(
            weights={"expiry": 50, "rupture": 50, "recurrence": 0, "financial": 0, "efficiency": 0}
        )
        components = {"expiry": 80, "rupture": 40, "recurrence": 100, "financial": 100, "efficiency": 100}
        assert compute_weighted_score(components, thresholds) == 60

    def test_category_blend(self):
        # volume min(100, 4×5)=20, value 30, inefficiency 50
        # (20×40 + 30×40 + 50×20) / 100 = 30
        assert category_score(4, 3000, None) == 30


# ── Levels & Trends ────────────────────────────────────────────────────


class TestLevels:
    @pytest.mark.parametrize(
        "score,level",
        [(0, "low"), (25, "low"), (26, "medium"), (50, "medium"), (51, "high"), (75, "high"), (76, "critical")],
    )
    def test_default_cutoffs(self, score, level):
        assert level_from_score(score) == level

    def test_custom_cutoffs(self):
        thresholds = ThresholdConfig(low_max=10, medium_max=20, high_max=30)
        assert level_from_score(31, thresholds) == "critical"


class TestTrend:
    def test_first_calculation_is_stable(self):
        assert trend_from_change(80, None) == "stable"

    def test_boundaries(self):
        assert trend_from_change(55, 50) == "worsening"
        assert trend_from_change(54, 50) == "stable"
        assert trend_from_change(45, 50) == "improving"

    def test_score_change_label(self):
        assert score_change(62, 50)["label"] == "+12"
        assert score_change(47, 50)["label"] == "-3"
        assert score_change(50, None) == {"change": 0, "trend": "stable", "label": "0"}


class TestValidation:
    def test_weights_must_sum_to_100(self):
        with pytest.raises(ValueError, match="sum to 100"):
            validate_weights({"expiry": 30, "rupture": 20, "recurrence": 20, "financial": 20, "efficiency": 15})

    def test_weights_missing_component(self):
        with pytest.raises(ValueError, match="Missing weights"):
            validate_weights({"expiry": 100})

    def test_thresholds_must_increase(self):
        with pytest.raises(ValueError):
            validate_thresholds(50, 40, 75)
        validate_thresholds(20, 40, 60)


# ── Metric Aggregation ─────────────────────────────────────────────────


def _frames():
    created = datetime.combine(TODAY - timedelta(days=2), datetime.min.time())
    reports = pd.DataFrame(
        [
            ("s1", "p1", "Dairy", "reported", TODAY - timedelta(days=1), 2, 10.0, created, None),
            ("s1", "p1", "Dairy", "reported", TODAY + timedelta(days=2), 1, 5.0, created, None),
            ("s1", "p2", "Bakery", "resolved", TODAY - timedelta(days=1), 1, 3.0, created, created),
        ],
        columns=REPORT_COLUMNS,
    )
    losses = pd.DataFrame(
        [
            ("s1", "p1", "Dairy", "theft", 100.0, TODAY - timedelta(days=5)),
            ("s1", "p1", "Dairy", "expiry", 50.0, TODAY - timedelta(days=5)),
            ("s2", None, "Dairy", "damage", 30.0, TODAY - timedelta(days=60)),
        ],
        columns=LOSS_COLUMNS,
    )
    return reports, losses


class TestEntityMetrics:
    def test_store_metrics(self):
        reports, losses = _frames()
        metrics = build_entity_metrics(reports, losses, "store_id", TODAY)

        s1 = metrics["s1"]
        assert s1["overdue_open"] == 1
        assert s1["near_expiry_open"] == 1
        assert s1["open_total"] == 2
        assert s1["value_at_risk"] == pytest.approx(25.0)
        assert s1["reports_30d"] == 3
        assert s1["resolved_total"] == 1
        assert s1["resolved_before_expiry"] == 1
        assert s1["rupture_losses_30d"] == 1
        assert s1["loss_cost_30d"] == pytest.approx(150.0)

        # Loss older than 30 days counts only toward occurrences
        assert metrics["s2"]["rupture_losses_30d"] == 0
        assert metrics["s2"]["occurrences_90d"] == 1

    def test_rows_without_key_are_dropped(self):
        reports, losses = _frames()
        metrics = build_entity_metrics(reports, losses, "product_id", TODAY)
        assert set(metrics) == {"p1", "p2"}

    def test_empty_frames(self):
        assert build_entity_metrics(pd.DataFrame(columns=REPORT_COLUMNS), pd.DataFrame(columns=LOSS_COLUMNS), "store_id", TODAY) == {}

    def test_score_entity_store(self):
        reports, losses = _frames()
        metrics = build_entity_metrics(reports, losses, "store_id", TODAY)["s1"]
        entity = score_entity("store", "s1", "Loja 1", metrics, ThresholdConfig())

        assert entity.components["expiry"] == 20
        assert entity.components["rupture"] == 4
        assert entity.components["recurrence"] == 15
        assert entity.components["financial"] == 2
        assert entity.components["efficiency"] == 0
        # (20×25 + 4×20 + 15×20 + 2×20 + 0×15) / 100 = 9.2 → 9
        assert entity.score == 9
        assert entity.level == "low"

    def test_score_entity_without_metrics(self):
        entity = score_entity("store", "s9", None, {}, ThresholdConfig())
        # Only the neutral efficiency component contributes: 50 × 15 / 100
        assert entity.score == 8
        assert entity.level == "low"

    def test_category_value_factor_ignores_past_losses(self):
        entity = score_entity("category", "Padaria", "Padaria", {"loss_cost_30d": 10_000.0}, ThresholdConfig())
        # No reports, nothing at risk, no resolutions: only inefficiency 50 × 20 / 100
        assert entity.score == 10
        assert entity.level == "low"

    def test_category_value_factor_uses_value_at_risk(self):
        metrics = {"value_at_risk": 3000.0, "reports_30d": 4, "loss_cost_30d": 10_000.0}
        entity = score_entity("category", "Padaria", "Padaria", metrics, ThresholdConfig())
        assert entity.score == category_score(4, 3000.0, None) == 30


# ── Alerts ─────────────────────────────────────────────────────────────


def _entity(score: int, level: str) -> EntityScore:
    return EntityScore(
        entity_type="store",
        entity_id="s1",
        entity_name="Loja 1",
        score=score,
        level=level,
        components={},
        metrics={},
    )


class TestAlerts:
    def test_first_calculation_only_alerts_on_critical(self):
        assert build_alerts(_entity(60, "high"), None, None, None, "stable", ThresholdConfig()) == []

        alerts = build_alerts(_entity(90, "critical"), None, None, None, "stable", ThresholdConfig())
        assert [a["alert_type"] for a in alerts] == ["critical_level"]
        assert alerts[0]["severity"] == "critical"

    def test_no_repeat_critical(self):
        alerts = build_alerts(_entity(92, "critical"), 90, "critical", "stable", "stable", ThresholdConfig())
        assert alerts == []

    def test_score_increase_severity(self):
        alerts = build_alerts(_entity(40, "medium"), 20, "low", "stable", "worsening", ThresholdConfig())
        increase = next(a for a in alerts if a["alert_type"] == "score_increased")
        assert increase["severity"] == "medium"
        assert increase["score_change"] == 20

        alerts = build_alerts(_entity(45, "medium"), 10, "low", "stable", "worsening", ThresholdConfig())
        increase = next(a for a in alerts if a["alert_type"] == "score_increased")
        assert increase["severity"] == "high"

    def test_trend_flip_to_worsening(self):
        alerts = build_alerts(_entity(30, "medium"), 24, "low", "stable", "worsening", ThresholdConfig())
        assert "trend_worsening" in {a["alert_type"] for a in alerts}

        alerts = build_alerts(_entity(36, "medium"), 30, "medium", "worsening", "worsening", ThresholdConfig())
        assert "trend_worsening" not in {a["alert_type"] for a in alerts}

    def test_new_high_risk(self):
        alerts = build_alerts(_entity(60, "high"), 58, "medium", "stable", "stable", ThresholdConfig())
        assert [a["alert_type"] for a in alerts] == ["new_high_risk"]

    def test_alert_rules_can_be_disabled(self):
        thresholds = ThresholdConfig(alert_on_critical=False, alert_on_score_increase=0, alert_on_trend_change=False)
        alerts = build_alerts(_entity(95, "critical"), 10, "low", "stable", "worsening", thresholds)
        assert alerts == []


# ── Dashboard Aggregations ─────────────────────────────────────────────


class TestAggregations:
    def test_summarize_scores(self):
        rows = [
            {"score": 80, "level": "critical", "trend": "worsening"},
            {"score": 20, "level": "low", "trend": "improving"},
            {"score": 50, "level": "medium", "trend": "stable"},
        ]
        summary = summarize_scores(rows)
        assert summary["total_entities"] == 3
        assert summary["critical_count"] == 1
        assert summary["avg_score"] == 50.0
        assert summary["worsening_count"] == 1
        assert summary["improving_count"] == 1

    def test_level_distribution(self):
        dist = {d["level"]: d for d in level_distribution(["low", "low", "high"])}
        assert dist["low"]["count"] == 2
        assert dist["low"]["percentage"] == 67
        assert dist["critical"]["percentage"] == 0

    def test_trend_points_grouped_by_day(self):
        day = date(2026, 6, 1)
        points = trend_points(
            [
                {"recorded_on": day, "score": 40, "level": "medium"},
                {"recorded_on": day, "score": 80, "level": "critical"},
                {"recorded_on": day + timedelta(days=1), "score": 10, "level": "low"},
            ]
        )
        assert len(points) == 2
        assert points[0]["avg_score"] == 60.0
        assert points[0]["critical_count"] == 1
        assert points[1]["date"] == "2026-06-02"
