"""
Tests for anomaly detection: z-score flags, Isolation Forest outliers and
the open-anomaly summary.
"""

from datetime import datetime

import pandas as pd
import pytest

from ml.anomaly import (
    classify_severity,
    isolation_forest_outliers,
    metric_values,
    summarize_open_anomalies,
    zscore_anomalies,
)


class TestSeverity:
    def test_bands(self):
        assert classify_severity(4.1, 3.0) == "critical"
        assert classify_severity(3.6, 3.0) == "high"
        assert classify_severity(3.2, 3.0) == "medium"


class TestZScore:
    def test_spike(self):
        values = {f"s{i}": 100.0 for i in range(10)}
        values["hot"] = 1000.0
        flagged = zscore_anomalies(values, threshold=2.0)

        assert [a["entity_key"] for a in flagged] == ["hot"]
        spike = flagged[0]
        assert spike["anomaly_type"] == "spike"
        assert spike["severity"] == "critical"
        # Population mean and std over all eleven stores: 2000 / 11 and 258.73
        assert spike["expected_value"] == 181.82
        assert spike["expected_range_lower"] == 0.0
        assert spike["expected_range_upper"] == pytest.approx(699.28, abs=0.01)
        assert spike["deviation_score"] == pytest.approx(3.16, abs=0.01)

    def test_drop(self):
        values = {f"s{i}": 100.0 for i in range(10)}
        values["cold"] = 1.0
        flagged = zscore_anomalies(values, threshold=2.0)
        assert flagged[0]["entity_key"] == "cold"
        assert flagged[0]["anomaly_type"] == "drop"

    def test_needs_three_positive_values(self):
        assert zscore_anomalies({"a": 1.0, "b": 500.0, "c": 0.0}) == []

    def test_constant_population(self):
        assert zscore_anomalies({k: 5.0 for k in "abcdef"}) == []

    def test_nothing_above_threshold(self):
        assert zscore_anomalies({"a": 10.0, "b": 11.0, "c": 12.0, "d": 9.0}) == []


class TestIsolationForest:
    def test_flags_extreme_entity(self):
        rows = [{"entity_key": f"s{i}", "total_cost": 100.0 + i, "total_quantity": 10.0, "record_count": 5} for i in range(19)]
        rows.append({"entity_key": "outlier", "total_cost": 10_000.0, "total_quantity": 900.0, "record_count": 80})
        flagged = isolation_forest_outliers(pd.DataFrame(rows), contamination=0.05)

        assert flagged
        assert flagged[0]["entity_key"] == "outlier"
        assert flagged[0]["anomaly_type"] == "outlier"
        assert set(flagged[0]["features"]) == {"total_cost", "total_quantity", "record_count"}

    def test_too_few_entities(self):
        frame = pd.DataFrame([{"entity_key": "a", "total_cost": 1.0, "total_quantity": 1.0, "record_count": 1}])
        assert isolation_forest_outliers(frame) == []


class TestMetricValues:
    def test_maps_metric_to_column(self):
        frame = pd.DataFrame(
            [{"entity_key": "s1", "total_cost": 10.0, "total_quantity": 2.0, "record_count": 1.0, "expiry_count": 4.0}]
        )
        assert metric_values(frame, "loss_value") == {"s1": 10.0}
        assert metric_values(frame, "expiry_count") == {"s1": 4.0}

    def test_unknown_metric(self):
        with pytest.raises(ValueError):
            metric_values(pd.DataFrame(), "revenue")


class TestSummary:
    def test_groups_and_averages(self):
        rows = [
            {
                "anomaly_type": "spike",
                "severity": "high",
                "entity_type": "store",
                "deviation_score": 3.0,
                "detected_at": datetime(2026, 6, 1, 8),
            },
            {
                "anomaly_type": "spike",
                "severity": "high",
                "entity_type": "store",
                "deviation_score": -4.0,
                "detected_at": datetime(2026, 6, 2, 8),
            },
            {
                "anomaly_type": "drop",
                "severity": "medium",
                "entity_type": "product",
                "deviation_score": -3.2,
                "detected_at": datetime(2026, 6, 1, 9),
            },
        ]
        summary = summarize_open_anomalies(rows)
        assert summary[0]["anomaly_type"] == "spike"
        assert summary[0]["count"] == 2
        assert summary[0]["avg_deviation"] == 3.5
        assert summary[0]["latest_detection"] == datetime(2026, 6, 2, 8)
