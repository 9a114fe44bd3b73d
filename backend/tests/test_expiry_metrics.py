"""
Tests for Expiry Analytics — windows, date validation, rates and insights.
"""

from datetime import date, timedelta

import pytest

from retail.expiry import (
    build_funnel,
    classify_expiry_window,
    days_to_expiry,
    efficiency_rate,
    generate_insights,
    is_valid_expiry_date,
    overdue_rate,
    pareto,
    percent_change,
    percentile,
)

TODAY = date(2026, 3, 10)


class TestWindows:
    @pytest.mark.parametrize(
        "days,window",
        [(-3, "overdue"), (-1, "overdue"), (0, "D0"), (1, "D1"), (2, "D3"), (3, "D3"), (7, "D7"), (8, "future")],
    )
    def test_classification(self, days, window):
        assert classify_expiry_window(days) == window

    def test_days_to_expiry(self):
        assert days_to_expiry(TODAY + timedelta(days=4), TODAY) == 4
        assert days_to_expiry(TODAY - timedelta(days=2), TODAY) == -2


class TestDateValidation:
    def test_within_range(self):
        assert is_valid_expiry_date(TODAY, TODAY)
        assert is_valid_expiry_date(TODAY + timedelta(days=365 * 5), TODAY)
        assert is_valid_expiry_date(TODAY - timedelta(days=365 * 2), TODAY)

    def test_typos_rejected(self):
        assert not is_valid_expiry_date(date(2062, 3, 10), TODAY)
        assert not is_valid_expiry_date(date(2020, 3, 10), TODAY)


class TestRates:
    def test_efficiency_rate(self):
        assert efficiency_rate(7, 8) == 87.5
        assert efficiency_rate(0, 0) == 0.0

    def test_overdue_rate(self):
        assert overdue_rate(1, 3) == 33.3

    def test_percent_change(self):
        assert percent_change(15, 10) == 50.0
        assert percent_change(5, 10) == -50.0
        assert percent_change(3, 0) == 100.0
        assert percent_change(0, 0) == 0.0

    def test_funnel(self):
        funnel = build_funnel(reported=10, watched=5, confirmed=2, resolved=4)
        assert funnel["watch_rate"] == 50.0
        assert funnel["confirm_rate"] == 20.0
        assert funnel["resolve_rate"] == 40.0

    def test_percentile(self):
        assert percentile([1, 2, 3, 4], 50) == 2.5
        assert percentile([], 90) is None


class TestPareto:
    def test_cumulative_share(self):
        rows = pareto([{"k": "a", "v": 20}, {"k": "b", "v": 60}, {"k": "c", "v": 20}], "v")
        assert [r["k"] for r in rows] == ["b", "a", "c"]
        assert rows[0]["percentage"] == 60.0
        assert rows[1]["cumulative_percentage"] == 80.0
        assert rows[-1]["cumulative_percentage"] == 100.0

    def test_zero_total(self):
        assert pareto([{"v": 0}], "v") == []


class TestInsights:
    def test_critical_first(self):
        insights = generate_insights(
            risk={"overdue": 5, "overdue_rate": 50.0, "d0": 8, "total_open": 10, "value_at_risk": 6000.0},
            efficiency={"resolved_total": 12, "efficiency_rate": 50.0},
            sla={"p50_hours": 72.0},
            quality={"no_photo_rate": 30.0},
        )
        types = [i["type"] for i in insights]
        assert types[:2] == ["critical", "critical"]
        assert "warning" in types
        assert types[-1] == "info"

    def test_healthy_backlog(self):
        insights = generate_insights(
            risk={"overdue": 0, "overdue_rate": 0.0, "d0": 0, "total_open": 4, "value_at_risk": 100.0},
            efficiency={"resolved_total": 25, "efficiency_rate": 96.0},
            sla={"p50_hours": 12.0},
            quality={"no_photo_rate": 0.0},
        )
        titles = {i["title"] for i in insights}
        assert titles == {"Excellent efficiency", "No overdue items"}
