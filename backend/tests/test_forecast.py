"""
Tests for the baseline loss forecaster and prediction accuracy roll-up.
"""

from datetime import date, timedelta

import pandas as pd
import pytest

from db.models import Prediction
from ml.forecast import (
    accuracy_summary,
    build_daily_series,
    confidence_for_step,
    evaluate_predictions,
    expiry_count_curve,
    expiry_risk_curve,
    forecast_series,
    get_accuracy,
    weekday_factors,
)

START = date(2026, 6, 1)  # Monday


class TestDailySeries:
    def test_sums_and_zero_fills(self):
        series = build_daily_series([(START, 5.0), (START, 5.0), (START + timedelta(days=2), 2.0)])
        assert list(series.values) == [10.0, 0.0, 2.0]

    def test_empty(self):
        assert build_daily_series([]).empty


class TestWeekdayFactors:
    def test_flat_series_is_neutral(self):
        series = pd.Series(5.0, index=pd.date_range(START, periods=14, freq="D"))
        assert all(f == pytest.approx(1.0) for f in weekday_factors(series).values())

    def test_peak_day(self):
        values = [20.0 if (START + timedelta(days=i)).weekday() == 5 else 10.0 for i in range(14)]
        series = pd.Series(values, index=pd.date_range(START, periods=14, freq="D"))
        factors = weekday_factors(series)
        assert factors[5] > factors[0]


class TestForecast:
    def test_confidence_decay(self):
        assert confidence_for_step(0) == 0.95
        assert confidence_for_step(5) == 0.8
        assert confidence_for_step(30) == 0.6

    def test_no_history_uses_default_baseline(self):
        results = forecast_series(pd.Series(dtype=float), START, 3, default_baseline=100.0)
        assert len(results) == 3
        assert results[0]["predicted_value"] == 100.0
        assert results[0]["confidence_lower"] == 80.0
        assert results[0]["confidence_upper"] == 120.0

    def test_flat_history(self):
        history = pd.Series(10.0, index=pd.date_range(START - timedelta(days=14), periods=14, freq="D"))
        results = forecast_series(history, START, 7)
        assert [r["target_date"] for r in results] == [START + timedelta(days=i) for i in range(7)]
        assert all(r["predicted_value"] == pytest.approx(10.0) for r in results)
        assert results[0]["confidence_lower"] == pytest.approx(8.0)

    def test_increasing_trend(self):
        history = pd.Series(
            [float(i) for i in range(1, 15)],
            index=pd.date_range(START - timedelta(days=14), periods=14, freq="D"),
        )
        results = forecast_series(history, START, 3)
        assert results[2]["predicted_value"] > results[0]["predicted_value"] > 0

    def test_trend_applies_from_first_target_day(self):
        # 0..13 ending on a Sunday: baseline 6.5, slope 1, Monday factor 3.5 / 6.5
        history = pd.Series(
            [float(i) for i in range(14)],
            index=pd.date_range(START - timedelta(days=14), periods=14, freq="D"),
        )
        results = forecast_series(history, START, 2)
        assert results[0]["predicted_value"] == 3.5
        assert results[1]["predicted_value"] == 5.19
        # population std of 0..13 is sqrt(16.25)
        assert results[0]["confidence_lower"] == 0.0
        assert results[0]["confidence_upper"] == 11.4

    def test_never_negative(self):
        history = pd.Series(
            [float(14 - i) for i in range(14)],
            index=pd.date_range(START - timedelta(days=14), periods=14, freq="D"),
        )
        results = forecast_series(history, START + timedelta(days=30), 5)
        assert all(r["predicted_value"] >= 0 for r in results)
        assert all(r["confidence_lower"] >= 0 for r in results)


class TestExpiryCurves:
    def test_risk_curve_is_cumulative_share(self):
        dates = [START, START + timedelta(days=2), START + timedelta(days=10)]
        curve = expiry_risk_curve(dates, START, 3)
        assert [p["predicted_value"] for p in curve] == [33.3, 33.3, 66.7]

    def test_risk_curve_without_reports(self):
        assert expiry_risk_curve([], START, 2)[1]["predicted_value"] == 0.0

    def test_count_curve(self):
        dates = [START, START, START + timedelta(days=1)]
        assert [p["predicted_value"] for p in expiry_count_curve(dates, START, 3)] == [2.0, 1.0, 0.0]


class TestAccuracySummary:
    def test_weekly_rollup(self):
        rows = [
            {"prediction_type": "loss_amount", "target_date": START, "predicted_value": 100.0, "actual_value": 90.0},
            {
                "prediction_type": "loss_amount",
                "target_date": START + timedelta(days=2),
                "predicted_value": 50.0,
                "actual_value": 100.0,
            },
            {
                "prediction_type": "loss_amount",
                "target_date": START + timedelta(days=3),
                "predicted_value": 70.0,
                "actual_value": None,
            },
        ]
        [week] = accuracy_summary(rows)
        assert week["week_start"] == "2026-06-01"
        assert week["total_predictions"] == 3
        assert week["evaluated_predictions"] == 2
        assert week["mae"] == 30.0
        assert week["mse"] == 1300.0
        assert week["accuracy_rate"] == 50.0

    def test_unevaluated_week(self):
        [week] = accuracy_summary(
            [{"prediction_type": "expiry_risk", "target_date": START, "predicted_value": 10.0, "actual_value": None}]
        )
        assert week["mae"] is None
        assert week["accuracy_rate"] is None


def _prediction(org_id, prediction_type, target_date, predicted_value, entity_type="organization", entity_id=None):
    return Prediction(
        org_id=org_id,
        prediction_type=prediction_type,
        entity_type=entity_type,
        entity_id=entity_id or str(org_id),
        target_date=target_date,
        horizon_days=1,
        predicted_value=predicted_value,
        confidence_level=0.95,
    )


@pytest.mark.asyncio
class TestEvaluatePredictions:
    async def test_fills_actuals_for_past_dates(self, test_db, seeded_db):
        org_id = seeded_db["org_id"]
        today = date.today()
        store_id = str(seeded_db["store"].store_id)
        # Both stores lose R$ 10 three days ago
        org_amount = _prediction(org_id, "loss_amount", today - timedelta(days=3), 18.0)
        store_volume = _prediction(
            org_id, "loss_volume", today - timedelta(days=2), 4.0, entity_type="store", entity_id=store_id
        )
        expiring = _prediction(org_id, "expiry_count", today - timedelta(days=1), 2.0)
        risk_curve = _prediction(org_id, "expiry_risk", today - timedelta(days=1), 50.0)
        future = _prediction(org_id, "loss_amount", today + timedelta(days=1), 12.0)
        test_db.add_all([org_amount, store_volume, expiring, risk_curve, future])
        await test_db.commit()

        assert await evaluate_predictions(test_db, org_id) == 3

        assert org_amount.actual_value == 20.0
        assert org_amount.error == 2.0
        assert store_volume.actual_value == 4.0
        assert store_volume.error == 0.0
        assert expiring.actual_value == 1.0
        assert expiring.error == 1.0
        assert risk_curve.actual_value is None
        assert future.actual_value is None

    async def test_second_pass_skips_evaluated(self, test_db, seeded_db):
        org_id = seeded_db["org_id"]
        test_db.add(_prediction(org_id, "loss_amount", date.today() - timedelta(days=1), 10.0))
        await test_db.commit()

        assert await evaluate_predictions(test_db, org_id) == 1
        assert await evaluate_predictions(test_db, org_id) == 0

    async def test_accuracy_uses_twenty_percent_of_actual(self, test_db, seeded_db):
        org_id = seeded_db["org_id"]
        target = date.today() - timedelta(days=3)
        test_db.add_all(
            [
                _prediction(org_id, "loss_amount", target, 18.0),
                _prediction(org_id, "loss_amount", target, 30.0),
            ]
        )
        await test_db.commit()
        await evaluate_predictions(test_db, org_id)

        [week] = [w for w in await get_accuracy(test_db, org_id) if w["prediction_type"] == "loss_amount"]
        assert week["evaluated_predictions"] == 2
        assert week["mae"] == 6.0
        assert week["mse"] == 52.0
        assert week["accuracy_rate"] == 50.0
