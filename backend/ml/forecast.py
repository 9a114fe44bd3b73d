"""
Loss Forecasting — deterministic baseline with weekday seasonality and trend.

Model (per organization, optionally per store):
  1. Daily history of the last 30 days (zero-filled between the first and
     last observed day)
  2. Baseline: mean daily value; trend slope: least-squares fit over the
     history when ≥ 7 days are available, otherwise 0
  3. Day-of-week factor: weekday mean / overall mean (1.0 when unseen)
  4. Prediction for day i (0 = first target): max(0, (baseline + slope·i) × factor(weekday))
  5. 95% interval: ± 1.96·σ of the history, σ being the population standard
     deviation (± 20% of the prediction when σ is unavailable or 0), lower
     bound floored at 0
  6. Confidence level decays with the horizon: max(0.6, 0.95 − 0.03·i)

Expiry risk is not forecast from history: it is the share of currently
open expiry reports that will have expired by the target date.

Regenerating a prediction type replaces its future predictions. Evaluation
fills actual_value/error for past target dates and rolls up weekly
MAE/MSE/accuracy (|error| ≤ 20% of actual counts as accurate).
"""

import uuid
from datetime import date, timedelta
from typing import Any

import numpy as np
import pandas as pd
import structlog
from sqlalchemy import and_, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ExpiryReport, LossRecord, Prediction
from retail.expiry import OPEN_STATUSES

logger = structlog.get_logger()

PREDICTION_TYPES = ("loss_amount", "loss_volume", "expiry_risk", "expiry_count")
HISTORY_DAYS = 30
MIN_TREND_DAYS = 7
Z_95 = 1.96
FALLBACK_MARGIN = 0.20
ACCURACY_TOLERANCE = 0.20
MODEL_VERSION = "baseline-dow-v1"

# Used when there is no history at all
DEFAULT_BASELINES = {"loss_amount": 100.0, "loss_volume": 10.0}


# ── Pure Forecasting ────────────────────────────────────────────────────


def build_daily_series(observations: list[tuple[date, float]]) -> pd.Series:
    """Sum observations per day and zero-fill the gaps in the observed span."""
    if not observations:
        return pd.Series(dtype=float)
    frame = pd.DataFrame(observations, columns=["day", "value"])
    frame["day"] = pd.to_datetime(frame["day"])
    daily = frame.groupby("day")["value"].sum().astype(float)
    full_index = pd.date_range(daily.index.min(), daily.index.max(), freq="D")
    return daily.reindex(full_index, fill_value=0.0)


def weekday_factors(series: pd.Series) -> dict[int, float]:
    """weekday (0=Mon) → mean on that weekday / overall mean."""
    overall = float(series.mean()) if len(series) else 0.0
    if overall <= 0:
        return {d: 1.0 for d in range(7)}
    by_weekday = series.groupby(series.index.dayofweek).mean()
    return {d: float(by_weekday.get(d, overall)) / overall for d in range(7)}


def confidence_for_step(step: int) -> float:
    return round(max(0.6, 0.95 - 0.03 * step), 2)


def forecast_series(
    series: pd.Series,
    start: date,
    horizon_days: int,
    default_baseline: float = 100.0,
) -> list[dict[str, Any]]:
    """
    Forecast `horizon_days` values starting at `start`.

    Step i (0 for `start`) predicts (baseline + slope·i) × weekday factor.
    The interval uses the population standard deviation (ddof=0) of the
    daily history.

    Returns:
        [{target_date, predicted_value, confidence_lower, confidence_upper,
          confidence_level, step}, ...]
    """
    n = len(series)
    if n == 0:
        baseline, slope, std = default_baseline, 0.0, None
        factors = {d: 1.0 for d in range(7)}
    else:
        values = series.values.astype(float)
        baseline = float(values.mean())
        std = float(values.std(ddof=0)) if n >= 2 else None
        factors = weekday_factors(series)
        if n >= MIN_TREND_DAYS:
            slope = float(np.polyfit(np.arange(n), values, 1)[0])
        else:
            slope = 0.0

    results = []
    for step in range(horizon_days):
        target = start + timedelta(days=step)
        predicted = max(0.0, (baseline + slope * step) * factors[target.weekday()])
        margin = Z_95 * std if std else FALLBACK_MARGIN * predicted
        results.append(
            {
                "target_date": target,
                "step": step,
                "predicted_value": round(predicted, 2),
                "confidence_lower": round(max(0.0, predicted - margin), 2),
                "confidence_upper": round(predicted + margin, 2),
                "confidence_level": confidence_for_step(step),
            }
        )
    return results


def expiry_risk_curve(expiry_dates: list[date], start: date, horizon_days: int) -> list[dict[str, Any]]:
    """% of open reports expired by each target date (0-100)."""
    total = len(expiry_dates)
    results = []
    for step in range(horizon_days):
        target = start + timedelta(days=step)
        expired = sum(1 for d in expiry_dates if d <= target)
        value = min(100.0, expired / total * 100) if total else 0.0
        results.append(
            {
                "target_date": target,
                "step": step,
                "predicted_value": round(value, 1),
                "confidence_lower": round(value, 1),
                "confidence_upper": round(value, 1),
                "confidence_level": 0.95,
            }
        )
    return results


def expiry_count_curve(expiry_dates: list[date], start: date, horizon_days: int) -> list[dict[str, Any]]:
    """Open reports expiring exactly on each target date."""
    counts: dict[date, int] = {}
    for d in expiry_dates:
        counts[d] = counts.get(d, 0) + 1
    return [
        {
            "target_date": start + timedelta(days=step),
            "step": step,
            "predicted_value": float(counts.get(start + timedelta(days=step), 0)),
            "confidence_lower": float(counts.get(start + timedelta(days=step), 0)),
            "confidence_upper": float(counts.get(start + timedelta(days=step), 0)),
            "confidence_level": 0.95,
        }
        for step in range(horizon_days)
    ]


def accuracy_summary(rows: list[dict]) -> list[dict]:
    """
    Weekly accuracy per prediction type.

    rows: [{prediction_type, target_date, predicted_value, actual_value}, ...]
    """
    groups: dict[tuple[str, date], list[dict]] = {}
    for row in rows:
        week_start = row["target_date"] - timedelta(days=row["target_date"].weekday())
        groups.setdefault((row["prediction_type"], week_start), []).append(row)

    summary = []
    for (ptype, week_start), items in sorted(groups.items(), key=lambda g: (g[0][0], g[0][1])):
        evaluated = [r for r in items if r.get("actual_value") is not None]
        errors = [r["predicted_value"] - r["actual_value"] for r in evaluated]
        accurate = sum(
            1
            for r in evaluated
            if abs(r["predicted_value"] - r["actual_value"]) <= ACCURACY_TOLERANCE * abs(r["actual_value"])
        )
        summary.append(
            {
                "prediction_type": ptype,
                "week_start": week_start.isoformat(),
                "total_predictions": len(items),
                "evaluated_predictions": len(evaluated),
                "mae": round(float(np.mean(np.abs(errors))), 2) if errors else None,
                "mse": round(float(np.mean(np.square(errors))), 2) if errors else None,
                "accuracy_rate": round(accurate / len(evaluated) * 100, 1) if evaluated else None,
            }
        )
    return summary


# ── Persistence ────────────────────────────────────────────────────────


async def _loss_history(
    db: AsyncSession,
    org_id: uuid.UUID,
    prediction_type: str,
    today: date,
    store_id: uuid.UUID | None,
) -> list[tuple[date, float]]:
    value_col = LossRecord.total_cost if prediction_type == "loss_amount" else LossRecord.quantity
    conditions = [
        LossRecord.org_id == org_id,
        LossRecord.occurred_on >= today - timedelta(days=HISTORY_DAYS),
        LossRecord.occurred_on < today,
    ]
    if store_id is not None:
        conditions.append(LossRecord.store_id == store_id)
    result = await db.execute(
        select(LossRecord.occurred_on, func.sum(value_col)).where(and_(*conditions)).group_by(LossRecord.occurred_on)
    )
    return [(row[0], float(row[1] or 0)) for row in result.all()]


async def _open_expiry_dates(db: AsyncSession, org_id: uuid.UUID, store_id: uuid.UUID | None) -> list[date]:
    conditions = [ExpiryReport.org_id == org_id, ExpiryReport.status.in_(OPEN_STATUSES)]
    if store_id is not None:
        conditions.append(ExpiryReport.store_id == store_id)
    result = await db.execute(select(ExpiryReport.expiry_date).where(and_(*conditions)))
    return [row[0] for row in result.all()]


async def generate_predictions(
    db: AsyncSession,
    org_id: uuid.UUID,
    prediction_type: str = "loss_amount",
    horizon_days: int = 7,
    store_id: uuid.UUID | None = None,
    today: date | None = None,
) -> list[Prediction]:
    """Generate and persist predictions, replacing future ones of the same type/entity."""
    if prediction_type not in PREDICTION_TYPES:
        raise ValueError(f"Unsupported prediction_type: {prediction_type}")
    if horizon_days < 1:
        raise ValueError("horizon_days must be >= 1")

    today = today or date.today()
    start = today + timedelta(days=1)
    entity_type = "store" if store_id is not None else "organization"
    entity_id = str(store_id) if store_id is not None else str(org_id)

    if prediction_type in ("loss_amount", "loss_volume"):
        history = await _loss_history(db, org_id, prediction_type, today, store_id)
        series = build_daily_series(history)
        points = forecast_series(series, start, horizon_days, DEFAULT_BASELINES[prediction_type])
        features = ["daily_history_30d", "day_of_week_factor", "linear_trend"]
    else:
        expiry_dates = await _open_expiry_dates(db, org_id, store_id)
        if prediction_type == "expiry_risk":
            points = expiry_risk_curve(expiry_dates, start, horizon_days)
        else:
            points = expiry_count_curve(expiry_dates, start, horizon_days)
        features = ["open_expiry_reports"]

    await db.execute(
        delete(Prediction).where(
            Prediction.org_id == org_id,
            Prediction.prediction_type == prediction_type,
            Prediction.entity_id == entity_id,
            Prediction.target_date > today,
        )
    )

    created = []
    for point in points:
        prediction = Prediction(
            org_id=org_id,
            prediction_type=prediction_type,
            entity_type=entity_type,
            entity_id=entity_id,
            target_date=point["target_date"],
            horizon_days=point["step"] + 1,
            predicted_value=point["predicted_value"],
            confidence_lower=point["confidence_lower"],
            confidence_upper=point["confidence_upper"],
            confidence_level=point["confidence_level"],
            model_version=MODEL_VERSION,
            features_used=features,
        )
        db.add(prediction)
        created.append(prediction)
    await db.commit()

    logger.info(
        "forecast.generated",
        org_id=str(org_id),
        prediction_type=prediction_type,
        entity_type=entity_type,
        horizon_days=horizon_days,
    )
    return created


async def evaluate_predictions(db: AsyncSession, org_id: uuid.UUID, today: date | None = None) -> int:
    """Fill actual_value/error for past-dated predictions. Returns rows updated."""
    today = today or date.today()
    result = await db.execute(
        select(Prediction).where(
            Prediction.org_id == org_id,
            Prediction.target_date < today,
            Prediction.actual_value.is_(None),
            Prediction.prediction_type.in_(["loss_amount", "loss_volume", "expiry_count"]),
        )
    )
    pending = result.scalars().all()

    updated = 0
    for prediction in pending:
        store_filter = []
        if prediction.entity_type == "store" and prediction.entity_id:
            store_filter = [LossRecord.store_id == uuid.UUID(prediction.entity_id)]
        if prediction.prediction_type == "expiry_count":
            conditions = [ExpiryReport.org_id == org_id, ExpiryReport.expiry_date == prediction.target_date]
            if prediction.entity_type == "store" and prediction.entity_id:
                conditions.append(ExpiryReport.store_id == uuid.UUID(prediction.entity_id))
            actual = (await db.execute(select(func.count()).where(and_(*conditions)))).scalar_one()
        else:
            value_col = LossRecord.total_cost if prediction.prediction_type == "loss_amount" else LossRecord.quantity
            actual = (
                await db.execute(
                    select(func.coalesce(func.sum(value_col), 0)).where(
                        LossRecord.org_id == org_id,
                        LossRecord.occurred_on == prediction.target_date,
                        *store_filter,
                    )
                )
            ).scalar_one()
        prediction.actual_value = float(actual or 0)
        prediction.error = round(abs(prediction.predicted_value - prediction.actual_value), 2)
        updated += 1

    await db.commit()
    logger.info("forecast.evaluated", org_id=str(org_id), predictions_evaluated=updated)
    return updated


async def get_accuracy(db: AsyncSession, org_id: uuid.UUID, weeks: int = 8) -> list[dict]:
    since = date.today() - timedelta(weeks=weeks)
    result = await db.execute(
        select(
            Prediction.prediction_type,
            Prediction.target_date,
            Prediction.predicted_value,
            Prediction.actual_value,
        ).where(Prediction.org_id == org_id, Prediction.target_date >= since, Prediction.target_date < date.today())
    )
    rows = [
        {
            "prediction_type": r.prediction_type,
            "target_date": r.target_date,
            "predicted_value": r.predicted_value,
            "actual_value": r.actual_value,
        }
        for r in result.all()
    ]
    return accuracy_summary(rows)
