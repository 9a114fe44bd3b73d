"""
Anomaly Detection — z-score flags and Isolation Forest outliers over losses.

Detects, per store / product / category over a lookback window:
  - Spikes and drops in loss value, loss volume, loss count or expiry
    report count (z-score against the peer population)
  - Multivariate outliers (Isolation Forest over cost, volume, frequency)

Z-score rules:
  - Needs ≥ 3 entities with a positive value and a non-zero std deviation
  - |z| > threshold is flagged; z > 0 → spike, z < 0 → drop
  - Severity: |z| > threshold + 1 → critical, > threshold + 0.5 → high,
    otherwise medium
  - Expected range: mean ± threshold·σ (lower bound floored at 0)

An entity that already has an open anomaly for the same metric is skipped,
so repeated runs do not pile duplicates into the triage queue.
"""

import uuid
from datetime import date, datetime, timedelta
from typing import Any

import numpy as np
import pandas as pd
import structlog
from sklearn.ensemble import IsolationForest
from sklearn.preprocessing import StandardScaler
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Anomaly, ExpiryReport, LossRecord, Product, Store

logger = structlog.get_logger()

METRIC_TYPES = ("loss_value", "loss_volume", "loss_count", "expiry_count")
ENTITY_KEYS = {"store": "store_id", "product": "product_id", "category": "category"}
OUTLIER_FEATURES = ["total_cost", "total_quantity", "record_count"]


# ── Pure Detection ──────────────────────────────────────────────────────


def classify_severity(abs_z: float, threshold: float) -> str:
    if abs_z > threshold + 1:
        return "critical"
    if abs_z > threshold + 0.5:
        return "high"
    return "medium"


def zscore_anomalies(values: dict[str, float], threshold: float = 3.0) -> list[dict]:
    """
    Flag entities whose value deviates more than `threshold` σ from the mean.

    Args:
        values: {entity_key: metric value}
        threshold: z-score cut-off

    Returns:
        [{entity_key, anomaly_type, severity, detected_value, expected_value,
          expected_range_lower, expected_range_upper, deviation_score}, ...]
        sorted by |z| descending.
    """
    positive = {k: float(v) for k, v in values.items() if v is not None and v > 0}
    if len(positive) < 3:
        return []

    arr = np.array(list(positive.values()), dtype=float)
    mean = float(arr.mean())
    std = float(arr.std())
    if std == 0:
        return []

    flagged = []
    for key, value in positive.items():
        z = (value - mean) / std
        if abs(z) <= threshold:
            continue
        flagged.append(
            {
                "entity_key": key,
                "anomaly_type": "spike" if z > 0 else "drop",
                "severity": classify_severity(abs(z), threshold),
                "detected_value": round(value, 2),
                "expected_value": round(mean, 2),
                "expected_range_lower": round(max(0.0, mean - threshold * std), 2),
                "expected_range_upper": round(mean + threshold * std, 2),
                "deviation_score": round(z, 2),
            }
        )
    flagged.sort(key=lambda a: abs(a["deviation_score"]), reverse=True)
    return flagged


def isolation_forest_outliers(
    frame: pd.DataFrame,
    features: list[str] | None = None,
    contamination: float = 0.1,
) -> list[dict]:
    """
    Multivariate outliers via Isolation Forest on standardized features.

    `frame` must carry an `entity_key` column plus the feature columns.
    Severity comes from the z-score of the (negated) isolation score.
    """
    features = features or OUTLIER_FEATURES
    if len(frame) < 5:
        return []

    X = frame[features].fillna(0).astype(float)
    X_scaled = StandardScaler().fit_transform(X)

    iso_forest = IsolationForest(contamination=contamination, random_state=42, n_estimators=100)
    predictions = iso_forest.fit_predict(X_scaled)
    # score_samples: lower = more abnormal; negate so higher = more abnormal
    scores = -iso_forest.score_samples(X_scaled)
    z_scores = (scores - scores.mean()) / (scores.std() + 1e-8)

    means = X.mean()
    flagged = []
    for idx in np.where(predictions == -1)[0]:
        row = frame.iloc[idx]
        z = float(z_scores[idx])
        severity = "critical" if z > 3.0 else "high" if z > 2.0 else "medium"
        flagged.append(
            {
                "entity_key": row["entity_key"],
                "anomaly_type": "outlier",
                "severity": severity,
                "detected_value": round(float(row[features[0]]), 2),
                "expected_value": round(float(means[features[0]]), 2),
                "expected_range_lower": None,
                "expected_range_upper": None,
                "deviation_score": round(z, 2),
                "features": {f: float(row[f]) for f in features},
            }
        )
    flagged.sort(key=lambda a: a["deviation_score"], reverse=True)
    return flagged


def summarize_open_anomalies(rows: list[dict]) -> list[dict]:
    """Group open anomalies by (type, severity, entity_type)."""
    groups: dict[tuple, dict] = {}
    for row in rows:
        key = (row["anomaly_type"], row["severity"], row["entity_type"])
        group = groups.setdefault(
            key,
            {
                "anomaly_type": key[0],
                "severity": key[1],
                "entity_type": key[2],
                "count": 0,
                "_deviation_total": 0.0,
                "latest_detection": None,
            },
        )
        group["count"] += 1
        group["_deviation_total"] += abs(row.get("deviation_score") or 0.0)
        detected_at = row.get("detected_at")
        if detected_at and (group["latest_detection"] is None or detected_at > group["latest_detection"]):
            group["latest_detection"] = detected_at

    summary = []
    for group in groups.values():
        total = group.pop("_deviation_total")
        group["avg_deviation"] = round(total / group["count"], 2)
        summary.append(group)
    summary.sort(key=lambda g: g["count"], reverse=True)
    return summary


# ── Metric Aggregation ─────────────────────────────────────────────────


async def build_metric_frame(
    db: AsyncSession,
    org_id: uuid.UUID,
    entity_type: str,
    lookback_days: int = 30,
    today: date | None = None,
) -> pd.DataFrame:
    """
    Per-entity totals over the lookback window.

    Columns: entity_key, total_cost, total_quantity, record_count, expiry_count
    """
    if entity_type not in ENTITY_KEYS:
        raise ValueError(f"Unsupported entity_type: {entity_type}")
    today = today or date.today()
    start = today - timedelta(days=lookback_days)
    key_col = getattr(LossRecord, ENTITY_KEYS[entity_type])

    loss_result = await db.execute(
        select(
            key_col.label("entity_key"),
            func.sum(LossRecord.total_cost).label("total_cost"),
            func.sum(LossRecord.quantity).label("total_quantity"),
            func.count().label("record_count"),
        )
        .where(
            LossRecord.org_id == org_id,
            LossRecord.occurred_on >= start,
            key_col.is_not(None),
        )
        .group_by(key_col)
    )
    losses = pd.DataFrame(
        [tuple(r) for r in loss_result.all()],
        columns=["entity_key", "total_cost", "total_quantity", "record_count"],
    )

    report_key = getattr(ExpiryReport, ENTITY_KEYS[entity_type])
    report_result = await db.execute(
        select(report_key.label("entity_key"), func.count().label("expiry_count"))
        .where(
            ExpiryReport.org_id == org_id,
            ExpiryReport.created_at >= datetime.combine(start, datetime.min.time()),
            report_key.is_not(None),
        )
        .group_by(report_key)
    )
    reports = pd.DataFrame([tuple(r) for r in report_result.all()], columns=["entity_key", "expiry_count"])

    if losses.empty and reports.empty:
        return pd.DataFrame(columns=["entity_key", *OUTLIER_FEATURES, "expiry_count"])

    losses["entity_key"] = losses["entity_key"].astype(str)
    reports["entity_key"] = reports["entity_key"].astype(str)
    frame = losses.merge(reports, on="entity_key", how="outer")
    for col in [*OUTLIER_FEATURES, "expiry_count"]:
        frame[col] = frame[col].fillna(0).astype(float)
    return frame


def metric_values(frame: pd.DataFrame, metric_type: str) -> dict[str, float]:
    column = {
        "loss_value": "total_cost",
        "loss_volume": "total_quantity",
        "loss_count": "record_count",
        "expiry_count": "expiry_count",
    }.get(metric_type)
    if column is None:
        raise ValueError(f"Unsupported metric_type: {metric_type}")
    if frame.empty:
        return {}
    return dict(zip(frame["entity_key"], frame[column].astype(float)))


async def _entity_names(db: AsyncSession, org_id: uuid.UUID, entity_type: str) -> dict[str, str]:
    if entity_type == "store":
        result = await db.execute(select(Store.store_id, Store.name).where(Store.org_id == org_id))
    elif entity_type == "product":
        result = await db.execute(select(Product.product_id, Product.name).where(Product.org_id == org_id))
    else:
        return {}
    return {str(row[0]): row[1] for row in result.all()}


# ── Detection + Persistence ────────────────────────────────────────────


async def detect_anomalies(
    db: AsyncSession,
    org_id: uuid.UUID,
    entity_type: str,
    metric_type: str,
    threshold: float = 3.0,
    method: str = "zscore",
    lookback_days: int = 30,
) -> list[Anomaly]:
    """
    Detect and persist anomalies for one (entity_type, metric_type) pair.

    Returns the newly created Anomaly rows (committed).
    """
    if metric_type not in METRIC_TYPES:
        raise ValueError(f"Unsupported metric_type: {metric_type}")

    logger.info(
        "anomaly.detect_start",
        org_id=str(org_id),
        entity_type=entity_type,
        metric_type=metric_type,
        method=method,
    )

    today = date.today()
    frame = await build_metric_frame(db, org_id, entity_type, lookback_days, today)
    if frame.empty:
        logger.warning("anomaly.no_data", org_id=str(org_id), entity_type=entity_type)
        return []

    if method == "isolation_forest":
        flagged = isolation_forest_outliers(frame)
    elif method == "zscore":
        flagged = zscore_anomalies(metric_values(frame, metric_type), threshold)
    else:
        raise ValueError(f"Unsupported detection method: {method}")

    if not flagged:
        logger.info("anomaly.none_detected", org_id=str(org_id), entity_type=entity_type)
        return []

    open_result = await db.execute(
        select(Anomaly.entity_id).where(
            Anomaly.org_id == org_id,
            Anomaly.entity_type == entity_type,
            Anomaly.metric_type == metric_type,
            Anomaly.status.in_(["open", "investigating"]),
        )
    )
    already_open = {row.entity_id for row in open_result.all()}
    names = await _entity_names(db, org_id, entity_type)

    created: list[Anomaly] = []
    for item in flagged:
        key = str(item["entity_key"])
        if key in already_open:
            continue
        anomaly = Anomaly(
            org_id=org_id,
            anomaly_type=item["anomaly_type"],
            severity=item["severity"],
            entity_type=entity_type,
            entity_id=key,
            entity_name=names.get(key, key if entity_type == "category" else None),
            metric_type=metric_type,
            detected_value=item["detected_value"],
            expected_value=item["expected_value"],
            expected_range_lower=item["expected_range_lower"],
            expected_range_upper=item["expected_range_upper"],
            deviation_score=item["deviation_score"],
            detection_method=method,
            period_start=today - timedelta(days=lookback_days),
            period_end=today,
            anomaly_metadata={"threshold": threshold, **({"features": item["features"]} if "features" in item else {})},
        )
        db.add(anomaly)
        created.append(anomaly)

    await db.commit()

    logger.info(
        "anomaly.detect_complete",
        org_id=str(org_id),
        entity_type=entity_type,
        metric_type=metric_type,
        anomalies_detected=len(created),
        critical=sum(1 for a in created if a.severity == "critical"),
    )
    return created


async def run_anomaly_sweep(
    db: AsyncSession,
    org_id: uuid.UUID,
    threshold: float = 3.0,
) -> dict[str, Any]:
    """Scheduled sweep: z-score on store/product loss value and store expiry count."""
    pairs = [("store", "loss_value"), ("product", "loss_value"), ("store", "expiry_count")]
    created = 0
    for entity_type, metric_type in pairs:
        created += len(await detect_anomalies(db, org_id, entity_type, metric_type, threshold=threshold))
    return {"anomalies_detected": created, "pairs_checked": len(pairs)}
