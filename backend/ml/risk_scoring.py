"""
Risk Scoring — 0-100 operational risk per store, product and category.

Each entity gets five component scores (each clamped to 0-100):

  expiry       overdue open reports ×15 + reports expiring within 3 days ×5
  rupture      shrinkage/theft/damage losses in the last 30 days ×4
  recurrence   stores: expiry reports in the last 30 days ×5
               products: avg monthly occurrences (reports + losses, 90d) ×10
  financial    (open value at risk + loss cost in the last 30 days) / 100
  efficiency   100 − % of resolved reports handled before expiry
               (50 when nothing was resolved yet)

The final score is the weighted mean of the components using the
organization's thresholds (weights must sum to 100). Categories use a
simpler three-factor blend (volume 40%, value 40%, efficiency 20%).

Levels:  ≤ low_max → low, ≤ medium_max → medium, ≤ high_max → high, else critical
Trend:   change ≤ −5 → improving, change ≥ +5 → worsening, else stable

A refresh recomputes every entity, upserts the current score, appends one
history row per entity per day and raises alerts on transitions
(newly critical, large increase, trend flip to worsening, new high risk).
"""

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any

import pandas as pd
import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import (
    ExpiryReport,
    LossRecord,
    Product,
    RiskAlert,
    RiskScore,
    RiskScoreHistory,
    RiskThresholds,
    Store,
)
from retail.expiry import OPEN_STATUSES

logger = structlog.get_logger()

COMPONENTS = ("expiry", "rupture", "recurrence", "financial", "efficiency")
RUPTURE_LOSS_TYPES = ("shrinkage", "theft", "damage")
TREND_DELTA = 5
ALERT_TTL_DAYS = 7

DEFAULT_WEIGHTS: dict[str, int] = {
    "expiry": 25,
    "rupture": 20,
    "recurrence": 20,
    "financial": 20,
    "efficiency": 15,
}

LEVEL_RANK = {"low": 0, "medium": 1, "high": 2, "critical": 3}


@dataclass
class ThresholdConfig:
    """Level cut-offs, component weights and alert rules for one organization."""

    low_max: int = 25
    medium_max: int = 50
    high_max: int = 75
    weights: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    alert_on_critical: bool = True
    alert_on_score_increase: int = 15
    alert_on_trend_change: bool = True

    @classmethod
    def from_row(cls, row: RiskThresholds | None) -> "ThresholdConfig":
        if row is None:
            return cls()
        return cls(
            low_max=row.low_max,
            medium_max=row.medium_max,
            high_max=row.high_max,
            weights={
                "expiry": row.weight_expiry,
                "rupture": row.weight_rupture,
                "recurrence": row.weight_recurrence,
                "financial": row.weight_financial,
                "efficiency": row.weight_efficiency,
            },
            alert_on_critical=row.alert_on_critical,
            alert_on_score_increase=row.alert_on_score_increase,
            alert_on_trend_change=row.alert_on_trend_change,
        )


@dataclass
class EntityScore:
    """Computed (not yet persisted) score for one entity."""

    entity_type: str
    entity_id: str
    entity_name: str | None
    score: int
    level: str
    components: dict[str, int]
    metrics: dict[str, Any]
    store_id: uuid.UUID | None = None


# ── Pure Scoring Math ───────────────────────────────────────────────────


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value: float) -> int:
    return max(0, min(100, _round_half_up(value)))


def level_from_score(score: float, thresholds: ThresholdConfig | None = None) -> str:
    t = thresholds or ThresholdConfig()
    if score <= t.low_max:
        return "low"
    if score <= t.medium_max:
        return "medium"
    if score <= t.high_max:
        return "high"
    return "critical"


def trend_from_change(current: float, previous: float | None) -> str:
    if previous is None:
        return "stable"
    change = current - previous
    if change <= -TREND_DELTA:
        return "improving"
    if change >= TREND_DELTA:
        return "worsening"
    return "stable"


def score_change(current: int, previous: int | None) -> dict:
    """Change vs previous score with a display label (e.g. "+12", "-3", "0")."""
    if previous is None:
        return {"change": 0, "trend": "stable", "label": "0"}
    change = current - previous
    label = f"+{change}" if change > 0 else str(change)
    return {"change": change, "trend": trend_from_change(current, previous), "label": label}


def validate_weights(weights: dict[str, int]) -> None:
    missing = [c for c in COMPONENTS if c not in weights]
    if missing:
        raise ValueError(f"Missing weights for: {', '.join(missing)}")
    if any(w < 0 for w in weights.values()):
        raise ValueError("Weights must be non-negative")
    total = sum(weights[c] for c in COMPONENTS)
    if total != 100:
        raise ValueError(f"Weights must sum to 100 (got {total})")


def validate_thresholds(low_max: int, medium_max: int, high_max: int) -> None:
    if not (0 <= low_max < medium_max < high_max <= 100):
        raise ValueError("Thresholds must satisfy 0 <= low_max < medium_max < high_max <= 100")


def expiry_component(overdue_open: int, near_expiry_open: int) -> int:
    return _clamp(overdue_open * 15 + near_expiry_open * 5)


def rupture_component(rupture_losses_30d: int) -> int:
    return _clamp(rupture_losses_30d * 4)


def store_recurrence_component(reports_30d: int) -> int:
    return _clamp(reports_30d * 5)


def product_recurrence_component(avg_monthly_occurrences: float) -> int:
    return _clamp(avg_monthly_occurrences * 10)


def financial_component(value_at_risk: float) -> int:
    return _clamp(value_at_risk / 100)


def efficiency_component(resolved_before_expiry: int, resolved_total: int) -> int:
    if resolved_total <= 0:
        return 50
    return _clamp(100 - resolved_before_expiry / resolved_total * 100)


def compute_weighted_score(components: dict[str, int], thresholds: ThresholdConfig | None = None) -> int:
    weights = (thresholds or ThresholdConfig()).weights
    total_weight = sum(weights.get(c, 0) for c in COMPONENTS)
    if total_weight <= 0:
        return 0
    weighted = sum(components.get(c, 0) * weights.get(c, 0) for c in COMPONENTS)
    return _clamp(weighted / total_weight)


def category_score(reports_30d: int, value_at_risk: float, efficiency_rate: float | None) -> int:
    """Three-factor category blend: volume 40%, value 40%, inefficiency 20%."""
    volume = min(100, reports_30d * 5)
    value = min(100, value_at_risk / 100)
    inefficiency = 50 if efficiency_rate is None else 100 - efficiency_rate
    return _clamp((volume * 40 + value * 40 + inefficiency * 20) / 100)


def build_alerts(
    current: EntityScore,
    previous_score: int | None,
    previous_level: str | None,
    previous_trend: str | None,
    trend: str,
    thresholds: ThresholdConfig,
) -> list[dict]:
    """
    Decide which alerts a score transition raises.

    Returns a list of dicts ready to become RiskAlert rows. The first ever
    calculation for an entity only alerts when it lands directly in critical.
    """
    alerts: list[dict] = []
    change = None if previous_score is None else current.score - previous_score
    name = current.entity_name or current.entity_id

    def _alert(alert_type: str, severity: str, title: str, description: str) -> dict:
        return {
            "alert_type": alert_type,
            "severity": severity,
            "title": title,
            "description": description,
            "current_score": current.score,
            "previous_score": previous_score,
            "score_change": change,
        }

    if thresholds.alert_on_critical and current.level == "critical" and previous_level != "critical":
        alerts.append(
            _alert(
                "critical_level",
                "critical",
                f"{name} reached critical risk",
                f"Risk score is {current.score} (critical above {thresholds.high_max}).",
            )
        )

    if change is not None and thresholds.alert_on_score_increase > 0 and change >= thresholds.alert_on_score_increase:
        severity = "high" if change >= thresholds.alert_on_score_increase * 2 else "medium"
        alerts.append(
            _alert(
                "score_increased",
                severity,
                f"{name} risk increased by {change} points",
                f"Score went from {previous_score} to {current.score}.",
            )
        )

    if (
        thresholds.alert_on_trend_change
        and previous_trend is not None
        and previous_trend != "worsening"
        and trend == "worsening"
    ):
        alerts.append(
            _alert(
                "trend_worsening",
                "medium",
                f"{name} risk trend is worsening",
                f"Trend changed from {previous_trend} to worsening.",
            )
        )

    if current.level == "high" and previous_level in ("low", "medium"):
        alerts.append(
            _alert(
                "new_high_risk",
                "high",
                f"{name} entered high risk",
                f"Level moved from {previous_level} to high (score {current.score}).",
            )
        )

    return alerts


# ── Dashboard Aggregations ─────────────────────────────────────────────


def summarize_scores(rows: list[dict]) -> dict:
    """Counts by level plus average score and trend counts."""
    summary = {
        "total_entities": len(rows),
        "critical_count": 0,
        "high_count": 0,
        "medium_count": 0,
        "low_count": 0,
        "avg_score": 0.0,
        "worsening_count": 0,
        "improving_count": 0,
    }
    if not rows:
        return summary
    for row in rows:
        summary[f"{row['level']}_count"] += 1
        if row.get("trend") == "worsening":
            summary["worsening_count"] += 1
        elif row.get("trend") == "improving":
            summary["improving_count"] += 1
    summary["avg_score"] = round(sum(r["score"] for r in rows) / len(rows), 1)
    return summary


def level_distribution(levels: list[str]) -> list[dict]:
    total = len(levels)
    out = []
    for level in LEVEL_RANK:
        count = sum(1 for lv in levels if lv == level)
        out.append(
            {
                "level": level,
                "count": count,
                "percentage": _round_half_up(count / total * 100) if total else 0,
            }
        )
    return out


def trend_points(history: list[dict]) -> list[dict]:
    """Group history rows by day: average score and per-level counts."""
    by_day: dict[date, list[dict]] = {}
    for row in history:
        by_day.setdefault(row["recorded_on"], []).append(row)

    points = []
    for day in sorted(by_day):
        rows = by_day[day]
        point = {
            "date": day.isoformat(),
            "avg_score": round(sum(r["score"] for r in rows) / len(rows), 1),
        }
        for level in LEVEL_RANK:
            point[f"{level}_count"] = sum(1 for r in rows if r["level"] == level)
        points.append(point)
    return points


# ── Metric Gathering ───────────────────────────────────────────────────


REPORT_COLUMNS = [
    "store_id",
    "product_id",
    "category",
    "status",
    "expiry_date",
    "quantity",
    "unit_price",
    "created_at",
    "resolved_at",
]
LOSS_COLUMNS = ["store_id", "product_id", "category", "loss_type", "total_cost", "occurred_on"]
METRIC_COLUMNS = [
    "overdue_open",
    "near_expiry_open",
    "open_total",
    "value_at_risk",
    "reports_30d",
    "resolved_total",
    "resolved_before_expiry",
    "rupture_losses_30d",
    "loss_cost_30d",
    "occurrences_90d",
]


def build_entity_metrics(
    reports: pd.DataFrame,
    losses: pd.DataFrame,
    key: str,
    today: date,
) -> dict[str, dict]:
    """
    Aggregate raw expiry reports and loss records into per-entity metrics.

    Args:
        reports: frame with REPORT_COLUMNS
        losses: frame with LOSS_COLUMNS
        key: grouping column ("store_id", "product_id" or "category")
        today: reference date for windows

    Returns:
        {entity_key (str): {metric: value, ...}}
    """
    today_ts = pd.Timestamp(today)
    cutoff_30 = today_ts - pd.Timedelta(days=30)

    frames = []
    if not reports.empty:
        r = reports.copy()
        expiry_ts = pd.to_datetime(r["expiry_date"])
        created_ts = pd.to_datetime(r["created_at"])
        resolved_ts = pd.to_datetime(r["resolved_at"])
        days = (expiry_ts - today_ts).dt.days
        is_open = r["status"].isin(OPEN_STATUSES)
        is_resolved = r["status"] == "resolved"
        value = r["quantity"].fillna(0).astype(float) * r["unit_price"].fillna(0).astype(float)

        r["overdue_open"] = (is_open & (days < 0)).astype(int)
        r["near_expiry_open"] = (is_open & (days >= 0) & (days <= 3)).astype(int)
        r["open_total"] = is_open.astype(int)
        r["value_at_risk"] = value.where(is_open, 0.0)
        r["reports_30d"] = (created_ts >= cutoff_30).astype(int)
        r["resolved_total"] = is_resolved.astype(int)
        r["resolved_before_expiry"] = (is_resolved & (resolved_ts.dt.normalize() <= expiry_ts)).astype(int)
        r["rupture_losses_30d"] = 0
        r["loss_cost_30d"] = 0.0
        r["occurrences_90d"] = 1
        frames.append(r[[key] + METRIC_COLUMNS])

    if not losses.empty:
        lo = losses.copy()
        occurred_ts = pd.to_datetime(lo["occurred_on"])
        recent = occurred_ts >= cutoff_30
        for col in METRIC_COLUMNS:
            lo[col] = 0
        lo["rupture_losses_30d"] = (recent & lo["loss_type"].isin(RUPTURE_LOSS_TYPES)).astype(int)
        lo["loss_cost_30d"] = lo["total_cost"].fillna(0).astype(float).where(recent, 0.0)
        lo["occurrences_90d"] = 1
        frames.append(lo[[key] + METRIC_COLUMNS])

    if not frames:
        return {}

    combined = pd.concat(frames, ignore_index=True)
    combined = combined[combined[key].notna()].copy()
    combined[key] = combined[key].astype(str)
    grouped = combined.groupby(key)[METRIC_COLUMNS].sum()
    return {
        str(idx): {col: (float(val) if col in ("value_at_risk", "loss_cost_30d") else int(val)) for col, val in row.items()}
        for idx, row in grouped.iterrows()
    }


def score_entity(
    entity_type: str,
    entity_id: str,
    entity_name: str | None,
    metrics: dict,
    thresholds: ThresholdConfig,
) -> EntityScore:
    """Turn aggregated metrics into component scores, weighted score and level."""
    m = {col: metrics.get(col, 0) for col in METRIC_COLUMNS}
    financial_value = m["value_at_risk"] + m["loss_cost_30d"]

    if entity_type == "category":
        eff_rate = (
            m["resolved_before_expiry"] / m["resolved_total"] * 100 if m["resolved_total"] else None
        )
        score = category_score(m["reports_30d"], m["value_at_risk"], eff_rate)
        components = {
            "expiry": expiry_component(m["overdue_open"], m["near_expiry_open"]),
            "rupture": rupture_component(m["rupture_losses_30d"]),
            "recurrence": store_recurrence_component(m["reports_30d"]),
            "financial": financial_component(financial_value),
            "efficiency": efficiency_component(m["resolved_before_expiry"], m["resolved_total"]),
        }
    else:
        if entity_type == "product":
            recurrence = product_recurrence_component(m["occurrences_90d"] / 3)
        else:
            recurrence = store_recurrence_component(m["reports_30d"])
        components = {
            "expiry": expiry_component(m["overdue_open"], m["near_expiry_open"]),
            "rupture": rupture_component(m["rupture_losses_30d"]),
            "recurrence": recurrence,
            "financial": financial_component(financial_value),
            "efficiency": efficiency_component(m["resolved_before_expiry"], m["resolved_total"]),
        }
        score = compute_weighted_score(components, thresholds)

    return EntityScore(
        entity_type=entity_type,
        entity_id=entity_id,
        entity_name=entity_name,
        score=score,
        level=level_from_score(score, thresholds),
        components=components,
        metrics=m,
    )


async def get_thresholds(db: AsyncSession, org_id: uuid.UUID) -> ThresholdConfig:
    row = await db.get(RiskThresholds, org_id)
    return ThresholdConfig.from_row(row)


async def _load_frames(db: AsyncSession, org_id: uuid.UUID, today: date) -> tuple[pd.DataFrame, pd.DataFrame]:
    window_start = datetime.combine(today - timedelta(days=90), datetime.min.time())
    report_result = await db.execute(
        select(
            ExpiryReport.store_id,
            ExpiryReport.product_id,
            ExpiryReport.category,
            ExpiryReport.status,
            ExpiryReport.expiry_date,
            ExpiryReport.quantity,
            ExpiryReport.unit_price,
            ExpiryReport.created_at,
            ExpiryReport.resolved_at,
        ).where(
            ExpiryReport.org_id == org_id,
            or_(ExpiryReport.status.in_(OPEN_STATUSES), ExpiryReport.created_at >= window_start),
        )
    )
    reports = pd.DataFrame([tuple(row) for row in report_result.all()], columns=REPORT_COLUMNS)

    loss_result = await db.execute(
        select(
            LossRecord.store_id,
            LossRecord.product_id,
            LossRecord.category,
            LossRecord.loss_type,
            LossRecord.total_cost,
            LossRecord.occurred_on,
        ).where(
            LossRecord.org_id == org_id,
            LossRecord.occurred_on >= today - timedelta(days=90),
        )
    )
    losses = pd.DataFrame([tuple(row) for row in loss_result.all()], columns=LOSS_COLUMNS)
    return reports, losses


async def compute_risk_scores(
    db: AsyncSession,
    org_id: uuid.UUID,
    today: date | None = None,
    thresholds: ThresholdConfig | None = None,
) -> list[EntityScore]:
    """Compute (without persisting) scores for every store, active product and category."""
    today = today or date.today()
    thresholds = thresholds or await get_thresholds(db, org_id)
    reports, losses = await _load_frames(db, org_id, today)

    store_rows = (await db.execute(select(Store.store_id, Store.name).where(Store.org_id == org_id))).all()
    product_rows = (
        await db.execute(select(Product.product_id, Product.name).where(Product.org_id == org_id))
    ).all()
    product_names = {str(row.product_id): row.name for row in product_rows}

    scores: list[EntityScore] = []

    store_metrics = build_entity_metrics(reports, losses, "store_id", today)
    for row in store_rows:
        sid = str(row.store_id)
        entity = score_entity("store", sid, row.name, store_metrics.get(sid, {}), thresholds)
        entity.store_id = row.store_id
        scores.append(entity)

    product_metrics = build_entity_metrics(reports, losses, "product_id", today)
    for pid, metrics in product_metrics.items():
        scores.append(score_entity("product", pid, product_names.get(pid), metrics, thresholds))

    category_metrics = build_entity_metrics(reports, losses, "category", today)
    for category, metrics in category_metrics.items():
        scores.append(score_entity("category", category, category, metrics, thresholds))

    return scores


async def refresh_risk_scores(
    db: AsyncSession,
    org_id: uuid.UUID,
    today: date | None = None,
) -> dict[str, Any]:
    """
    Recompute and persist all risk scores for an organization.

    Returns:
        {"scores_updated": int, "alerts_created": int, "alerts": [RiskAlert, ...]}
    """
    today = today or date.today()
    now = datetime.utcnow()
    logger.info("risk.refresh_start", org_id=str(org_id))

    thresholds = await get_thresholds(db, org_id)
    scores = await compute_risk_scores(db, org_id, today=today, thresholds=thresholds)

    existing_result = await db.execute(select(RiskScore).where(RiskScore.org_id == org_id))
    existing = {(row.entity_type, row.entity_id): row for row in existing_result.scalars().all()}

    history_result = await db.execute(
        select(RiskScoreHistory).where(
            RiskScoreHistory.org_id == org_id,
            RiskScoreHistory.recorded_on == today,
        )
    )
    todays_history = {(row.entity_type, row.entity_id): row for row in history_result.scalars().all()}

    created_alerts: list[RiskAlert] = []
    for entity in scores:
        key = (entity.entity_type, entity.entity_id)
        current_row = existing.get(key)
        previous_score = current_row.score if current_row else None
        previous_level = current_row.level if current_row else None
        previous_trend = current_row.trend if current_row else None
        trend = trend_from_change(entity.score, previous_score)

        for alert in build_alerts(entity, previous_score, previous_level, previous_trend, trend, thresholds):
            row = RiskAlert(
                org_id=org_id,
                store_id=entity.store_id,
                entity_type=entity.entity_type,
                entity_id=entity.entity_id,
                entity_name=entity.entity_name,
                expires_at=now + timedelta(days=ALERT_TTL_DAYS),
                alert_metadata={"level": entity.level, "trend": trend},
                **alert,
            )
            db.add(row)
            created_alerts.append(row)

        values = {
            "entity_name": entity.entity_name,
            "score": entity.score,
            "level": entity.level,
            "trend": trend,
            "previous_score": previous_score,
            "expiry_score": entity.components["expiry"],
            "rupture_score": entity.components["rupture"],
            "recurrence_score": entity.components["recurrence"],
            "financial_score": entity.components["financial"],
            "efficiency_score": entity.components["efficiency"],
            "metrics": entity.metrics,
            "period_start": today - timedelta(days=30),
            "period_end": today,
            "calculated_at": now,
        }
        if current_row is None:
            db.add(RiskScore(org_id=org_id, entity_type=entity.entity_type, entity_id=entity.entity_id, **values))
        else:
            for attr, value in values.items():
                setattr(current_row, attr, value)
            current_row.version = (current_row.version or 1) + 1

        history_values = {
            "score": entity.score,
            "level": entity.level,
            "expiry_score": entity.components["expiry"],
            "rupture_score": entity.components["rupture"],
            "recurrence_score": entity.components["recurrence"],
            "financial_score": entity.components["financial"],
            "efficiency_score": entity.components["efficiency"],
        }
        history_row = todays_history.get(key)
        if history_row is None:
            db.add(
                RiskScoreHistory(
                    org_id=org_id,
                    entity_type=entity.entity_type,
                    entity_id=entity.entity_id,
                    recorded_on=today,
                    **history_values,
                )
            )
        else:
            for attr, value in history_values.items():
                setattr(history_row, attr, value)

    await db.commit()

    logger.info(
        "risk.refresh_complete",
        org_id=str(org_id),
        scores_updated=len(scores),
        alerts_created=len(created_alerts),
    )
    return {
        "scores_updated": len(scores),
        "alerts_created": len(created_alerts),
        "alerts": created_alerts,
    }
