"""
Recommendation Engine — rule-based, prioritized actions with estimated savings.

Rules:
  investigation    top 5 (store, loss type) pairs by cost with cost > 1,000
                   priority: > 10,000 critical, > 5,000 high, else medium
                   savings 30% of cost, confidence 0.85
  process_change   costliest loss type network-wide when its cost > 5,000
                   priority high, savings 25%, confidence 0.75
  markdown         stores with open reports expiring within 3 days worth
                   ≥ 200; high priority when something expires today
  supplier_review  suppliers causing ≥ 20% of the loss cost (and > 1,000)
  audit            stores whose risk level is critical
  training         stores whose efficiency component is ≥ 60

Candidates below the organization's min_confidence are dropped, and a
candidate is skipped when a pending/viewed recommendation of the same type
already exists for the same entity.
"""

import uuid
from datetime import date, datetime, timedelta
from typing import Any

import pandas as pd
import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import ExpiryReport, Recommendation, RiskScore, Store
from retail.expiry import OPEN_STATUSES
from retail.losses import aggregate_losses, load_loss_frame

logger = structlog.get_logger()

RECOMMENDATION_TYPES = (
    "reorder",
    "markdown",
    "transfer",
    "investigation",
    "process_change",
    "supplier_review",
    "storage_adjustment",
    "training",
    "audit",
)
STATUSES = ("pending", "viewed", "accepted", "rejected", "completed", "expired")
ACTIVE_STATUSES = ("pending", "viewed")
ACTION_STATUSES = ("accepted", "rejected", "completed")
PRIORITY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}

INVESTIGATION_MIN_COST = 1000
INVESTIGATION_TOP_N = 5
PROCESS_CHANGE_MIN_COST = 5000
MARKDOWN_MIN_VALUE = 200
SUPPLIER_SHARE = 0.20
SUPPLIER_MIN_COST = 1000
TRAINING_EFFICIENCY_SCORE = 60

PROCESS_STEPS: dict[str, list[str]] = {
    "expiry": [
        "Enforce FEFO (first-expired, first-out) when restocking shelves",
        "Review order quantities for slow-moving perishables",
        "Run a daily D0/D1 shelf sweep and mark down early",
    ],
    "damage": [
        "Inspect receiving and handling procedures",
        "Review storage conditions and shelf layout",
        "Train staff on handling fragile products",
    ],
}
DEFAULT_PROCESS_STEPS = [
    "Map where this loss type occurs in the store flow",
    "Define an owner and a weekly follow-up",
    "Compare against the best-performing stores",
]


# ── Pure Rules ──────────────────────────────────────────────────────────


def investigation_priority(cost: float) -> str:
    if cost > 10000:
        return "critical"
    if cost > 5000:
        return "high"
    return "medium"


def loss_recommendations(store_losses: pd.DataFrame) -> list[dict[str, Any]]:
    """
    Investigation + process-change candidates from losses aggregated by
    (store_id, store_name, loss_type).
    """
    candidates: list[dict[str, Any]] = []
    if store_losses.empty:
        return candidates

    ranked = store_losses.sort_values("total_cost", ascending=False, kind="stable")
    for _, row in ranked.head(INVESTIGATION_TOP_N).iterrows():
        cost = float(row["total_cost"])
        if cost <= INVESTIGATION_MIN_COST:
            continue
        store_name = row.get("store_name")
        if not isinstance(store_name, str):
            store_name = "store"
        candidates.append(
            {
                "recommendation_type": "investigation",
                "priority": investigation_priority(cost),
                "title": f"Investigate {row['loss_type']} losses at {store_name}",
                "description": (
                    f"{store_name} lost R$ {cost:,.2f} to {row['loss_type']} "
                    f"across {int(row['record_count'])} records."
                ),
                "rationale": "Among the five costliest store/loss-type combinations in the period.",
                "entity_type": "store",
                "entity_id": str(row["store_id"]),
                "entity_name": store_name,
                "estimated_savings": round(cost * 0.30, 2),
                "estimated_loss_reduction": 30.0,
                "confidence_score": 0.85,
                "suggested_action": {
                    "steps": [
                        "Audit the records behind this loss",
                        "Interview the store team about root causes",
                        "Set a reduction target for the next 30 days",
                    ],
                    "loss_type": row["loss_type"],
                },
                "source_data": {"total_cost": cost, "record_count": int(row["record_count"])},
            }
        )

    by_type = ranked.groupby("loss_type")["total_cost"].sum().sort_values(ascending=False)
    if not by_type.empty:
        loss_type = str(by_type.index[0])
        cost = float(by_type.iloc[0])
        if cost > PROCESS_CHANGE_MIN_COST:
            candidates.append(
                {
                    "recommendation_type": "process_change",
                    "priority": "high",
                    "title": f"Improve processes to reduce {loss_type} losses",
                    "description": f"{loss_type} is the costliest loss type network-wide (R$ {cost:,.2f}).",
                    "rationale": "Largest loss type by total cost in the period.",
                    "entity_type": "loss_type",
                    "entity_id": loss_type,
                    "entity_name": loss_type,
                    "estimated_savings": round(cost * 0.25, 2),
                    "estimated_loss_reduction": 25.0,
                    "confidence_score": 0.75,
                    "suggested_action": {"steps": PROCESS_STEPS.get(loss_type, DEFAULT_PROCESS_STEPS)},
                    "source_data": {"total_cost": cost},
                }
            )
    return candidates


def markdown_recommendations(expiring: list[dict]) -> list[dict[str, Any]]:
    """
    expiring: [{store_id, store_name, items, d0_count, value_at_risk}, ...]
    (open reports expiring within 3 days, aggregated per store)
    """
    candidates = []
    for row in expiring:
        value = float(row["value_at_risk"])
        if value < MARKDOWN_MIN_VALUE:
            continue
        candidates.append(
            {
                "recommendation_type": "markdown",
                "priority": "high" if row["d0_count"] > 0 else "medium",
                "title": f"Mark down near-expiry items at {row['store_name']}",
                "description": (
                    f"{row['items']} reports worth R$ {value:,.2f} expire within 3 days "
                    f"({row['d0_count']} today)."
                ),
                "rationale": "Selling at a discount recovers part of the value that would be lost.",
                "entity_type": "store",
                "entity_id": str(row["store_id"]),
                "entity_name": row["store_name"],
                "estimated_savings": round(value * 0.5, 2),
                "estimated_loss_reduction": 50.0,
                "confidence_score": 0.8,
                "suggested_action": {"steps": ["Apply 30-50% markdown", "Move items to a promo end cap"]},
                "action_deadline": date.today() + timedelta(days=1),
                "source_data": {"value_at_risk": value, "items": row["items"], "d0_count": row["d0_count"]},
            }
        )
    return candidates


def supplier_recommendations(supplier_losses: pd.DataFrame, total_cost: float) -> list[dict[str, Any]]:
    """supplier_losses: aggregated by supplier (aggregate_losses output)."""
    candidates = []
    if supplier_losses.empty or total_cost <= 0:
        return candidates
    for _, row in supplier_losses.iterrows():
        supplier = row["supplier"]
        cost = float(row["total_cost"])
        if not supplier or pd.isna(supplier):
            continue
        share = cost / total_cost
        if share < SUPPLIER_SHARE or cost <= SUPPLIER_MIN_COST:
            continue
        candidates.append(
            {
                "recommendation_type": "supplier_review",
                "priority": "high" if share >= 0.4 else "medium",
                "title": f"Review supplier {supplier}",
                "description": f"{supplier} accounts for {share * 100:.1f}% of loss cost (R$ {cost:,.2f}).",
                "rationale": "A single supplier concentrates a large share of losses.",
                "entity_type": "supplier",
                "entity_id": str(supplier),
                "entity_name": str(supplier),
                "estimated_savings": round(cost * 0.20, 2),
                "estimated_loss_reduction": 20.0,
                "confidence_score": 0.75,
                "suggested_action": {
                    "steps": [
                        "Check shelf life on delivery",
                        "Negotiate returns or credit for short-dated stock",
                    ]
                },
                "source_data": {"total_cost": cost, "share": round(share, 4)},
            }
        )
    return candidates


def risk_recommendations(store_scores: list[dict]) -> list[dict[str, Any]]:
    """store_scores: [{entity_id, entity_name, score, level, efficiency_score}, ...]"""
    candidates = []
    for row in store_scores:
        name = row.get("entity_name") or row["entity_id"]
        if row["level"] == "critical":
            candidates.append(
                {
                    "recommendation_type": "audit",
                    "priority": "critical",
                    "title": f"Run a full audit at {name}",
                    "description": f"Risk score {row['score']} is in the critical band.",
                    "rationale": "Critical risk stores concentrate expiry, rupture and financial exposure.",
                    "entity_type": "store",
                    "entity_id": row["entity_id"],
                    "entity_name": name,
                    "estimated_savings": None,
                    "estimated_loss_reduction": 15.0,
                    "confidence_score": 0.8,
                    "suggested_action": {"steps": ["Full shelf audit", "Review open expiry reports"]},
                    "source_data": {"score": row["score"], "level": row["level"]},
                }
            )
        if (row.get("efficiency_score") or 0) >= TRAINING_EFFICIENCY_SCORE:
            candidates.append(
                {
                    "recommendation_type": "training",
                    "priority": "medium",
                    "title": f"Train the team at {name} on expiry handling",
                    "description": "Most expiry reports are resolved only after the product expired.",
                    "rationale": f"Efficiency component is {row['efficiency_score']} (0 = perfect).",
                    "entity_type": "store",
                    "entity_id": row["entity_id"],
                    "entity_name": name,
                    "estimated_savings": None,
                    "estimated_loss_reduction": 10.0,
                    "confidence_score": 0.72,
                    "suggested_action": {"steps": ["Refresh the expiry reporting routine", "Daily D0 checklist"]},
                    "source_data": {"efficiency_score": row["efficiency_score"]},
                }
            )
    return candidates


def dedupe_key(
    recommendation_type: str,
    entity_id: str | None,
    suggested_action: dict | None = None,
) -> tuple[str, str | None, str | None]:
    """Investigations are tracked per (store, loss type); everything else per entity."""
    loss_type = None
    if recommendation_type == "investigation":
        loss_type = (suggested_action or {}).get("loss_type")
    return recommendation_type, entity_id, loss_type


def filter_candidates(
    candidates: list[dict],
    min_confidence: float,
    active_keys: set[tuple[str, str | None, str | None]],
) -> list[dict]:
    """Drop low-confidence candidates and those already pending for the same entity."""
    kept = []
    seen = set(active_keys)
    for candidate in candidates:
        if (candidate.get("confidence_score") or 0) < min_confidence:
            continue
        key = dedupe_key(
            candidate["recommendation_type"], candidate.get("entity_id"), candidate.get("suggested_action")
        )
        if key in seen:
            continue
        seen.add(key)
        kept.append(candidate)
    kept.sort(key=lambda c: (PRIORITY_RANK[c["priority"]], -(c.get("estimated_savings") or 0)))
    return kept


def apply_status_update(
    recommendation: Recommendation,
    status: str,
    user_id: str,
    notes: str | None = None,
    actual_savings: float | None = None,
) -> Recommendation:
    """Move a recommendation to a new status and stamp who/when."""
    if status not in STATUSES:
        raise ValueError(f"Invalid status: {status}")
    now = datetime.utcnow()
    recommendation.status = status
    if status == "viewed":
        recommendation.viewed_at = now
        recommendation.viewed_by = user_id
    elif status in ACTION_STATUSES:
        recommendation.action_taken_at = now
        recommendation.action_taken_by = user_id
        recommendation.action_notes = notes
        if actual_savings is not None:
            recommendation.actual_savings = actual_savings
    recommendation.updated_at = now
    return recommendation


def pending_summary(rows: list[dict]) -> list[dict]:
    """Group pending recommendations by (type, priority)."""
    groups: dict[tuple[str, str], dict] = {}
    for row in rows:
        key = (row["recommendation_type"], row["priority"])
        group = groups.setdefault(
            key,
            {
                "recommendation_type": key[0],
                "priority": key[1],
                "count": 0,
                "total_estimated_savings": 0.0,
                "_confidence": [],
                "nearest_deadline": None,
            },
        )
        group["count"] += 1
        group["total_estimated_savings"] += row.get("estimated_savings") or 0.0
        if row.get("confidence_score") is not None:
            group["_confidence"].append(row["confidence_score"])
        deadline = row.get("action_deadline")
        if deadline and (group["nearest_deadline"] is None or deadline < group["nearest_deadline"]):
            group["nearest_deadline"] = deadline

    summary = []
    for group in groups.values():
        confidences = group.pop("_confidence")
        group["avg_confidence"] = round(sum(confidences) / len(confidences), 2) if confidences else None
        group["total_estimated_savings"] = round(group["total_estimated_savings"], 2)
        summary.append(group)
    summary.sort(key=lambda g: (PRIORITY_RANK[g["priority"]], g["recommendation_type"]))
    return summary


# ── Persistence ────────────────────────────────────────────────────────


async def _expiring_by_store(db: AsyncSession, org_id: uuid.UUID, today: date) -> list[dict]:
    result = await db.execute(
        select(
            ExpiryReport.store_id,
            Store.name,
            ExpiryReport.expiry_date,
            ExpiryReport.quantity,
            ExpiryReport.unit_price,
        )
        .join(Store, Store.store_id == ExpiryReport.store_id)
        .where(
            ExpiryReport.org_id == org_id,
            ExpiryReport.status.in_(OPEN_STATUSES),
            ExpiryReport.expiry_date >= today,
            ExpiryReport.expiry_date <= today + timedelta(days=3),
        )
    )
    stores: dict[str, dict] = {}
    for row in result.all():
        entry = stores.setdefault(
            str(row.store_id),
            {"store_id": str(row.store_id), "store_name": row.name, "items": 0, "d0_count": 0, "value_at_risk": 0.0},
        )
        entry["items"] += 1
        if row.expiry_date == today:
            entry["d0_count"] += 1
        entry["value_at_risk"] += (row.quantity or 0) * (row.unit_price or 0)
    return list(stores.values())


async def generate_recommendations(
    db: AsyncSession,
    org_id: uuid.UUID,
    min_confidence: float = 0.7,
    expiration_days: int = 14,
    import_job_id: uuid.UUID | None = None,
) -> list[Recommendation]:
    """Evaluate every rule and persist the surviving candidates."""
    today = date.today()
    logger.info("recommendations.generate_start", org_id=str(org_id))

    frame = await load_loss_frame(db, org_id, import_job_id=import_job_id)
    candidates: list[dict] = []
    if not frame.empty:
        candidates += loss_recommendations(aggregate_losses(frame, ["store_id", "store_name", "loss_type"]))
        candidates += supplier_recommendations(
            aggregate_losses(frame, ["supplier"]), float(frame["total_cost"].sum())
        )

    candidates += markdown_recommendations(await _expiring_by_store(db, org_id, today))

    score_result = await db.execute(
        select(
            RiskScore.entity_id,
            RiskScore.entity_name,
            RiskScore.score,
            RiskScore.level,
            RiskScore.efficiency_score,
        ).where(RiskScore.org_id == org_id, RiskScore.entity_type == "store")
    )
    candidates += risk_recommendations([dict(r._mapping) for r in score_result.all()])

    active_result = await db.execute(
        select(
            Recommendation.recommendation_type,
            Recommendation.entity_id,
            Recommendation.suggested_action,
        ).where(
            Recommendation.org_id == org_id,
            Recommendation.status.in_(ACTIVE_STATUSES),
        )
    )
    active_keys = {
        dedupe_key(r.recommendation_type, r.entity_id, r.suggested_action) for r in active_result.all()
    }

    expires_at = datetime.utcnow() + timedelta(days=expiration_days)
    created = []
    for candidate in filter_candidates(candidates, min_confidence, active_keys):
        recommendation = Recommendation(
            org_id=org_id,
            status="pending",
            expires_at=expires_at,
            **candidate,
        )
        db.add(recommendation)
        created.append(recommendation)
    await db.commit()

    logger.info(
        "recommendations.generate_complete",
        org_id=str(org_id),
        candidates=len(candidates),
        created=len(created),
    )
    return created


async def expire_stale(db: AsyncSession, org_id: uuid.UUID) -> int:
    """Mark pending/viewed recommendations past expires_at as expired."""
    now = datetime.utcnow()
    result = await db.execute(
        update(Recommendation)
        .where(
            Recommendation.org_id == org_id,
            Recommendation.status.in_(ACTIVE_STATUSES),
            Recommendation.expires_at.is_not(None),
            Recommendation.expires_at < now,
        )
        .values(status="expired", updated_at=now)
    )
    await db.commit()
    expired = result.rowcount or 0
    if expired:
        logger.info("recommendations.expired", org_id=str(org_id), count=expired)
    return expired
