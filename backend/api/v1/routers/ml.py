"""
ML Hub API — combined intelligence dashboard, loss analysis and ML settings.

Endpoints:
  POST /api/v1/ml/analyze    — Run every intelligence stage over imported losses
  GET  /api/v1/ml/dashboard  — Clusters, predictions, patterns, events, recs, anomalies
  GET  /api/v1/ml/settings   — Organization ML settings (defaults filled in)
  PUT  /api/v1/ml/settings   — Merge an update per section
"""

import uuid
from datetime import date
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_org_id, get_tenant_db, require_admin, require_feature
from api.v1.routers.anomalies import serialize_anomaly
from api.v1.routers.predictions import serialize_prediction
from api.v1.routers.recommendations import priority_order, serialize_recommendation
from api.v1.routers.seasonality import serialize_pattern
from db.models import Anomaly, Cluster, Prediction, Recommendation, SeasonalPattern
from ml.anomaly import summarize_open_anomalies
from ml.forecast import get_accuracy
from ml.loss_analysis import analyze_imported_data
from ml.recommendations import ACTIVE_STATUSES, pending_summary
from ml.seasonality import upcoming_events
from ml.settings import get_ml_settings, update_ml_settings

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/v1/ml",
    tags=["ml"],
    dependencies=[Depends(require_feature("has_ml"))],
)

ACTIVE_PATTERN_STRENGTH = 0.5


class AnalyzeRequest(BaseModel):
    import_job_id: uuid.UUID | None = None


class SettingsUpdate(BaseModel):
    clustering: dict[str, Any] | None = None
    predictions: dict[str, Any] | None = None
    seasonality: dict[str, Any] | None = None
    recommendations: dict[str, Any] | None = None
    anomalies: dict[str, Any] | None = None


# ── Analysis ────────────────────────────────────────────────────────────────


@router.post("/analyze")
async def analyze(
    body: AnalyzeRequest | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    """Run recommendations, anomalies, clustering and predictions over loss data."""
    import_job_id = body.import_job_id if body else None
    result = await analyze_imported_data(db, org_id, import_job_id=import_job_id)
    return {"success": result["records_analyzed"] > 0, **result}


# ── Dashboard ───────────────────────────────────────────────────────────────


@router.get("/dashboard")
async def ml_dashboard(
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    clusters_result = await db.execute(
        select(Cluster)
        .where(Cluster.org_id == org_id, Cluster.cluster_type.in_(["store", "product"]))
        .order_by(Cluster.avg_risk_score.desc())
    )
    clusters = clusters_result.scalars().all()

    predictions_result = await db.execute(
        select(Prediction)
        .where(Prediction.org_id == org_id, Prediction.target_date >= date.today())
        .order_by(Prediction.target_date)
        .limit(10)
    )

    patterns_result = await db.execute(
        select(SeasonalPattern)
        .where(SeasonalPattern.org_id == org_id, SeasonalPattern.strength >= ACTIVE_PATTERN_STRENGTH)
        .order_by(SeasonalPattern.strength.desc())
    )

    recs_result = await db.execute(
        select(Recommendation).where(
            Recommendation.org_id == org_id,
            Recommendation.status.in_(ACTIVE_STATUSES),
        )
    )
    active_recs = [serialize_recommendation(r) for r in recs_result.scalars().all()]
    recent_result = await db.execute(
        select(Recommendation)
        .where(Recommendation.org_id == org_id, Recommendation.status.in_(ACTIVE_STATUSES))
        .order_by(priority_order, Recommendation.created_at.desc())
        .limit(10)
    )
    recent_recs = [serialize_recommendation(r) for r in recent_result.scalars().all()]

    anomalies_result = await db.execute(
        select(Anomaly).where(Anomaly.org_id == org_id, Anomaly.status == "open").order_by(Anomaly.detected_at.desc())
    )
    open_anomalies = [serialize_anomaly(a) for a in anomalies_result.scalars().all()]

    return {
        "clusters": {
            cluster_type: [
                {
                    "cluster_id": str(c.cluster_id),
                    "cluster_name": c.cluster_name,
                    "cluster_label": c.cluster_label,
                    "member_count": c.member_count,
                    "avg_risk_score": c.avg_risk_score,
                }
                for c in clusters
                if c.cluster_type == cluster_type
            ]
            for cluster_type in ("store", "product")
        },
        "predictions": {
            "upcoming": [serialize_prediction(p) for p in predictions_result.scalars().all()],
            "accuracy": await get_accuracy(db, org_id),
        },
        "seasonality": {
            "active_patterns": [serialize_pattern(p) for p in patterns_result.scalars().all()],
            "upcoming_events": await upcoming_events(db, org_id, days=30),
        },
        "recommendations": {
            "summary": pending_summary([r for r in active_recs if r["status"] == "pending"]),
            "recent": recent_recs,
            "total_estimated_impact": round(sum(r["estimated_savings"] or 0 for r in active_recs), 2),
        },
        "anomalies": {
            "summary": summarize_open_anomalies(open_anomalies),
            "recent": open_anomalies[:10],
        },
    }


# ── Settings ────────────────────────────────────────────────────────────────


@router.get("/settings")
async def get_settings_endpoint(
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    return await get_ml_settings(db, org_id)


@router.put("/settings")
async def update_settings_endpoint(
    body: SettingsUpdate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
    user: dict = Depends(require_admin),
) -> dict[str, Any]:
    merged = await update_ml_settings(db, org_id, body.model_dump(exclude_none=True))
    logger.info("ml.settings_updated", org_id=str(org_id), updated_by=user.get("sub"))
    return merged
