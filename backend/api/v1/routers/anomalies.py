"""
Anomalies API — statistically unusual loss and expiry behaviour.

Endpoints:
  GET   /api/v1/ml/anomalies          — List anomalies (or ?summary=true for open summary)
  POST  /api/v1/ml/anomalies/detect   — Run detection for one entity/metric pair
  PATCH /api/v1/ml/anomalies/{id}     — Update investigation status
"""

import uuid
from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_org_id, get_tenant_db, require_feature
from db.models import Anomaly
from ml.anomaly import ENTITY_KEYS, METRIC_TYPES, detect_anomalies, summarize_open_anomalies
from ml.settings import get_ml_settings

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/v1/ml/anomalies",
    tags=["anomalies"],
    dependencies=[Depends(require_feature("has_ml"))],
)

ANOMALY_STATUSES = ("open", "investigating", "resolved", "false_positive")


class DetectRequest(BaseModel):
    entity_type: str | None = None
    metric_type: str | None = None
    threshold: float | None = None
    method: str = "zscore"
    lookback_days: int = 30


class AnomalyUpdate(BaseModel):
    status: str
    resolution_notes: str | None = None


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.get("")
async def list_anomalies(
    status: str | None = None,
    severity: str | None = None,
    anomaly_type: str | None = None,
    entity_type: str | None = None,
    summary: bool = False,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> Any:
    """
    List detected anomalies, newest first.

    Query params:
      - status / severity / anomaly_type / entity_type: filters
      - summary: when true, return open anomalies grouped by
        (type, severity, entity_type) with count, avg |deviation| and
        latest detection instead of individual rows
    """
    if summary:
        result = await db.execute(select(Anomaly).where(Anomaly.org_id == org_id, Anomaly.status == "open"))
        return summarize_open_anomalies([serialize_anomaly(a) for a in result.scalars().all()])

    query = select(Anomaly).where(Anomaly.org_id == org_id)
    if status:
        query = query.where(Anomaly.status == status)
    if severity:
        query = query.where(Anomaly.severity == severity)
    if anomaly_type:
        query = query.where(Anomaly.anomaly_type == anomaly_type)
    if entity_type:
        query = query.where(Anomaly.entity_type == entity_type)
    result = await db.execute(query.order_by(Anomaly.detected_at.desc()).limit(limit))
    return [serialize_anomaly(a) for a in result.scalars().all()]


@router.post("/detect")
async def run_detection(
    body: DetectRequest,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    """Detect anomalies for one (entity_type, metric_type) pair and persist them."""
    if not body.entity_type or not body.metric_type:
        raise HTTPException(status_code=400, detail="entity_type and metric_type are required")
    if body.entity_type not in ENTITY_KEYS:
        raise HTTPException(status_code=400, detail=f"Invalid entity_type: {body.entity_type}")
    if body.metric_type not in METRIC_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid metric_type: {body.metric_type}")

    threshold = body.threshold
    if threshold is None:
        threshold = (await get_ml_settings(db, org_id))["anomalies"]["zscore_threshold"]

    try:
        created = await detect_anomalies(
            db,
            org_id,
            body.entity_type,
            body.metric_type,
            threshold=threshold,
            method=body.method,
            lookback_days=body.lookback_days,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return {
        "success": True,
        "anomalies_detected": len(created),
        "anomalies": [serialize_anomaly(a) for a in created],
    }


@router.patch("/{anomaly_id}")
async def update_anomaly(
    anomaly_id: uuid.UUID,
    body: AnomalyUpdate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    """Move an anomaly through open → investigating → resolved / false_positive."""
    if body.status not in ANOMALY_STATUSES:
        raise HTTPException(status_code=400, detail=f"Invalid status: {body.status}")

    result = await db.execute(select(Anomaly).where(Anomaly.anomaly_id == anomaly_id, Anomaly.org_id == org_id))
    anomaly = result.scalar_one_or_none()
    if not anomaly:
        raise HTTPException(status_code=404, detail="Anomaly not found")

    anomaly.status = body.status
    if body.status in ("resolved", "false_positive"):
        anomaly.resolved_at = datetime.utcnow()
        anomaly.resolved_by = user.get("sub")
        anomaly.resolution_notes = body.resolution_notes
    await db.commit()

    logger.info("anomaly.status_updated", org_id=str(org_id), anomaly_id=str(anomaly_id), status=body.status)
    return serialize_anomaly(anomaly)


def serialize_anomaly(anomaly: Anomaly) -> dict[str, Any]:
    return {
        "anomaly_id": str(anomaly.anomaly_id),
        "anomaly_type": anomaly.anomaly_type,
        "severity": anomaly.severity,
        "entity_type": anomaly.entity_type,
        "entity_id": anomaly.entity_id,
        "entity_name": anomaly.entity_name,
        "metric_type": anomaly.metric_type,
        "detected_value": anomaly.detected_value,
        "expected_value": anomaly.expected_value,
        "expected_range_lower": anomaly.expected_range_lower,
        "expected_range_upper": anomaly.expected_range_upper,
        "deviation_score": anomaly.deviation_score,
        "detection_method": anomaly.detection_method,
        "detected_at": anomaly.detected_at,
        "period_start": anomaly.period_start,
        "period_end": anomaly.period_end,
        "status": anomaly.status,
        "resolved_at": anomaly.resolved_at,
        "resolved_by": anomaly.resolved_by,
        "resolution_notes": anomaly.resolution_notes,
        "metadata": anomaly.anomaly_metadata or {},
    }
