"""
Risk Scoring Router — scores, dashboard, thresholds and risk alerts.

All endpoints require the `has_risk_scoring` plan feature. Recomputing
scores and changing thresholds is restricted to network administrators.
"""

from datetime import date, datetime, timedelta
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from redis.exceptions import RedisError
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts.publisher import publish_risk_alerts
from api.deps import get_current_user, get_org_id, get_tenant_db, require_admin, require_feature
from db.models import ENTITY_TYPES, RiskAlert, RiskScore, RiskScoreHistory, RiskThresholds
from ml.risk_scoring import (
    ThresholdConfig,
    level_distribution,
    refresh_risk_scores,
    score_change,
    summarize_scores,
    trend_points,
    validate_thresholds,
    validate_weights,
)

logger = structlog.get_logger()
router = APIRouter(
    prefix="/api/v1/risk-scoring",
    tags=["risk-scoring"],
    dependencies=[Depends(require_feature("has_risk_scoring"))],
)


# ─── Schemas ────────────────────────────────────────────────────────────────


class RiskScoreResponse(BaseModel):
    score_id: UUID
    entity_type: str
    entity_id: str
    entity_name: str | None
    score: int
    level: str
    trend: str
    previous_score: int | None
    expiry_score: int
    rupture_score: int
    recurrence_score: int
    financial_score: int
    efficiency_score: int
    metrics: dict | None
    period_start: date | None
    period_end: date | None
    calculated_at: datetime
    version: int

    model_config = {"from_attributes": True}


class RiskAlertResponse(BaseModel):
    alert_id: UUID
    store_id: UUID | None
    entity_type: str
    entity_id: str
    entity_name: str | None
    alert_type: str
    severity: str
    title: str
    description: str | None
    current_score: int | None
    previous_score: int | None
    score_change: int | None
    is_active: bool
    acknowledged_at: datetime | None
    acknowledged_by: str | None
    resolved_at: datetime | None
    resolved_by: str | None
    created_at: datetime
    expires_at: datetime | None

    model_config = {"from_attributes": True}


class ThresholdsResponse(BaseModel):
    low_max: int
    medium_max: int
    high_max: int
    weight_expiry: int
    weight_rupture: int
    weight_recurrence: int
    weight_financial: int
    weight_efficiency: int
    alert_on_critical: bool
    alert_on_score_increase: int
    alert_on_trend_change: bool


class ThresholdsUpdate(BaseModel):
    low_max: int | None = Field(None, ge=0, le=100)
    medium_max: int | None = Field(None, ge=0, le=100)
    high_max: int | None = Field(None, ge=0, le=100)
    weight_expiry: int | None = Field(None, ge=0, le=100)
    weight_rupture: int | None = Field(None, ge=0, le=100)
    weight_recurrence: int | None = Field(None, ge=0, le=100)
    weight_financial: int | None = Field(None, ge=0, le=100)
    weight_efficiency: int | None = Field(None, ge=0, le=100)
    alert_on_critical: bool | None = None
    alert_on_score_increase: int | None = Field(None, ge=1, le=100)
    alert_on_trend_change: bool | None = None


class AlertActionRequest(BaseModel):
    notes: str | None = None


# ─── Scores ─────────────────────────────────────────────────────────────────


@router.get("/")
async def list_risk_scores(
    entity_type: str | None = None,
    level: list[str] | None = Query(None),
    trend: list[str] | None = Query(None),
    min_score: int | None = Query(None, ge=0, le=100),
    max_score: int | None = Query(None, ge=0, le=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Paginated scores, highest first."""
    conditions = [RiskScore.org_id == org_id]
    if entity_type:
        conditions.append(RiskScore.entity_type == entity_type)
    if level:
        conditions.append(RiskScore.level.in_(level))
    if trend:
        conditions.append(RiskScore.trend.in_(trend))
    if min_score is not None:
        conditions.append(RiskScore.score >= min_score)
    if max_score is not None:
        conditions.append(RiskScore.score <= max_score)

    total = (await db.execute(select(func.count()).select_from(RiskScore).where(*conditions))).scalar_one()
    result = await db.execute(
        select(RiskScore)
        .where(*conditions)
        .order_by(RiskScore.score.desc(), RiskScore.entity_id)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return {
        "items": [RiskScoreResponse.model_validate(row) for row in result.scalars().all()],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/dashboard")
async def risk_dashboard(
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Summary, top rankings per entity type, recent alerts and 30-day trend."""
    result = await db.execute(select(RiskScore).where(RiskScore.org_id == org_id))
    scores = result.scalars().all()

    summary = summarize_scores(
        [{"score": s.score, "level": s.level, "trend": s.trend} for s in scores if s.entity_type in ("store", "product")]
    )

    rankings = {}
    for entity_type in ("store", "product", "category"):
        ranked = sorted(
            (s for s in scores if s.entity_type == entity_type), key=lambda s: (-s.score, s.entity_id)
        )[:10]
        rankings[f"top_{entity_type}s" if entity_type != "category" else "top_categories"] = [
            {
                "rank": position,
                "entity_id": s.entity_id,
                "entity_name": s.entity_name,
                "score": s.score,
                "level": s.level,
                "trend": s.trend,
                "change": score_change(s.score, s.previous_score),
            }
            for position, s in enumerate(ranked, start=1)
        ]

    alerts_result = await db.execute(
        select(RiskAlert)
        .where(RiskAlert.org_id == org_id, RiskAlert.is_active.is_(True))
        .order_by(RiskAlert.created_at.desc())
        .limit(10)
    )

    since = date.today() - timedelta(days=30)
    history_result = await db.execute(
        select(RiskScoreHistory.recorded_on, RiskScoreHistory.score, RiskScoreHistory.level).where(
            RiskScoreHistory.org_id == org_id,
            RiskScoreHistory.entity_type.in_(["store", "product"]),
            RiskScoreHistory.recorded_on >= since,
        )
    )

    return {
        "summary": summary,
        **rankings,
        "recent_alerts": [RiskAlertResponse.model_validate(a) for a in alerts_result.scalars().all()],
        "trend": trend_points([dict(r._mapping) for r in history_result.all()]),
    }


@router.get("/distribution")
async def risk_distribution(
    entity_type: str = Query("store"),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Per-level counts and integer percentages for one entity type."""
    if entity_type not in ENTITY_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid entity_type: {entity_type}")
    result = await db.execute(
        select(RiskScore.level).where(RiskScore.org_id == org_id, RiskScore.entity_type == entity_type)
    )
    levels = [row.level for row in result.all()]
    return {"entity_type": entity_type, "total": len(levels), "distribution": level_distribution(levels)}


@router.get("/entities/{entity_type}/{entity_id}", response_model=RiskScoreResponse)
async def get_entity_score(
    entity_type: str,
    entity_id: str,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Latest score for one entity."""
    result = await db.execute(
        select(RiskScore).where(
            RiskScore.org_id == org_id,
            RiskScore.entity_type == entity_type,
            RiskScore.entity_id == entity_id,
        )
    )
    score = result.scalar_one_or_none()
    if not score:
        raise HTTPException(status_code=404, detail="Risk score not found")
    return score


@router.get("/entities/{entity_type}/{entity_id}/history")
async def get_entity_history(
    entity_type: str,
    entity_id: str,
    days: int = Query(90, ge=1, le=365),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Daily score history, oldest first."""
    result = await db.execute(
        select(RiskScoreHistory)
        .where(
            RiskScoreHistory.org_id == org_id,
            RiskScoreHistory.entity_type == entity_type,
            RiskScoreHistory.entity_id == entity_id,
            RiskScoreHistory.recorded_on >= date.today() - timedelta(days=days),
        )
        .order_by(RiskScoreHistory.recorded_on)
    )
    return [
        {
            "date": row.recorded_on.isoformat(),
            "score": row.score,
            "level": row.level,
            "expiry_score": row.expiry_score,
            "rupture_score": row.rupture_score,
            "recurrence_score": row.recurrence_score,
            "financial_score": row.financial_score,
            "efficiency_score": row.efficiency_score,
        }
        for row in result.scalars().all()
    ]


@router.post("/refresh")
async def refresh_scores(
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
    _admin: dict = Depends(require_admin),
):
    """Recompute every score for the organization and publish new alerts."""
    result = await refresh_risk_scores(db, org_id)
    try:
        await publish_risk_alerts(result["alerts"])
    except (RedisError, OSError) as exc:
        logger.warning("risk.publish_failed", org_id=str(org_id), error=str(exc))
    return {
        "success": True,
        "scores_updated": result["scores_updated"],
        "alerts_created": result["alerts_created"],
    }


# ─── Thresholds ─────────────────────────────────────────────────────────────


@router.get("/thresholds", response_model=ThresholdsResponse)
async def get_risk_thresholds(
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Current thresholds (defaults when never configured)."""
    return _thresholds_payload(ThresholdConfig.from_row(await db.get(RiskThresholds, org_id)))


@router.put("/thresholds", response_model=ThresholdsResponse)
async def update_risk_thresholds(
    update: ThresholdsUpdate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
    user: dict = Depends(require_admin),
):
    """Partial update; the result must keep ordered levels and weights summing to 100."""
    row = await db.get(RiskThresholds, org_id)
    merged = {**_thresholds_payload(ThresholdConfig.from_row(row)), **update.model_dump(exclude_none=True)}

    try:
        validate_thresholds(merged["low_max"], merged["medium_max"], merged["high_max"])
        validate_weights(
            {
                "expiry": merged["weight_expiry"],
                "rupture": merged["weight_rupture"],
                "recurrence": merged["weight_recurrence"],
                "financial": merged["weight_financial"],
                "efficiency": merged["weight_efficiency"],
            }
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    if row is None:
        row = RiskThresholds(org_id=org_id)
        db.add(row)
    for field, value in merged.items():
        setattr(row, field, value)
    row.updated_by = user.get("sub")
    row.updated_at = datetime.utcnow()
    await db.commit()

    logger.info("risk.thresholds_updated", org_id=str(org_id), updated_by=row.updated_by)
    return merged


def _thresholds_payload(config: ThresholdConfig) -> dict:
    return {
        "low_max": config.low_max,
        "medium_max": config.medium_max,
        "high_max": config.high_max,
        "weight_expiry": config.weights["expiry"],
        "weight_rupture": config.weights["rupture"],
        "weight_recurrence": config.weights["recurrence"],
        "weight_financial": config.weights["financial"],
        "weight_efficiency": config.weights["efficiency"],
        "alert_on_critical": config.alert_on_critical,
        "alert_on_score_increase": config.alert_on_score_increase,
        "alert_on_trend_change": config.alert_on_trend_change,
    }


# ─── Alerts ─────────────────────────────────────────────────────────────────


@router.get("/alerts", response_model=list[RiskAlertResponse])
async def list_risk_alerts(
    severity: str | None = None,
    entity_type: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Active, unexpired alerts, newest first."""
    query = select(RiskAlert).where(
        RiskAlert.org_id == org_id,
        RiskAlert.is_active.is_(True),
        or_(RiskAlert.expires_at.is_(None), RiskAlert.expires_at > datetime.utcnow()),
    )
    if severity:
        query = query.where(RiskAlert.severity == severity)
    if entity_type:
        query = query.where(RiskAlert.entity_type == entity_type)
    result = await db.execute(query.order_by(RiskAlert.created_at.desc()).limit(limit))
    return result.scalars().all()


@router.post("/alerts/{alert_id}/acknowledge", response_model=RiskAlertResponse)
async def acknowledge_risk_alert(
    alert_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
    user: dict = Depends(get_current_user),
):
    alert = await _get_alert_or_404(db, org_id, alert_id)
    alert.acknowledged_at = datetime.utcnow()
    alert.acknowledged_by = user.get("sub")
    await db.commit()
    await db.refresh(alert)
    return alert


@router.post("/alerts/{alert_id}/resolve", response_model=RiskAlertResponse)
async def resolve_risk_alert(
    alert_id: UUID,
    body: AlertActionRequest | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
    user: dict = Depends(get_current_user),
):
    alert = await _get_alert_or_404(db, org_id, alert_id)
    alert.is_active = False
    alert.resolved_at = datetime.utcnow()
    alert.resolved_by = user.get("sub")
    if body and body.notes:
        alert.alert_metadata = {**(alert.alert_metadata or {}), "resolution_notes": body.notes}
    await db.commit()
    await db.refresh(alert)
    return alert


async def _get_alert_or_404(db: AsyncSession, org_id: UUID, alert_id: UUID) -> RiskAlert:
    result = await db.execute(select(RiskAlert).where(RiskAlert.alert_id == alert_id, RiskAlert.org_id == org_id))
    alert = result.scalar_one_or_none()
    if not alert:
        raise HTTPException(status_code=404, detail="Risk alert not found")
    return alert
