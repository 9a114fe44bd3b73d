"""
Recommendations API — prioritized actions to reduce losses.

Endpoints:
  GET   /api/v1/ml/recommendations                 — List (priority, then newest)
  GET   /api/v1/ml/recommendations/summary         — Pending summary per type/priority
  POST  /api/v1/ml/recommendations/generate        — Evaluate rules now
  PATCH /api/v1/ml/recommendations/{id}            — Status update
  POST  /api/v1/ml/recommendations/{id}/feedback   — User feedback
"""

import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_org_id, get_tenant_db, require_feature
from db.models import Recommendation, RecommendationFeedback
from ml.recommendations import PRIORITY_RANK, apply_status_update, generate_recommendations, pending_summary
from ml.settings import get_ml_settings

logger = structlog.get_logger()

router = APIRouter(
    prefix="/api/v1/ml/recommendations",
    tags=["recommendations"],
    dependencies=[Depends(require_feature("has_ml"))],
)

FEEDBACK_TYPES = ("helpful", "not_helpful", "irrelevant", "already_done")

priority_order = case(PRIORITY_RANK, value=Recommendation.priority, else_=len(PRIORITY_RANK))


class GenerateRequest(BaseModel):
    import_job_id: uuid.UUID | None = None
    min_confidence: float | None = Field(None, ge=0, le=1)


class RecommendationUpdate(BaseModel):
    status: str
    notes: str | None = None
    actual_savings: float | None = None


class FeedbackCreate(BaseModel):
    feedback_type: str
    comment: str | None = None


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.get("")
async def list_recommendations(
    status: str | None = None,
    recommendation_type: str | None = None,
    priority: str | None = None,
    entity_type: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> list[dict[str, Any]]:
    query = select(Recommendation).where(Recommendation.org_id == org_id)
    if status:
        query = query.where(Recommendation.status == status)
    if recommendation_type:
        query = query.where(Recommendation.recommendation_type == recommendation_type)
    if priority:
        query = query.where(Recommendation.priority == priority)
    if entity_type:
        query = query.where(Recommendation.entity_type == entity_type)
    result = await db.execute(query.order_by(priority_order, Recommendation.created_at.desc()).limit(limit))
    return [serialize_recommendation(r) for r in result.scalars().all()]


@router.get("/summary")
async def recommendation_summary(
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> list[dict[str, Any]]:
    result = await db.execute(
        select(Recommendation).where(Recommendation.org_id == org_id, Recommendation.status == "pending")
    )
    return pending_summary([serialize_recommendation(r) for r in result.scalars().all()])


@router.post("/generate")
async def generate(
    body: GenerateRequest | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    """Evaluate every rule against current data using the org's ML settings."""
    body = body or GenerateRequest()
    settings = (await get_ml_settings(db, org_id))["recommendations"]
    min_confidence = body.min_confidence if body.min_confidence is not None else settings["min_confidence"]

    created = await generate_recommendations(
        db,
        org_id,
        min_confidence=min_confidence,
        expiration_days=settings["expiration_days"],
        import_job_id=body.import_job_id,
    )
    return {
        "success": True,
        "recommendations_created": len(created),
        "recommendations": [serialize_recommendation(r) for r in created],
    }


@router.patch("/{recommendation_id}")
async def update_recommendation(
    recommendation_id: uuid.UUID,
    body: RecommendationUpdate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    recommendation = await _get_recommendation_or_404(db, org_id, recommendation_id)
    try:
        apply_status_update(recommendation, body.status, user.get("sub", "unknown"), body.notes, body.actual_savings)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    await db.commit()

    logger.info(
        "recommendations.status_updated",
        org_id=str(org_id),
        recommendation_id=str(recommendation_id),
        status=body.status,
    )
    return serialize_recommendation(recommendation)


@router.post("/{recommendation_id}/feedback", status_code=201)
async def submit_feedback(
    recommendation_id: uuid.UUID,
    body: FeedbackCreate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
    user: dict = Depends(get_current_user),
) -> dict[str, Any]:
    if body.feedback_type not in FEEDBACK_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid feedback_type: {body.feedback_type}")
    await _get_recommendation_or_404(db, org_id, recommendation_id)

    feedback = RecommendationFeedback(
        org_id=org_id,
        recommendation_id=recommendation_id,
        user_id=user.get("sub", "unknown"),
        feedback_type=body.feedback_type,
        comment=body.comment,
    )
    db.add(feedback)
    await db.commit()
    return {
        "feedback_id": str(feedback.feedback_id),
        "recommendation_id": str(recommendation_id),
        "feedback_type": feedback.feedback_type,
        "comment": feedback.comment,
    }


async def _get_recommendation_or_404(
    db: AsyncSession, org_id: uuid.UUID, recommendation_id: uuid.UUID
) -> Recommendation:
    result = await db.execute(
        select(Recommendation).where(
            Recommendation.recommendation_id == recommendation_id,
            Recommendation.org_id == org_id,
        )
    )
    recommendation = result.scalar_one_or_none()
    if not recommendation:
        raise HTTPException(status_code=404, detail="Recommendation not found")
    return recommendation


def serialize_recommendation(rec: Recommendation) -> dict[str, Any]:
    return {
        "recommendation_id": str(rec.recommendation_id),
        "recommendation_type": rec.recommendation_type,
        "priority": rec.priority,
        "title": rec.title,
        "description": rec.description,
        "rationale": rec.rationale,
        "entity_type": rec.entity_type,
        "entity_id": rec.entity_id,
        "entity_name": rec.entity_name,
        "estimated_savings": rec.estimated_savings,
        "estimated_loss_reduction": rec.estimated_loss_reduction,
        "confidence_score": rec.confidence_score,
        "suggested_action": rec.suggested_action or {},
        "action_deadline": rec.action_deadline,
        "status": rec.status,
        "viewed_at": rec.viewed_at,
        "viewed_by": rec.viewed_by,
        "action_taken_at": rec.action_taken_at,
        "action_taken_by": rec.action_taken_by,
        "action_notes": rec.action_notes,
        "actual_savings": rec.actual_savings,
        "expires_at": rec.expires_at,
        "created_at": rec.created_at,
    }
