"""
Predictions API — short-horizon loss and expiry forecasts.

Endpoints:
  GET  /api/v1/ml/predictions           — List predictions
  POST /api/v1/ml/predictions/generate  — Regenerate one prediction type
  GET  /api/v1/ml/predictions/accuracy  — Weekly accuracy per type
"""

import uuid
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_org_id, get_tenant_db, require_feature
from core.config import get_settings
from db.models import Prediction, Store
from ml.forecast import PREDICTION_TYPES, generate_predictions, get_accuracy

router = APIRouter(
    prefix="/api/v1/ml/predictions",
    tags=["predictions"],
    dependencies=[Depends(require_feature("has_ml"))],
)


class GenerateRequest(BaseModel):
    prediction_type: str = "loss_amount"
    horizon_days: int = Field(default_factory=lambda: get_settings().prediction_horizon_days, ge=1, le=90)
    store_id: uuid.UUID | None = None


# ── Endpoints ───────────────────────────────────────────────────────────────


@router.get("")
async def list_predictions(
    prediction_type: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> list[dict[str, Any]]:
    """Predictions ordered by target date."""
    query = select(Prediction).where(Prediction.org_id == org_id)
    if prediction_type:
        query = query.where(Prediction.prediction_type == prediction_type)
    if entity_type:
        query = query.where(Prediction.entity_type == entity_type)
    if entity_id:
        query = query.where(Prediction.entity_id == entity_id)
    if start_date:
        query = query.where(Prediction.target_date >= start_date)
    if end_date:
        query = query.where(Prediction.target_date <= end_date)
    result = await db.execute(query.order_by(Prediction.target_date, Prediction.prediction_type).limit(limit))
    return [serialize_prediction(p) for p in result.scalars().all()]


@router.post("/generate")
async def generate(
    body: GenerateRequest,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    if body.prediction_type not in PREDICTION_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid prediction_type: {body.prediction_type}")
    if body.store_id is not None:
        store = await db.execute(select(Store.store_id).where(Store.store_id == body.store_id, Store.org_id == org_id))
        if store.scalar_one_or_none() is None:
            raise HTTPException(status_code=404, detail="Store not found")

    predictions = await generate_predictions(
        db, org_id, body.prediction_type, horizon_days=body.horizon_days, store_id=body.store_id
    )
    return {
        "success": True,
        "predictions_created": len(predictions),
        "predictions": [serialize_prediction(p) for p in predictions],
    }


@router.get("/accuracy")
async def prediction_accuracy(
    weeks: int = Query(8, ge=1, le=52),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> list[dict[str, Any]]:
    return await get_accuracy(db, org_id, weeks=weeks)


def serialize_prediction(prediction: Prediction) -> dict[str, Any]:
    return {
        "prediction_id": str(prediction.prediction_id),
        "prediction_type": prediction.prediction_type,
        "entity_type": prediction.entity_type,
        "entity_id": prediction.entity_id,
        "target_date": prediction.target_date,
        "horizon_days": prediction.horizon_days,
        "predicted_value": prediction.predicted_value,
        "confidence_lower": prediction.confidence_lower,
        "confidence_upper": prediction.confidence_upper,
        "confidence_level": prediction.confidence_level,
        "actual_value": prediction.actual_value,
        "error": prediction.error,
        "model_version": prediction.model_version,
        "features_used": prediction.features_used or [],
        "created_at": prediction.created_at,
    }
