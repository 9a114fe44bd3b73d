"""
Seasonality API — detected patterns and the retail event calendar.

Endpoints:
  GET  /api/v1/ml/seasonality/patterns         — Stored patterns
  POST /api/v1/ml/seasonality/patterns/detect  — Detect weekly/monthly patterns
  GET  /api/v1/ml/seasonality/events          — Upcoming events (DB + built-in calendar)
  POST /api/v1/ml/seasonality/events          — Create an organization event
"""

import uuid
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_org_id, get_tenant_db, require_feature
from db.models import CalendarEvent, SeasonalPattern
from ml.seasonality import detect_patterns, upcoming_events
from ml.settings import get_ml_settings

router = APIRouter(
    prefix="/api/v1/ml/seasonality",
    tags=["seasonality"],
    dependencies=[Depends(require_feature("has_ml"))],
)

EVENT_TYPES = ("holiday", "promotion", "season", "custom")
RECURRENCES = ("none", "yearly", "monthly", "weekly")
PATTERN_METRICS = ("loss_value", "loss_volume", "expiry_count")


class DetectRequest(BaseModel):
    metric_type: str = "loss_value"
    lookback_days: int = Field(180, ge=14, le=730)


class EventCreate(BaseModel):
    event_name: str = Field(..., min_length=1, max_length=255)
    event_type: str = "custom"
    event_date: date
    recurrence: str = "none"
    impact_factor: float = Field(1.0, gt=0)
    affects_categories: list[str] = []
    notes: str | None = None


# ── Patterns ────────────────────────────────────────────────────────────────


@router.get("/patterns")
async def list_patterns(
    entity_type: str | None = None,
    metric_type: str | None = None,
    min_strength: float = Query(0.0, ge=0, le=1),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> list[dict[str, Any]]:
    query = select(SeasonalPattern).where(
        SeasonalPattern.org_id == org_id,
        SeasonalPattern.strength >= min_strength,
    )
    if entity_type:
        query = query.where(SeasonalPattern.entity_type == entity_type)
    if metric_type:
        query = query.where(SeasonalPattern.metric_type == metric_type)
    result = await db.execute(query.order_by(SeasonalPattern.strength.desc()))
    return [serialize_pattern(p) for p in result.scalars().all()]


@router.post("/patterns/detect")
async def detect(
    body: DetectRequest,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    if body.metric_type not in PATTERN_METRICS:
        raise HTTPException(status_code=400, detail=f"Invalid metric_type: {body.metric_type}")
    min_strength = (await get_ml_settings(db, org_id))["seasonality"]["min_pattern_strength"]
    patterns = await detect_patterns(
        db, org_id, body.metric_type, lookback_days=body.lookback_days, min_strength=min_strength
    )
    return {
        "success": True,
        "patterns_detected": len(patterns),
        "patterns": [serialize_pattern(p) for p in patterns],
    }


# ── Events ──────────────────────────────────────────────────────────────────


@router.get("/events")
async def list_upcoming_events(
    days: int = Query(30, ge=1, le=365),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> list[dict[str, Any]]:
    return await upcoming_events(db, org_id, days=days)


@router.post("/events", status_code=201)
async def create_event(
    body: EventCreate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: uuid.UUID = Depends(get_org_id),
) -> dict[str, Any]:
    if body.event_type not in EVENT_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid event_type: {body.event_type}")
    if body.recurrence not in RECURRENCES:
        raise HTTPException(status_code=400, detail=f"Invalid recurrence: {body.recurrence}")

    event = CalendarEvent(org_id=org_id, **body.model_dump())
    db.add(event)
    await db.commit()
    return {
        "event_id": str(event.event_id),
        "event_name": event.event_name,
        "event_type": event.event_type,
        "event_date": event.event_date,
        "recurrence": event.recurrence,
        "impact_factor": event.impact_factor,
        "affects_categories": event.affects_categories or [],
        "notes": event.notes,
        "is_active": event.is_active,
    }


def serialize_pattern(pattern: SeasonalPattern) -> dict[str, Any]:
    return {
        "pattern_id": str(pattern.pattern_id),
        "pattern_type": pattern.pattern_type,
        "entity_type": pattern.entity_type,
        "entity_id": pattern.entity_id,
        "metric_type": pattern.metric_type,
        "pattern_data": pattern.pattern_data or {},
        "strength": pattern.strength,
        "confidence": pattern.confidence,
        "period_start": pattern.period_start,
        "period_end": pattern.period_end,
        "detected_at": pattern.detected_at,
    }
