"""
Losses Router — loss record ingestion and loss analytics.
"""

from datetime import date, datetime, timedelta
from uuid import UUID

import pandas as pd
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_org_id, get_tenant_db
from db.models import LossRecord, Store
from retail.losses import LOSS_TYPES, aggregate_losses, load_loss_frame, top_by_cost

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/losses", tags=["losses"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class LossRecordCreate(BaseModel):
    store_id: UUID
    product_id: UUID | None = None
    ean: str | None = Field(None, max_length=14)
    product_name: str | None = None
    category: str | None = None
    supplier: str | None = None
    loss_type: str = "other"
    quantity: float = Field(..., ge=0)
    unit_cost: float = Field(0, ge=0)
    total_cost: float | None = Field(None, ge=0)
    sale_value: float | None = Field(None, ge=0)
    occurred_on: date


class LossBatchCreate(BaseModel):
    records: list[LossRecordCreate] = Field(..., min_length=1, max_length=5000)
    import_job_id: UUID | None = None


class LossRecordResponse(BaseModel):
    record_id: UUID
    store_id: UUID
    product_id: UUID | None
    ean: str | None
    product_name: str | None
    category: str | None
    supplier: str | None
    loss_type: str
    quantity: float
    unit_cost: float | None
    total_cost: float
    sale_value: float | None
    occurred_on: date
    import_job_id: UUID | None
    created_at: datetime

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.post("/", status_code=201)
async def create_losses(
    batch: LossBatchCreate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Bulk-insert loss records. total_cost defaults to quantity × unit_cost."""
    invalid_types = sorted({r.loss_type for r in batch.records} - set(LOSS_TYPES))
    if invalid_types:
        raise HTTPException(status_code=400, detail=f"Invalid loss_type: {', '.join(invalid_types)}")

    store_ids = {r.store_id for r in batch.records}
    result = await db.execute(select(Store.store_id).where(Store.org_id == org_id, Store.store_id.in_(store_ids)))
    known = {row.store_id for row in result.all()}
    unknown = store_ids - known
    if unknown:
        raise HTTPException(status_code=404, detail=f"Store not found: {sorted(str(s) for s in unknown)[0]}")

    for record in batch.records:
        values = record.model_dump()
        if values["total_cost"] is None:
            values["total_cost"] = round(record.quantity * record.unit_cost, 2)
        db.add(LossRecord(**values, org_id=org_id, import_job_id=batch.import_job_id))
    await db.commit()

    logger.info("losses.imported", org_id=str(org_id), records=len(batch.records))
    return {"created": len(batch.records), "import_job_id": batch.import_job_id}


@router.get("/", response_model=list[LossRecordResponse])
async def list_losses(
    store_id: UUID | None = None,
    loss_type: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """List loss records, newest first."""
    query = select(LossRecord).where(LossRecord.org_id == org_id)
    if store_id:
        query = query.where(LossRecord.store_id == store_id)
    if loss_type:
        query = query.where(LossRecord.loss_type == loss_type)
    if start_date:
        query = query.where(LossRecord.occurred_on >= start_date)
    if end_date:
        query = query.where(LossRecord.occurred_on <= end_date)
    query = query.order_by(LossRecord.occurred_on.desc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/analytics")
async def loss_analytics(
    days: int = Query(90, ge=1, le=730),
    store_id: UUID | None = None,
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Totals, breakdowns, top products/suppliers and a monthly summary."""
    since = date.today() - timedelta(days=days)
    frame = await load_loss_frame(db, org_id, since=since, store_id=store_id)

    if frame.empty:
        return {
            "period_days": days,
            "totals": {
                "record_count": 0,
                "total_quantity": 0.0,
                "total_cost": 0.0,
                "total_sale_value": 0.0,
                "margin_lost": 0.0,
            },
            "by_loss_type": [],
            "by_category": [],
            "top_products": [],
            "top_suppliers": [],
            "monthly": [],
        }

    total_cost = float(frame["total_cost"].sum())
    total_sale = float(frame["sale_value"].sum())
    return {
        "period_days": days,
        "totals": {
            "record_count": int(len(frame)),
            "total_quantity": round(float(frame["quantity"].sum()), 2),
            "total_cost": round(total_cost, 2),
            "total_sale_value": round(total_sale, 2),
            "margin_lost": round(total_sale - total_cost, 2),
        },
        "by_loss_type": top_by_cost(frame, "loss_type", limit=len(LOSS_TYPES)),
        "by_category": top_by_cost(frame, "category", limit=limit),
        "top_products": top_by_cost(frame, "product_name", limit=limit),
        "top_suppliers": top_by_cost(frame, "supplier", limit=limit),
        "monthly": _monthly_summary(frame),
    }


def _monthly_summary(frame: pd.DataFrame) -> list[dict]:
    months = frame.assign(month=pd.to_datetime(frame["occurred_on"]).dt.strftime("%Y-%m"))
    grouped = aggregate_losses(months, ["month"]).sort_values("month")
    return [
        {
            "month": row["month"],
            "total_cost": round(float(row["total_cost"]), 2),
            "total_quantity": round(float(row["total_quantity"]), 2),
            "record_count": int(row["record_count"]),
        }
        for _, row in grouped.iterrows()
    ]
