"""
Stores Router — CRUD for the organization's store network.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_org_id, get_tenant_db
from db.models import RiskScore, Store

router = APIRouter(prefix="/api/v1/stores", tags=["stores"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class StoreCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    code: str | None = Field(None, max_length=50)
    address: str | None = None
    city: str | None = None
    state: str | None = Field(None, min_length=2, max_length=2)


class StoreUpdate(BaseModel):
    name: str | None = None
    code: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = Field(None, min_length=2, max_length=2)
    status: str | None = None


class StoreResponse(BaseModel):
    store_id: UUID
    org_id: UUID
    code: str | None
    name: str
    address: str | None
    city: str | None
    state: str | None
    status: str
    created_at: datetime
    updated_at: datetime
    risk_score: int | None = None
    risk_level: str | None = None

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[StoreResponse])
async def list_stores(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    status: str | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """List stores for the current organization."""
    query = select(Store).where(Store.org_id == org_id)
    if status:
        query = query.where(Store.status == status)
    query = query.order_by(Store.name).offset(skip).limit(limit)
    result = await db.execute(query)
    stores = result.scalars().all()
    risk_map = await _build_store_risk_map(db, org_id, [store.store_id for store in stores])
    return [_serialize_store(store, risk_map) for store in stores]


@router.get("/{store_id}", response_model=StoreResponse)
async def get_store(
    store_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Get a single store by ID."""
    store = await _get_store_or_404(db, org_id, store_id)
    risk_map = await _build_store_risk_map(db, org_id, [store.store_id])
    return _serialize_store(store, risk_map)


@router.post("/", response_model=StoreResponse, status_code=201)
async def create_store(
    store: StoreCreate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Create a new store."""
    db_store = Store(**store.model_dump(), org_id=org_id)
    db.add(db_store)
    await db.commit()
    await db.refresh(db_store)
    return db_store


@router.patch("/{store_id}", response_model=StoreResponse)
async def update_store(
    store_id: UUID,
    update: StoreUpdate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Update a store."""
    store = await _get_store_or_404(db, org_id, store_id)
    for field, value in update.model_dump(exclude_unset=True).items():
        setattr(store, field, value)
    store.updated_at = datetime.utcnow()

    await db.commit()
    await db.refresh(store)
    return store


@router.delete("/{store_id}", status_code=204)
async def delete_store(
    store_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Delete a store."""
    store = await _get_store_or_404(db, org_id, store_id)
    await db.delete(store)
    await db.commit()


async def _get_store_or_404(db: AsyncSession, org_id: UUID, store_id: UUID) -> Store:
    result = await db.execute(select(Store).where(Store.store_id == store_id, Store.org_id == org_id))
    store = result.scalar_one_or_none()
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    return store


def _serialize_store(store: Store, risk_map: dict[str, RiskScore]) -> dict:
    risk = risk_map.get(str(store.store_id))
    return {
        "store_id": store.store_id,
        "org_id": store.org_id,
        "code": store.code,
        "name": store.name,
        "address": store.address,
        "city": store.city,
        "state": store.state,
        "status": store.status,
        "created_at": store.created_at,
        "updated_at": store.updated_at,
        "risk_score": risk.score if risk else None,
        "risk_level": risk.level if risk else None,
    }


async def _build_store_risk_map(db: AsyncSession, org_id: UUID, store_ids: list[UUID]) -> dict[str, RiskScore]:
    """Latest persisted risk score per store (keyed by str(store_id))."""
    if not store_ids:
        return {}
    result = await db.execute(
        select(RiskScore).where(
            RiskScore.org_id == org_id,
            RiskScore.entity_type == "store",
            RiskScore.entity_id.in_([str(sid) for sid in store_ids]),
        )
    )
    return {row.entity_id: row for row in result.scalars().all()}
