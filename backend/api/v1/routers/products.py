"""
Products Router — product catalog per organization.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_org_id, get_tenant_db
from db.models import Product

router = APIRouter(prefix="/api/v1/products", tags=["products"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ProductCreate(BaseModel):
    sku: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1, max_length=255)
    ean: str | None = Field(None, max_length=14)
    category: str | None = None
    brand: str | None = None
    supplier: str | None = None
    unit_cost: float | None = Field(None, ge=0)
    unit_price: float | None = Field(None, ge=0)


class ProductUpdate(BaseModel):
    name: str | None = None
    ean: str | None = Field(None, max_length=14)
    category: str | None = None
    brand: str | None = None
    supplier: str | None = None
    unit_cost: float | None = Field(None, ge=0)
    unit_price: float | None = Field(None, ge=0)
    status: str | None = None


class ProductResponse(BaseModel):
    product_id: UUID
    org_id: UUID
    sku: str
    ean: str | None
    name: str
    category: str | None
    brand: str | None
    supplier: str | None
    unit_cost: float | None
    unit_price: float | None
    status: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/", response_model=list[ProductResponse])
async def list_products(
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    category: str | None = None,
    status: str | None = None,
    search: str | None = Query(None, min_length=1, description="Matches name, SKU or EAN"),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """List products with optional category, status and text filters."""
    query = select(Product).where(Product.org_id == org_id)
    if category:
        query = query.where(Product.category == category)
    if status:
        query = query.where(Product.status == status)
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(Product.name.ilike(pattern), Product.sku.ilike(pattern), Product.ean.ilike(pattern)))
    query = query.order_by(Product.name).offset(skip).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{product_id}", response_model=ProductResponse)
async def get_product(
    product_id: UUID,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Get a single product by ID."""
    return await _get_product_or_404(db, org_id, product_id)


@router.post("/", response_model=ProductResponse, status_code=201)
async def create_product(
    product: ProductCreate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Create a new product. SKUs are unique within an organization."""
    existing = await db.execute(select(Product.product_id).where(Product.org_id == org_id, Product.sku == product.sku))
    if existing.scalar_one_or_none() is not None:
        raise HTTPException(status_code=409, detail=f"Product with SKU {product.sku} already exists")

    db_product = Product(**product.model_dump(), org_id=org_id)
    db.add(db_product)
    await db.commit()
    await db.refresh(db_product)
    return db_product


@router.patch("/{product_id}", response_model=ProductResponse)
async def update_product(
    product_id: UUID,
    update: ProductUpdate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Update a product."""
    product = await _get_product_or_404(db, org_id, product_id)
    for field, value in update.model_dump(exclude_unset=True).items():
        setattr(product, field, value)
    product.updated_at = datetime.utcnow()

    await db.commit()
    await db.refresh(product)
    return product


async def _get_product_or_404(db: AsyncSession, org_id: UUID, product_id: UUID) -> Product:
    result = await db.execute(select(Product).where(Product.product_id == product_id, Product.org_id == org_id))
    product = result.scalar_one_or_none()
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product
