"""
Loss Aggregation — group loss records for analytics and recommendations.

Loss types:
  expiry     product passed its expiry date on the shelf
  damage     broken/crushed packaging, cold-chain failure
  theft      known theft
  shrinkage  unexplained inventory difference
  other      anything else
"""

import uuid
from datetime import date, timedelta

import pandas as pd
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import LossRecord, Store

LOSS_TYPES = ("expiry", "damage", "theft", "shrinkage", "other")

LOSS_FRAME_COLUMNS = [
    "record_id",
    "store_id",
    "store_name",
    "product_id",
    "ean",
    "product_name",
    "category",
    "supplier",
    "loss_type",
    "quantity",
    "total_cost",
    "sale_value",
    "occurred_on",
]


def aggregate_losses(frame: pd.DataFrame, keys: list[str]) -> pd.DataFrame:
    """
    Aggregate loss rows by `keys`.

    Returns one row per group with total/avg quantity and cost, record
    count and first/last occurrence, sorted by total_cost descending.
    """
    columns = [
        *keys,
        "total_quantity",
        "avg_quantity",
        "total_cost",
        "avg_cost",
        "record_count",
        "first_date",
        "last_date",
    ]
    if frame.empty:
        return pd.DataFrame(columns=columns)

    grouped = (
        frame.groupby(keys, dropna=False)
        .agg(
            total_quantity=("quantity", "sum"),
            avg_quantity=("quantity", "mean"),
            total_cost=("total_cost", "sum"),
            avg_cost=("total_cost", "mean"),
            record_count=("quantity", "size"),
            first_date=("occurred_on", "min"),
            last_date=("occurred_on", "max"),
        )
        .reset_index()
        .sort_values("total_cost", ascending=False, kind="stable")
        .reset_index(drop=True)
    )
    return grouped[columns]


def top_by_cost(frame: pd.DataFrame, key: str, limit: int = 10) -> list[dict]:
    """Top groups by total cost with their share of the overall cost."""
    if frame.empty:
        return []
    grouped = aggregate_losses(frame[frame[key].notna()], [key]).head(limit)
    overall = float(frame["total_cost"].sum())
    return [
        {
            key: row[key],
            "total_cost": round(float(row["total_cost"]), 2),
            "total_quantity": round(float(row["total_quantity"]), 2),
            "record_count": int(row["record_count"]),
            "share": round(float(row["total_cost"]) / overall * 100, 1) if overall else 0.0,
        }
        for _, row in grouped.iterrows()
    ]


async def load_loss_frame(
    db: AsyncSession,
    org_id: uuid.UUID,
    since: date | None = None,
    until: date | None = None,
    store_id: uuid.UUID | None = None,
    import_job_id: uuid.UUID | None = None,
) -> pd.DataFrame:
    """Load loss records (joined with store names) into a DataFrame."""
    conditions = [LossRecord.org_id == org_id]
    if import_job_id is not None:
        conditions.append(LossRecord.import_job_id == import_job_id)
    elif since is None:
        since = date.today() - timedelta(days=90)
    if since is not None:
        conditions.append(LossRecord.occurred_on >= since)
    if until is not None:
        conditions.append(LossRecord.occurred_on <= until)
    if store_id is not None:
        conditions.append(LossRecord.store_id == store_id)

    result = await db.execute(
        select(
            LossRecord.record_id,
            LossRecord.store_id,
            Store.name,
            LossRecord.product_id,
            LossRecord.ean,
            LossRecord.product_name,
            LossRecord.category,
            LossRecord.supplier,
            LossRecord.loss_type,
            LossRecord.quantity,
            LossRecord.total_cost,
            LossRecord.sale_value,
            LossRecord.occurred_on,
        )
        .join(Store, Store.store_id == LossRecord.store_id, isouter=True)
        .where(*conditions)
    )
    frame = pd.DataFrame([tuple(r) for r in result.all()], columns=LOSS_FRAME_COLUMNS)
    if not frame.empty:
        frame["store_id"] = frame["store_id"].astype(str)
        frame["quantity"] = frame["quantity"].fillna(0).astype(float)
        frame["total_cost"] = frame["total_cost"].fillna(0).astype(float)
        frame["sale_value"] = frame["sale_value"].fillna(0).astype(float)
    return frame
