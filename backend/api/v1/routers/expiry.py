"""
Expiry Router — near-expiry reports, report actions and expiry analytics.

Analytics endpoints look at reports created in the last `days` days and
compare against the previous period of equal length.
"""

from datetime import date, datetime, timedelta
from uuid import UUID

import pandas as pd
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_org_id, get_tenant_db, require_feature
from db.models import ExpiryReport, ExpiryReportAction, Store
from retail.expiry import (
    ACTION_STATUS,
    OPEN_STATUSES,
    TERMINAL_STATUSES,
    build_funnel,
    classify_expiry_window,
    days_to_expiry,
    efficiency_rate,
    generate_insights,
    is_valid_expiry_date,
    overdue_rate,
    pareto,
    percent_change,
    percentile,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/expiry", tags=["expiry"])

analytics = [Depends(require_feature("has_expiry_analytics"))]


# ─── Schemas ────────────────────────────────────────────────────────────────


class ExpiryReportCreate(BaseModel):
    store_id: UUID
    product_id: UUID | None = None
    barcode: str = Field(..., min_length=1, max_length=14)
    product_name: str | None = None
    category: str | None = None
    brand: str | None = None
    unit_price: float | None = Field(None, ge=0)
    quantity: int = Field(1, ge=1)
    expiry_date: date
    photo_url: str | None = None
    notes: str | None = None


class ExpiryActionCreate(BaseModel):
    action_type: str
    notes: str | None = None


class ExpiryReportResponse(BaseModel):
    report_id: UUID
    store_id: UUID
    product_id: UUID | None
    barcode: str
    product_name: str | None
    category: str | None
    brand: str | None
    unit_price: float | None
    quantity: int
    expiry_date: date
    photo_url: str | None
    status: str
    created_by: str | None
    created_at: datetime
    resolved_at: datetime | None
    resolved_by: str | None
    notes: str | None
    days_to_expiry: int | None = None
    window: str | None = None

    model_config = {"from_attributes": True}


# ─── Reports ────────────────────────────────────────────────────────────────


@router.post("/", response_model=ExpiryReportResponse, status_code=201)
async def create_report(
    report: ExpiryReportCreate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
    user: dict = Depends(get_current_user),
):
    """Report a product approaching its expiry date."""
    if not is_valid_expiry_date(report.expiry_date):
        raise HTTPException(status_code=422, detail="Expiry date must be within 2 years past and 5 years ahead")

    store = await db.execute(select(Store.store_id).where(Store.store_id == report.store_id, Store.org_id == org_id))
    if store.scalar_one_or_none() is None:
        raise HTTPException(status_code=404, detail="Store not found")

    db_report = ExpiryReport(**report.model_dump(), org_id=org_id, created_by=user.get("sub"))
    db.add(db_report)
    await db.commit()
    await db.refresh(db_report)

    logger.info("expiry.reported", org_id=str(org_id), store_id=str(report.store_id), barcode=report.barcode)
    return _serialize_report(db_report)


@router.get("/", response_model=list[ExpiryReportResponse])
async def list_reports(
    store_id: UUID | None = None,
    days: int | None = Query(None, ge=0, le=365, description="Only reports expiring within N days"),
    include_resolved: bool = False,
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """List expiry reports, soonest expiry first."""
    query = select(ExpiryReport).where(ExpiryReport.org_id == org_id)
    if store_id:
        query = query.where(ExpiryReport.store_id == store_id)
    if not include_resolved:
        query = query.where(ExpiryReport.status.in_(OPEN_STATUSES))
    if days is not None:
        query = query.where(ExpiryReport.expiry_date <= date.today() + timedelta(days=days))
    query = query.order_by(ExpiryReport.expiry_date.asc(), ExpiryReport.created_at.asc()).limit(limit)
    result = await db.execute(query)
    return [_serialize_report(r) for r in result.scalars().all()]


@router.post("/{report_id}/actions", response_model=ExpiryReportResponse)
async def record_action(
    report_id: UUID,
    action: ExpiryActionCreate,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
    user: dict = Depends(get_current_user),
):
    """Record a store action on a report and move it to the matching status."""
    if action.action_type not in ACTION_STATUS:
        raise HTTPException(status_code=400, detail=f"Invalid action_type: {action.action_type}")

    result = await db.execute(
        select(ExpiryReport).where(ExpiryReport.report_id == report_id, ExpiryReport.org_id == org_id)
    )
    report = result.scalar_one_or_none()
    if not report:
        raise HTTPException(status_code=404, detail="Expiry report not found")
    if report.status in TERMINAL_STATUSES:
        raise HTTPException(status_code=409, detail=f"Report already {report.status}")

    user_id = user.get("sub", "unknown")
    report.status = ACTION_STATUS[action.action_type]
    if report.status == "resolved":
        report.resolved_at = datetime.utcnow()
        report.resolved_by = user_id
    if action.notes:
        report.notes = action.notes

    db.add(
        ExpiryReportAction(
            org_id=org_id,
            report_id=report.report_id,
            user_id=user_id,
            action_type=action.action_type,
            notes=action.notes,
        )
    )
    await db.commit()
    await db.refresh(report)
    return _serialize_report(report)


@router.get("/stats")
async def expiry_stats(
    store_id: UUID | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Open backlog by window. D0 includes overdue reports."""
    query = select(ExpiryReport.status, ExpiryReport.expiry_date).where(ExpiryReport.org_id == org_id)
    if store_id:
        query = query.where(ExpiryReport.store_id == store_id)
    rows = (await db.execute(query)).all()

    today = date.today()
    stats = {"total_open": 0, "d0": 0, "d1": 0, "d3": 0, "d7": 0, "resolved": 0, "expired": 0}
    for status, expiry_date in rows:
        if status == "resolved":
            stats["resolved"] += 1
            continue
        if status not in OPEN_STATUSES:
            continue
        stats["total_open"] += 1
        window = classify_expiry_window(days_to_expiry(expiry_date, today))
        if window == "overdue":
            stats["expired"] += 1
            stats["d0"] += 1
        elif window != "future":
            stats[window.lower()] += 1
    return stats


# ─── Analytics ──────────────────────────────────────────────────────────────


@router.get("/analytics/kpis", dependencies=analytics)
async def expiry_kpis(
    days: int = Query(30, ge=1, le=365),
    store_id: UUID | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Risk backlog, efficiency, SLA, engagement, data quality and insights."""
    today = date.today()
    frame = await _load_report_frame(db, org_id, today - timedelta(days=2 * days), store_id)
    actions = await _load_action_counts(db, org_id, frame)
    start = today - timedelta(days=days)
    current = frame[frame["created_on"] >= start] if not frame.empty else frame
    previous = frame[frame["created_on"] < start] if not frame.empty else frame

    open_frame = await _load_report_frame(db, org_id, None, store_id, open_only=True)
    risk = _risk_block(open_frame, today)
    efficiency = _efficiency_block(current)
    sla = _sla_block(current)
    engagement = _engagement_block(current, actions)
    quality = _quality_block(current)
    previous_efficiency = _efficiency_block(previous)

    return {
        "period_days": days,
        "risk": risk,
        "efficiency": efficiency,
        "sla": sla,
        "engagement": engagement,
        "quality": quality,
        "trends": {
            "reported_change": percent_change(len(current), len(previous)),
            "resolved_change": percent_change(
                efficiency["resolved_total"], previous_efficiency["resolved_total"]
            ),
            "efficiency_change": round(efficiency["efficiency_rate"] - previous_efficiency["efficiency_rate"], 1),
        },
        "insights": generate_insights(risk, efficiency, sla, quality),
    }


@router.get("/analytics/funnel", dependencies=analytics)
async def expiry_funnel(
    days: int = Query(30, ge=1, le=365),
    store_id: UUID | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Reported → watched → confirmed → resolved conversion."""
    frame = await _load_report_frame(db, org_id, date.today() - timedelta(days=days), store_id)
    actions = await _load_action_counts(db, org_id, frame)
    return build_funnel(
        reported=len(frame),
        watched=actions.get("watch", 0),
        confirmed=actions.get("confirmed", 0),
        resolved=int((frame["status"] == "resolved").sum()) if not frame.empty else 0,
    )


@router.get("/analytics/rankings", dependencies=analytics)
async def expiry_rankings(
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Store and SKU rankings by value at risk, with cumulative share."""
    today = date.today()
    frame = await _load_report_frame(db, org_id, today - timedelta(days=days), None)
    if frame.empty:
        return {"stores": [], "skus": []}

    frame = frame.assign(
        is_open=frame["status"].isin(OPEN_STATUSES),
        is_overdue=frame["status"].isin(OPEN_STATUSES) & (frame["expiry_date"] < today),
    )
    frame["open_value"] = frame["value"].where(frame["is_open"], 0.0)

    stores = []
    for (store_id, store_name), group in frame.groupby(["store_id", "store_name"], dropna=False):
        resolved = group[group["status"] == "resolved"]
        stores.append(
            {
                "store_id": store_id,
                "store_name": store_name,
                "total_reports": int(len(group)),
                "open_count": int(group["is_open"].sum()),
                "overdue_count": int(group["is_overdue"].sum()),
                "efficiency_rate": efficiency_rate(int(resolved["resolved_in_time"].sum()), len(resolved)),
                "value_at_risk": round(float(group["open_value"].sum()), 2),
                "p50_hours": percentile(resolved["resolution_hours"].dropna(), 50),
            }
        )

    skus = []
    for barcode, group in frame.groupby("barcode"):
        skus.append(
            {
                "barcode": barcode,
                "product_name": group["product_name"].dropna().iloc[0] if group["product_name"].notna().any() else None,
                "occurrences": int(len(group)),
                "stores_affected": int(group["store_id"].nunique()),
                "quantity": int(group["quantity"].sum()),
                "value_at_risk": round(float(group["open_value"].sum()), 2),
            }
        )

    return {
        "stores": _ranked(stores, "value_at_risk", limit),
        "skus": _ranked(skus, "value_at_risk", limit, tiebreak="occurrences"),
    }


@router.get("/analytics/trends", dependencies=analytics)
async def expiry_trends(
    days: int = Query(30, ge=1, le=365),
    store_id: UUID | None = None,
    db: AsyncSession = Depends(get_tenant_db),
    org_id: UUID = Depends(get_org_id),
):
    """Daily reported / resolved counts and reported value, zero-filled."""
    today = date.today()
    start = today - timedelta(days=days - 1)
    frame = await _load_report_frame(db, org_id, start, store_id)
    index = pd.date_range(start, today, freq="D")

    if frame.empty:
        reported = pd.Series(0, index=index)
        value = pd.Series(0.0, index=index)
        resolved = pd.Series(0, index=index)
    else:
        created = pd.to_datetime(frame["created_on"])
        reported = frame.groupby(created).size().reindex(index, fill_value=0)
        value = frame.groupby(created)["value"].sum().reindex(index, fill_value=0.0)
        done = frame[frame["resolved_at"].notna()]
        resolved = done.groupby(pd.to_datetime(done["resolved_at"]).dt.normalize()).size().reindex(index, fill_value=0)

    return [
        {
            "date": day.date().isoformat(),
            "reported": int(reported[day]),
            "resolved": int(resolved[day]),
            "value_at_risk": round(float(value[day]), 2),
        }
        for day in index
    ]


# ── Helpers ────────────────────────────────────────────────────────────


REPORT_FRAME_COLUMNS = [
    "report_id",
    "store_id",
    "store_name",
    "barcode",
    "product_name",
    "quantity",
    "unit_price",
    "expiry_date",
    "photo_url",
    "status",
    "created_at",
    "resolved_at",
]


async def _load_report_frame(
    db: AsyncSession,
    org_id: UUID,
    since: date | None,
    store_id: UUID | None,
    open_only: bool = False,
) -> pd.DataFrame:
    query = (
        select(
            ExpiryReport.report_id,
            ExpiryReport.store_id,
            Store.name,
            ExpiryReport.barcode,
            ExpiryReport.product_name,
            ExpiryReport.quantity,
            ExpiryReport.unit_price,
            ExpiryReport.expiry_date,
            ExpiryReport.photo_url,
            ExpiryReport.status,
            ExpiryReport.created_at,
            ExpiryReport.resolved_at,
        )
        .join(Store, Store.store_id == ExpiryReport.store_id, isouter=True)
        .where(ExpiryReport.org_id == org_id)
    )
    if since is not None:
        query = query.where(ExpiryReport.created_at >= datetime.combine(since, datetime.min.time()))
    if store_id:
        query = query.where(ExpiryReport.store_id == store_id)
    if open_only:
        query = query.where(ExpiryReport.status.in_(OPEN_STATUSES))

    rows = (await db.execute(query)).all()
    frame = pd.DataFrame([tuple(r) for r in rows], columns=REPORT_FRAME_COLUMNS)
    if frame.empty:
        return frame.assign(created_on=[], value=[], resolution_hours=[], resolved_in_time=[])

    frame["store_id"] = frame["store_id"].astype(str)
    frame["value"] = frame["quantity"].fillna(0) * frame["unit_price"].fillna(0)
    frame["created_on"] = frame["created_at"].map(lambda ts: ts.date())
    resolved_ts = pd.to_datetime(frame["resolved_at"])
    frame["resolution_hours"] = (resolved_ts - pd.to_datetime(frame["created_at"])).dt.total_seconds() / 3600
    frame["resolved_in_time"] = [
        resolved is not None and not pd.isna(resolved) and resolved.date() <= expiry
        for resolved, expiry in zip(frame["resolved_at"], frame["expiry_date"])
    ]
    return frame


async def _load_action_counts(db: AsyncSession, org_id: UUID, frame: pd.DataFrame) -> dict[str, int]:
    """Distinct reports per action type, restricted to the reports in `frame`."""
    if frame.empty:
        return {}
    report_ids = [UUID(str(r)) for r in frame["report_id"]]
    result = await db.execute(
        select(ExpiryReportAction.action_type, ExpiryReportAction.report_id).where(
            ExpiryReportAction.org_id == org_id,
            ExpiryReportAction.report_id.in_(report_ids),
        )
    )
    seen: dict[str, set] = {}
    for action_type, report_id in result.all():
        seen.setdefault(action_type, set()).add(report_id)
    return {action_type: len(ids) for action_type, ids in seen.items()}


def _risk_block(open_frame: pd.DataFrame, today: date) -> dict:
    counts = {"overdue": 0, "D0": 0, "D1": 0, "D3": 0, "D7": 0, "future": 0}
    if not open_frame.empty:
        for expiry_date in open_frame["expiry_date"]:
            counts[classify_expiry_window(days_to_expiry(expiry_date, today))] += 1
    total_open = int(len(open_frame))
    return {
        "d0": counts["D0"],
        "d1": counts["D1"],
        "d3": counts["D3"],
        "d7": counts["D7"],
        "overdue": counts["overdue"],
        "total_open": total_open,
        "total_quantity": int(open_frame["quantity"].sum()) if total_open else 0,
        "value_at_risk": round(float(open_frame["value"].sum()), 2) if total_open else 0.0,
        "overdue_rate": overdue_rate(counts["overdue"], total_open),
    }


def _efficiency_block(frame: pd.DataFrame) -> dict:
    if frame.empty:
        return {"resolved_total": 0, "resolved_before_expiry": 0, "efficiency_rate": 0.0}
    resolved = frame[frame["status"] == "resolved"]
    in_time = int(resolved["resolved_in_time"].sum())
    return {
        "resolved_total": int(len(resolved)),
        "resolved_before_expiry": in_time,
        "efficiency_rate": efficiency_rate(in_time, len(resolved)),
    }


def _sla_block(frame: pd.DataFrame) -> dict:
    hours = frame["resolution_hours"].dropna().tolist() if not frame.empty else []
    return {
        "p50_hours": percentile(hours, 50),
        "p90_hours": percentile(hours, 90),
        "resolved_count": len(hours),
    }


def _engagement_block(frame: pd.DataFrame, actions: dict[str, int]) -> dict:
    funnel = build_funnel(len(frame), actions.get("watch", 0), actions.get("confirmed", 0), 0)
    return {
        "watched": funnel["watched"],
        "confirmed": funnel["confirmed"],
        "watch_rate": funnel["watch_rate"],
        "confirm_rate": funnel["confirm_rate"],
    }


def _quality_block(frame: pd.DataFrame) -> dict:
    total = int(len(frame))
    if not total:
        return {"total_reports": 0, "no_photo_count": 0, "no_photo_rate": 0.0, "duplicate_count": 0, "invalid_date_count": 0}
    no_photo = int(frame["photo_url"].fillna("").astype(str).str.strip().eq("").sum())
    duplicates = int(frame.duplicated(subset=["store_id", "barcode", "expiry_date"], keep="first").sum())
    invalid = sum(
        1 for expiry, created in zip(frame["expiry_date"], frame["created_on"]) if not is_valid_expiry_date(expiry, created)
    )
    return {
        "total_reports": total,
        "no_photo_count": no_photo,
        "no_photo_rate": round(no_photo / total * 100, 1),
        "duplicate_count": duplicates,
        "invalid_date_count": invalid,
    }


def _ranked(items: list[dict], key: str, limit: int, tiebreak: str | None = None) -> list[dict]:
    if tiebreak:
        items = sorted(items, key=lambda i: i[tiebreak], reverse=True)
    ranked = pareto(items, key) or sorted(items, key=lambda i: i[key], reverse=True)
    return [{**item, "rank": position} for position, item in enumerate(ranked[:limit], start=1)]


def _serialize_report(report: ExpiryReport) -> dict:
    remaining = days_to_expiry(report.expiry_date)
    return {
        **{column: getattr(report, column) for column in ExpiryReportResponse.model_fields if hasattr(report, column)},
        "days_to_expiry": remaining,
        "window": classify_expiry_window(remaining),
    }
