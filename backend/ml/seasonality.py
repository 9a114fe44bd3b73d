"""
Seasonality Detection — weekly and monthly loss patterns.

For a daily metric series (≥ 14 days):
  - weekly index: mean per weekday / overall mean (1.0 = normal day)
  - strength: share of total variance explained by the weekday means
    (between-group variance / total variance, 0-1)
  - monthly index: mean per day of month / overall mean
  - trend: least-squares slope relative to the mean; more than +1%/day is
    "increasing", less than −1%/day is "decreasing", else "stable"
  - confidence: days observed / 90, capped at 1

Calendar events combine organization events, global events (org_id NULL)
and the built-in Brazilian retail calendar.
"""

import calendar as pycalendar
import uuid
from datetime import date, timedelta
from typing import Any

import numpy as np
import pandas as pd
import structlog
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import CalendarEvent, ExpiryReport, LossRecord, SeasonalPattern
from ml.forecast import build_daily_series
from retail.calendar import RetailCalendar

logger = structlog.get_logger()

MIN_HISTORY_DAYS = 14
FULL_CONFIDENCE_DAYS = 90
TREND_TOLERANCE = 0.01
WEEKDAY_NAMES = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


# ── Pure Pattern Math ──────────────────────────────────────────────────


def trend_direction(slope: float, mean: float) -> str:
    if mean <= 0:
        return "stable"
    relative = slope / mean
    if relative > TREND_TOLERANCE:
        return "increasing"
    if relative < -TREND_TOLERANCE:
        return "decreasing"
    return "stable"


def weekly_pattern(series: pd.Series) -> dict[str, Any] | None:
    """Weekday indices, strength, trend and confidence. None when history is too short."""
    if len(series) < MIN_HISTORY_DAYS:
        return None

    values = series.values.astype(float)
    overall = float(values.mean())
    total_var = float(values.var())
    weekday = series.index.dayofweek
    means = series.groupby(weekday).mean()

    if total_var > 0:
        fitted = np.array([means[d] for d in weekday])
        strength = float(np.clip(fitted.var() / total_var, 0.0, 1.0))
    else:
        strength = 0.0

    slope = float(np.polyfit(np.arange(len(values)), values, 1)[0])
    index = {
        WEEKDAY_NAMES[d]: round(float(means[d]) / overall, 3) if overall > 0 and d in means.index else 1.0
        for d in range(7)
    }
    peak = max(index, key=index.get)

    return {
        "day_of_week": index,
        "peak_day": peak,
        "trend": trend_direction(slope, overall),
        "trend_slope": round(slope, 4),
        "mean": round(overall, 2),
        "strength": round(strength, 3),
        "confidence": round(min(1.0, len(series) / FULL_CONFIDENCE_DAYS), 3),
    }


def monthly_pattern(series: pd.Series) -> dict[str, Any] | None:
    """Day-of-month indices (needs the same minimum history)."""
    if len(series) < MIN_HISTORY_DAYS:
        return None
    overall = float(series.mean())
    means = series.groupby(series.index.day).mean()
    total_var = float(series.var(ddof=0))
    if total_var > 0:
        fitted = np.array([means[d] for d in series.index.day])
        strength = float(np.clip(fitted.var() / total_var, 0.0, 1.0))
    else:
        strength = 0.0
    return {
        "day_of_month": {
            int(d): round(float(v) / overall, 3) if overall > 0 else 1.0 for d, v in means.items()
        },
        "strength": round(strength, 3),
        "confidence": round(min(1.0, len(series) / FULL_CONFIDENCE_DAYS), 3),
    }


def expand_recurrence(event_date: date, recurrence: str, start: date, end: date) -> list[date]:
    """Occurrences of an event inside [start, end]."""
    if recurrence == "none":
        return [event_date] if start <= event_date <= end else []

    occurrences = []
    if recurrence == "weekly":
        offset = (event_date.weekday() - start.weekday()) % 7
        current = max(event_date, start + timedelta(days=offset))
        while current <= end:
            if current >= event_date:
                occurrences.append(current)
            current += timedelta(days=7)
        return occurrences

    if recurrence == "monthly":
        year, month = start.year, start.month
        while date(year, month, 1) <= end:
            day = min(event_date.day, pycalendar.monthrange(year, month)[1])
            candidate = date(year, month, day)
            if start <= candidate <= end and candidate >= event_date:
                occurrences.append(candidate)
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        return occurrences

    if recurrence == "yearly":
        for year in range(start.year, end.year + 1):
            day = min(event_date.day, pycalendar.monthrange(year, event_date.month)[1])
            candidate = date(year, event_date.month, day)
            if start <= candidate <= end and candidate >= event_date:
                occurrences.append(candidate)
        return occurrences

    raise ValueError(f"Unsupported recurrence: {recurrence}")


# ── Persistence ────────────────────────────────────────────────────────


async def _metric_history(
    db: AsyncSession,
    org_id: uuid.UUID,
    metric_type: str,
    lookback_days: int,
) -> list[tuple[date, float]]:
    start = date.today() - timedelta(days=lookback_days)
    if metric_type == "loss_value":
        stmt = select(LossRecord.occurred_on, func.sum(LossRecord.total_cost))
    elif metric_type == "loss_volume":
        stmt = select(LossRecord.occurred_on, func.sum(LossRecord.quantity))
    elif metric_type == "expiry_count":
        stmt = (
            select(ExpiryReport.expiry_date, func.count())
            .where(ExpiryReport.org_id == org_id, ExpiryReport.expiry_date >= start)
            .group_by(ExpiryReport.expiry_date)
        )
        result = await db.execute(stmt)
        return [(row[0], float(row[1] or 0)) for row in result.all()]
    else:
        raise ValueError(f"Unsupported metric_type: {metric_type}")

    result = await db.execute(
        stmt.where(LossRecord.org_id == org_id, LossRecord.occurred_on >= start).group_by(LossRecord.occurred_on)
    )
    return [(row[0], float(row[1] or 0)) for row in result.all()]


async def detect_patterns(
    db: AsyncSession,
    org_id: uuid.UUID,
    metric_type: str = "loss_value",
    lookback_days: int = 180,
    min_strength: float = 0.0,
) -> list[SeasonalPattern]:
    """Detect weekly + monthly patterns for an org-level metric, replacing previous ones."""
    series = build_daily_series(await _metric_history(db, org_id, metric_type, lookback_days))
    weekly = weekly_pattern(series)
    if weekly is None:
        logger.info("seasonality.insufficient_history", org_id=str(org_id), days=len(series))
        return []

    monthly = monthly_pattern(series)
    period_start = series.index.min().date()
    period_end = series.index.max().date()

    await db.execute(
        delete(SeasonalPattern).where(
            SeasonalPattern.org_id == org_id,
            SeasonalPattern.metric_type == metric_type,
            SeasonalPattern.pattern_type.in_(["weekly", "monthly"]),
        )
    )

    created: list[SeasonalPattern] = []
    candidates = [("weekly", weekly)]
    if monthly is not None:
        candidates.append(
            (
                "monthly",
                {**monthly, "trend": weekly["trend"], "trend_slope": weekly["trend_slope"]},
            )
        )
    for pattern_type, data in candidates:
        if data["strength"] < min_strength:
            continue
        pattern = SeasonalPattern(
            org_id=org_id,
            pattern_type=pattern_type,
            entity_type="organization",
            entity_id=str(org_id),
            metric_type=metric_type,
            pattern_data={k: v for k, v in data.items() if k not in ("strength", "confidence")},
            strength=data["strength"],
            confidence=data["confidence"],
            period_start=period_start,
            period_end=period_end,
        )
        db.add(pattern)
        created.append(pattern)

    await db.commit()
    logger.info("seasonality.detected", org_id=str(org_id), metric_type=metric_type, patterns=len(created))
    return created


async def upcoming_events(db: AsyncSession, org_id: uuid.UUID, days: int = 30, today: date | None = None) -> list[dict]:
    """Org + global DB events (expanded by recurrence) plus built-in holidays, sorted by date."""
    today = today or date.today()
    end = today + timedelta(days=days)

    result = await db.execute(
        select(CalendarEvent).where(
            or_(CalendarEvent.org_id == org_id, CalendarEvent.org_id.is_(None)),
            CalendarEvent.is_active.is_(True),
            or_(
                CalendarEvent.recurrence != "none",
                and_(CalendarEvent.event_date >= today, CalendarEvent.event_date <= end),
            ),
        )
    )

    events: list[dict] = []
    seen: set[tuple[date, str]] = set()
    for event in result.scalars().all():
        for occurrence in expand_recurrence(event.event_date, event.recurrence, today, end):
            seen.add((occurrence, event.event_name))
            events.append(
                {
                    "event_id": str(event.event_id),
                    "event_name": event.event_name,
                    "event_type": event.event_type,
                    "event_date": occurrence,
                    "impact_factor": event.impact_factor,
                    "affects_categories": event.affects_categories or [],
                    "source": "organization" if event.org_id else "global",
                    "days_until": (occurrence - today).days,
                }
            )

    for builtin in RetailCalendar.upcoming_events(today, days):
        if (builtin.event_date, builtin.event_name) in seen:
            continue
        events.append(
            {
                "event_id": None,
                "event_name": builtin.event_name,
                "event_type": builtin.event_type,
                "event_date": builtin.event_date,
                "impact_factor": builtin.impact_factor,
                "affects_categories": [],
                "source": "calendar",
                "days_until": (builtin.event_date - today).days,
            }
        )

    events.sort(key=lambda e: (e["event_date"], e["event_name"]))
    return events
