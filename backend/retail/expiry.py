"""
Expiry Analytics — Near-expiry window classification and KPI math.

Store teams report products approaching their expiry date. Each report sits
in a window relative to today:

    overdue  expiry date already passed
    D0       expires today
    D1       expires tomorrow
    D3       expires within 3 days
    D7       expires within 7 days
    future   more than 7 days away

Everything in this module is pure (no DB access) so the KPI rules can be
tested without fixtures. The router aggregates rows and feeds them here.
"""

from collections.abc import Iterable
from datetime import date, timedelta

import numpy as np

OPEN_STATUSES = ("reported", "watching", "confirmed")
TERMINAL_STATUSES = ("resolved", "canceled")

# Action → resulting report status
ACTION_STATUS: dict[str, str] = {
    "watch": "watching",
    "confirmed": "confirmed",
    "ignored": "ignored",
    "resolved": "resolved",
    "canceled": "canceled",
}

MAX_PAST_YEARS = 2
MAX_FUTURE_YEARS = 5

INSIGHT_ORDER = {"critical": 0, "warning": 1, "info": 2, "success": 3}


# ── Windows ────────────────────────────────────────────────────────────


def days_to_expiry(expiry_date: date, today: date | None = None) -> int:
    """Whole days between today and the expiry date (negative when overdue)."""
    today = today or date.today()
    return (expiry_date - today).days


def classify_expiry_window(days: int) -> str:
    if days < 0:
        return "overdue"
    if days == 0:
        return "D0"
    if days == 1:
        return "D1"
    if days <= 3:
        return "D3"
    if days <= 7:
        return "D7"
    return "future"


def is_valid_expiry_date(expiry_date: date, today: date | None = None) -> bool:
    """Reject obvious typos: more than 2 years past or 5 years ahead."""
    today = today or date.today()
    earliest = today - timedelta(days=365 * MAX_PAST_YEARS)
    latest = today + timedelta(days=365 * MAX_FUTURE_YEARS)
    return earliest <= expiry_date <= latest


# ── Rates ──────────────────────────────────────────────────────────────


def _pct(numerator: float, denominator: float) -> float:
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 1)


def efficiency_rate(resolved_before_expiry: int, resolved_total: int) -> float:
    """Share of resolved reports that were handled before the product expired."""
    return _pct(resolved_before_expiry, resolved_total)


def overdue_rate(overdue_open: int, open_total: int) -> float:
    return _pct(overdue_open, open_total)


def percent_change(current: float, previous: float) -> float:
    """Period-over-period variation, one decimal."""
    if previous == 0:
        return 100.0 if current > 0 else 0.0
    return round((current - previous) / previous * 100, 1)


def build_funnel(reported: int, watched: int, confirmed: int, resolved: int) -> dict:
    return {
        "reported": reported,
        "watched": watched,
        "confirmed": confirmed,
        "resolved": resolved,
        "watch_rate": _pct(watched, reported),
        "confirm_rate": _pct(confirmed, reported),
        "resolve_rate": _pct(resolved, reported),
    }


def pareto(items: Iterable[dict], key: str) -> list[dict]:
    """
    Sort descending by `key` and annotate each item with its share and the
    cumulative share of the total. Returns [] when the total is zero.
    """
    rows = sorted(items, key=lambda item: item.get(key) or 0, reverse=True)
    total = sum(item.get(key) or 0 for item in rows)
    if total <= 0:
        return []

    cumulative = 0.0
    annotated = []
    for item in rows:
        value = item.get(key) or 0
        cumulative += value
        annotated.append(
            {
                **item,
                "percentage": round(value / total * 100, 1),
                "cumulative_percentage": round(cumulative / total * 100, 1),
            }
        )
    return annotated


def percentile(values: Iterable[float], q: float) -> float | None:
    """Linear-interpolated percentile (q in 0-100). None for an empty sample."""
    data = [float(v) for v in values if v is not None]
    if not data:
        return None
    return round(float(np.percentile(data, q)), 1)


# ── Insights ───────────────────────────────────────────────────────────


def generate_insights(risk: dict, efficiency: dict, sla: dict, quality: dict) -> list[dict]:
    """
    Turn KPI blocks into human-readable insights.

    Args:
        risk: {d0, overdue, total_open, value_at_risk, overdue_rate}
        efficiency: {resolved_total, efficiency_rate}
        sla: {p50_hours}
        quality: {no_photo_rate}

    Returns:
        List of {type, title, description}, critical first.
    """
    insights: list[dict] = []

    overdue = risk.get("overdue", 0)
    rate = risk.get("overdue_rate", 0.0)
    if overdue > 0 and rate > 20:
        insights.append(
            {
                "type": "critical",
                "title": "High overdue backlog",
                "description": f"{overdue} open reports are past expiry ({rate}% of the open backlog).",
            }
        )

    d0 = risk.get("d0", 0)
    if d0 > 5:
        insights.append(
            {
                "type": "critical",
                "title": "Many items expiring today",
                "description": f"{d0} reports expire today and need action before close.",
            }
        )

    resolved_total = efficiency.get("resolved_total", 0)
    eff = efficiency.get("efficiency_rate", 0.0)
    if resolved_total >= 10 and eff < 70:
        insights.append(
            {
                "type": "warning",
                "title": "Low resolution efficiency",
                "description": f"Only {eff}% of resolved reports were handled before expiry.",
            }
        )

    p50 = sla.get("p50_hours")
    if p50 is not None and p50 > 48:
        insights.append(
            {
                "type": "warning",
                "title": "Slow resolution",
                "description": f"Median time to resolve is {p50}h (target: 48h).",
            }
        )

    no_photo_rate = quality.get("no_photo_rate", 0.0)
    if no_photo_rate > 15:
        insights.append(
            {
                "type": "warning",
                "title": "Reports missing photos",
                "description": f"{no_photo_rate}% of reports were submitted without a photo.",
            }
        )

    value_at_risk = risk.get("value_at_risk", 0.0)
    if value_at_risk > 5000:
        insights.append(
            {
                "type": "info",
                "title": "Significant value at risk",
                "description": f"R$ {value_at_risk:,.2f} of stock is in the open expiry backlog.",
            }
        )

    if resolved_total >= 20 and eff >= 90:
        insights.append(
            {
                "type": "success",
                "title": "Excellent efficiency",
                "description": f"{eff}% of reports were resolved before expiry.",
            }
        )

    if overdue == 0 and risk.get("total_open", 0) > 0:
        insights.append(
            {
                "type": "success",
                "title": "No overdue items",
                "description": "Every open report is still within its expiry date.",
            }
        )

    insights.sort(key=lambda i: INSIGHT_ORDER[i["type"]])
    return insights
