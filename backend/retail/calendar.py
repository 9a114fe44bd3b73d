"""
Retail Calendar — Brazilian national holidays + major retail events.

Feeds the seasonality module with the dates that move loss and expiry
volume in Brazilian supermarkets:
  - Fixed national holidays (Tiradentes, Independência, Natal, ...)
  - Easter-derived movable dates (Carnaval, Sexta-feira Santa, Corpus Christi)
  - Retail peaks (Dia das Mães, Dia dos Pais, Black Friday)

Each event carries an impact factor: expected loss volume relative to a
normal day (1.0). Perishables suffer most around long weekends, when stores
close early and deliveries stop.
"""

from datetime import date, timedelta
from functools import lru_cache
from typing import NamedTuple


class RetailEvent(NamedTuple):
    event_date: date
    event_name: str
    event_type: str  # holiday | promotion | season
    impact_factor: float


# ── Date Helpers ─────────────────────────────────────────────────────────


def _nth_weekday_of_month(year: int, month: int, weekday: int, n: int) -> date:
    """Find the nth occurrence of a weekday in a given month.

    weekday: 0=Monday ... 6=Sunday
    n: 1=first, 2=second, -1=last
    """
    if n > 0:
        first = date(year, month, 1)
        offset = (weekday - first.weekday()) % 7
        first_occurrence = first + timedelta(days=offset)
        return first_occurrence + timedelta(weeks=n - 1)
    if month == 12:
        last_day = date(year + 1, 1, 1) - timedelta(days=1)
    else:
        last_day = date(year, month + 1, 1) - timedelta(days=1)
    offset = (last_day.weekday() - weekday) % 7
    return last_day - timedelta(days=offset)


def _compute_easter(year: int) -> date:
    """Compute Easter Sunday using the Anonymous Gregorian algorithm."""
    a = year % 19
    b, c = divmod(year, 100)
    d, e = divmod(b, 4)
    f = (b + 8) // 25
    g = (b - f + 1) // 3
    h = (19 * a + b - d - g + 15) % 30
    i, k = divmod(c, 4)
    l = (32 + 2 * e + 2 * i - h - k) % 7  # noqa: E741
    m = (a + 11 * h + 22 * l) // 451
    month, day = divmod(h + l - 7 * m + 114, 31)
    return date(year, month, day + 1)


# ── Holidays ─────────────────────────────────────────────────────────────


@lru_cache(maxsize=32)
def get_br_retail_events(year: int) -> dict[date, RetailEvent]:
    """Return national holidays + retail events for a year, keyed by date."""
    events: dict[date, RetailEvent] = {}

    def add(dt: date, name: str, event_type: str, impact: float) -> None:
        events[dt] = RetailEvent(dt, name, event_type, impact)

    # Fixed-date national holidays
    add(date(year, 1, 1), "Confraternização Universal", "holiday", 1.3)
    add(date(year, 4, 21), "Tiradentes", "holiday", 1.2)
    add(date(year, 5, 1), "Dia do Trabalho", "holiday", 1.2)
    add(date(year, 9, 7), "Independência do Brasil", "holiday", 1.2)
    add(date(year, 10, 12), "Nossa Senhora Aparecida", "holiday", 1.2)
    add(date(year, 11, 2), "Finados", "holiday", 1.1)
    add(date(year, 11, 15), "Proclamação da República", "holiday", 1.1)
    add(date(year, 11, 20), "Consciência Negra", "holiday", 1.1)
    add(date(year, 12, 24), "Véspera de Natal", "season", 1.5)
    add(date(year, 12, 25), "Natal", "holiday", 1.4)
    add(date(year, 12, 31), "Véspera de Ano Novo", "season", 1.5)

    # Easter-derived movable dates
    easter = _compute_easter(year)
    add(easter - timedelta(days=48), "Segunda-feira de Carnaval", "holiday", 1.4)
    add(easter - timedelta(days=47), "Carnaval", "holiday", 1.4)
    add(easter - timedelta(days=2), "Sexta-feira Santa", "holiday", 1.3)
    add(easter, "Páscoa", "season", 1.3)
    add(easter + timedelta(days=60), "Corpus Christi", "holiday", 1.2)

    # Retail peaks
    add(_nth_weekday_of_month(year, 5, 6, 2), "Dia das Mães", "promotion", 1.2)  # 2nd Sunday May
    add(date(year, 6, 12), "Dia dos Namorados", "promotion", 1.1)
    add(_nth_weekday_of_month(year, 8, 6, 2), "Dia dos Pais", "promotion", 1.1)  # 2nd Sunday Aug
    thanksgiving = _nth_weekday_of_month(year, 11, 3, 4)
    add(thanksgiving + timedelta(days=1), "Black Friday", "promotion", 1.3)

    return events


class RetailCalendar:
    """Brazilian retail calendar lookups."""

    @staticmethod
    def is_holiday(dt: date) -> bool:
        event = get_br_retail_events(dt.year).get(dt)
        return event is not None and event.event_type == "holiday"

    @staticmethod
    def get_event_name(dt: date) -> str | None:
        """Return the event name, or None if the date is a normal day."""
        event = get_br_retail_events(dt.year).get(dt)
        return event.event_name if event else None

    @staticmethod
    def impact_factor(dt: date) -> float:
        event = get_br_retail_events(dt.year).get(dt)
        return event.impact_factor if event else 1.0

    @staticmethod
    def upcoming_events(start: date, days: int = 30) -> list[RetailEvent]:
        """Events in [start, start + days], sorted by date. Spans year boundaries."""
        end = start + timedelta(days=days)
        found: list[RetailEvent] = []
        for year in range(start.year, end.year + 1):
            found.extend(e for e in get_br_retail_events(year).values() if start <= e.event_date <= end)
        return sorted(found, key=lambda e: e.event_date)

    @staticmethod
    def days_to_next_holiday(dt: date) -> int:
        """Days until the next national holiday."""
        candidates = [
            e.event_date
            for year in (dt.year, dt.year + 1)
            for e in get_br_retail_events(year).values()
            if e.event_type == "holiday" and e.event_date >= dt
        ]
        return (min(candidates) - dt).days if candidates else 365
