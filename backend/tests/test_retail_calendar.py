"""
Tests for the Brazilian Retail Calendar.

Covers:
  - Fixed-date national holidays
  - Easter-derived movable dates (Carnaval, Sexta-feira Santa, Corpus Christi)
  - Retail peaks (Dia das Mães, Dia dos Pais, Black Friday)
  - Upcoming events across year boundaries
"""

from datetime import date

from retail.calendar import RetailCalendar, _compute_easter, get_br_retail_events

# ── Fixed-Date Holidays ────────────────────────────────────────────────


class TestFixedHolidays:
    def test_natal(self):
        assert RetailCalendar.is_holiday(date(2026, 12, 25))
        assert RetailCalendar.get_event_name(date(2026, 12, 25)) == "Natal"

    def test_tiradentes(self):
        assert RetailCalendar.is_holiday(date(2026, 4, 21))

    def test_christmas_eve_is_season_not_holiday(self):
        assert not RetailCalendar.is_holiday(date(2026, 12, 24))
        assert RetailCalendar.impact_factor(date(2026, 12, 24)) == 1.5

    def test_normal_day(self):
        assert RetailCalendar.get_event_name(date(2026, 3, 10)) is None
        assert RetailCalendar.impact_factor(date(2026, 3, 10)) == 1.0


# ── Movable Dates ──────────────────────────────────────────────────────


class TestMovableDates:
    def test_easter(self):
        assert _compute_easter(2025) == date(2025, 4, 20)
        assert _compute_easter(2026) == date(2026, 4, 5)

    def test_carnaval_2026(self):
        assert RetailCalendar.get_event_name(date(2026, 2, 17)) == "Carnaval"

    def test_good_friday_and_corpus_christi(self):
        events = get_br_retail_events(2026)
        assert events[date(2026, 4, 3)].event_name == "Sexta-feira Santa"
        assert events[date(2026, 6, 4)].event_name == "Corpus Christi"


class TestRetailPeaks:
    def test_mothers_day_second_sunday_of_may(self):
        assert RetailCalendar.get_event_name(date(2026, 5, 10)) == "Dia das Mães"

    def test_fathers_day_second_sunday_of_august(self):
        assert RetailCalendar.get_event_name(date(2026, 8, 9)) == "Dia dos Pais"

    def test_black_friday(self):
        event = get_br_retail_events(2026)[date(2026, 11, 27)]
        assert event.event_name == "Black Friday"
        assert event.event_type == "promotion"


# ── Upcoming Events ────────────────────────────────────────────────────


class TestUpcoming:
    def test_spans_year_boundary(self):
        names = [e.event_name for e in RetailCalendar.upcoming_events(date(2026, 12, 20), days=15)]
        assert names[0] == "Véspera de Natal"
        assert "Confraternização Universal" in names

    def test_sorted(self):
        events = RetailCalendar.upcoming_events(date(2026, 4, 1), days=60)
        dates = [e.event_date for e in events]
        assert dates == sorted(dates)

    def test_days_to_next_holiday_skips_seasons(self):
        # Dec 31 is a season event; next holiday is Jan 1
        assert RetailCalendar.days_to_next_holiday(date(2026, 12, 26)) == 6
