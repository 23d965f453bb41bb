"""Tests for filter parsing and date-window resolution."""

from datetime import datetime, timedelta, timezone

import pytest

from chat_monitor.timewindow import (
    Filters,
    Window,
    format_timestamp,
    local_midnight,
    parse_filters,
    resolve_window,
)

# 12:00 in Asia/Jakarta (UTC+7)
NOW = datetime(2026, 10, 19, 5, 0, tzinfo=timezone.utc)
JAKARTA_MIDNIGHT_TODAY = datetime(2026, 10, 18, 17, 0, tzinfo=timezone.utc)
JAKARTA_MIDNIGHT_TOMORROW = datetime(2026, 10, 19, 17, 0, tzinfo=timezone.utc)


class TestParseFilters:
    """Tests for permissive filter parsing."""

    def test_defaults(self):
        assert parse_filters({}) == Filters()
        assert parse_filters(None) == Filters(
            office="all", bot="all", preset="7d", page=1
        )

    def test_valid_values(self):
        filters = parse_filters(
            {"office": "LMP", "bot": "sales", "range": "30d", "q": "628", "page": "3"}
        )
        assert filters.office == "LMP"
        assert filters.bot == "sales"
        assert filters.preset == "30d"
        assert filters.search == "628"
        assert filters.page == 3

    def test_invalid_values_fall_back(self):
        filters = parse_filters({"office": "XYZ", "bot": "support", "range": "90d"})
        assert filters.office == "all"
        assert filters.bot == "all"
        assert filters.preset == "7d"

    def test_list_values_use_first(self):
        filters = parse_filters({"office": ["AMG", "LMP"], "range": ["today"]})
        assert filters.office == "AMG"
        assert filters.preset == "today"

    @pytest.mark.parametrize(
        "raw,expected",
        [("2", 2), ("2.7", 2), ("0", 1), ("-4", 1), ("abc", 1), ("", 1), ("inf", 1), (None, 1)],
    )
    def test_page(self, raw, expected):
        assert parse_filters({"page": raw}).page == expected

    def test_custom_bounds_only_for_custom(self):
        filters = parse_filters({"range": "7d", "from": "2026-10-01", "to": "2026-10-05"})
        assert filters.date_from is None
        assert filters.date_to is None

        filters = parse_filters({"range": "custom", "from": "2026-10-01", "to": "2026-10-05"})
        assert filters.date_from == "2026-10-01"
        assert filters.date_to == "2026-10-05"

    def test_empty_search_is_none(self):
        assert parse_filters({"q": ""}).search is None


class TestResolveWindow:
    """Tests for preset resolution in the display timezone."""

    def test_today(self):
        window = resolve_window(Filters(preset="today"), NOW)
        assert window == Window(start=JAKARTA_MIDNIGHT_TODAY, end=JAKARTA_MIDNIGHT_TOMORROW)

    def test_today_uses_local_calendar_day(self):
        """01:00 in Jakarta is still the previous day in UTC."""
        late = datetime(2026, 10, 19, 18, 0, tzinfo=timezone.utc)
        window = resolve_window(Filters(preset="today"), late)
        assert window.start == JAKARTA_MIDNIGHT_TOMORROW
        assert window.end == JAKARTA_MIDNIGHT_TOMORROW + timedelta(days=1)

    def test_seven_days(self):
        window = resolve_window(Filters(preset="7d"), NOW)
        assert window.end == JAKARTA_MIDNIGHT_TOMORROW
        assert window.start == JAKARTA_MIDNIGHT_TOMORROW - timedelta(days=7)

    def test_thirty_days(self):
        window = resolve_window(Filters(preset="30d"), NOW)
        assert window.end == JAKARTA_MIDNIGHT_TOMORROW
        assert window.start == JAKARTA_MIDNIGHT_TOMORROW - timedelta(days=30)

    def test_unknown_preset_uses_default_days(self):
        window = resolve_window(Filters(preset="quarter"), NOW)
        assert window.start == JAKARTA_MIDNIGHT_TOMORROW - timedelta(days=7)

    def test_default_days_configurable(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_DATE_RANGE_DAYS", "14")
        window = resolve_window(Filters(preset="7d"), NOW)
        assert window.start == JAKARTA_MIDNIGHT_TOMORROW - timedelta(days=14)

    def test_invalid_default_days(self, monkeypatch):
        monkeypatch.setenv("DEFAULT_DATE_RANGE_DAYS", "-3")
        window = resolve_window(Filters(), NOW)
        assert window.start == JAKARTA_MIDNIGHT_TOMORROW - timedelta(days=7)

    def test_custom(self):
        filters = Filters(preset="custom", date_from="2026-10-01", date_to="2026-10-05")
        window = resolve_window(filters, NOW)
        assert window.start == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert window.end == datetime(2026, 10, 6, tzinfo=timezone.utc)

    def test_custom_single_day(self):
        filters = Filters(preset="custom", date_from="2026-10-05", date_to="2026-10-05")
        window = resolve_window(filters, NOW)
        assert window.end - window.start == timedelta(days=1)

    def test_custom_reversed_bounds(self):
        filters = Filters(preset="custom", date_from="2026-10-05", date_to="2026-10-01")
        window = resolve_window(filters, NOW)
        assert window.start == datetime(2026, 10, 1, tzinfo=timezone.utc)
        assert window.end == datetime(2026, 10, 6, tzinfo=timezone.utc)

    def test_custom_missing_bound_uses_default(self):
        filters = Filters(preset="custom", date_from="2026-10-01")
        window = resolve_window(filters, NOW)
        assert window.end == JAKARTA_MIDNIGHT_TOMORROW
        assert window.start == JAKARTA_MIDNIGHT_TOMORROW - timedelta(days=7)

    def test_custom_unparseable_bound_uses_today(self):
        filters = Filters(preset="custom", date_from="yesterday", date_to="2026-10-19")
        window = resolve_window(filters, NOW)
        assert window.start == datetime(2026, 10, 19, tzinfo=timezone.utc)
        assert window.end == datetime(2026, 10, 20, tzinfo=timezone.utc)

    @pytest.mark.parametrize("preset", ["today", "7d", "30d"])
    def test_ends_at_local_midnight(self, preset):
        window = resolve_window(Filters(preset=preset), NOW)
        assert window.end > window.start
        assert window.end == JAKARTA_MIDNIGHT_TOMORROW

    def test_idempotent(self):
        filters = Filters(preset="30d")
        assert resolve_window(filters, NOW) == resolve_window(filters, NOW)

    def test_timezone_override(self, monkeypatch):
        monkeypatch.setenv("MONITOR_TIMEZONE", "UTC")
        window = resolve_window(Filters(preset="today"), NOW)
        assert window.start == datetime(2026, 10, 19, tzinfo=timezone.utc)

    def test_today_on_daylight_saving_change(self, monkeypatch):
        """The fall-back day in New York is 25 hours long."""
        monkeypatch.setenv("MONITOR_TIMEZONE", "America/New_York")
        now = datetime(2026, 11, 1, 16, 0, tzinfo=timezone.utc)
        window = resolve_window(Filters(preset="today"), now)
        assert window.start == datetime(2026, 11, 1, 4, 0, tzinfo=timezone.utc)
        assert window.end == datetime(2026, 11, 2, 5, 0, tzinfo=timezone.utc)
        assert window.end - window.start == timedelta(hours=25)

    def test_seven_days_across_daylight_saving_change(self, monkeypatch):
        monkeypatch.setenv("MONITOR_TIMEZONE", "America/New_York")
        now = datetime(2026, 11, 3, 16, 0, tzinfo=timezone.utc)
        window = resolve_window(Filters(preset="7d"), now)
        # 2026-10-28 00:00 EDT to 2026-11-04 00:00 EST
        assert window.start == datetime(2026, 10, 28, 4, 0, tzinfo=timezone.utc)
        assert window.end == datetime(2026, 11, 4, 5, 0, tzinfo=timezone.utc)

    def test_thirty_days_across_spring_forward(self, monkeypatch):
        monkeypatch.setenv("MONITOR_TIMEZONE", "Europe/Berlin")
        now = datetime(2026, 4, 10, 12, 0, tzinfo=timezone.utc)
        window = resolve_window(Filters(preset="30d"), now)
        # 2026-03-12 00:00 CET to 2026-04-11 00:00 CEST
        assert window.start == datetime(2026, 3, 11, 23, 0, tzinfo=timezone.utc)
        assert window.end == datetime(2026, 4, 10, 22, 0, tzinfo=timezone.utc)


class TestHelpers:
    """Tests for timezone helpers."""

    def test_local_midnight(self):
        day = datetime(2026, 10, 19).date()
        assert local_midnight(day) == JAKARTA_MIDNIGHT_TODAY

    def test_format_timestamp(self):
        assert format_timestamp(NOW) == "19/10/2026 12.00"

    def test_format_timestamp_none(self):
        assert format_timestamp(None) == ""
