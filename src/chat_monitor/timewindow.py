"""Request filters and date-range resolution.

Day boundaries follow the business's local calendar: the reference instant is
projected into the display timezone to find the local date, and the window
edges are that date's local midnight expressed as UTC instants.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from chat_monitor import config
from chat_monitor.contexts import BOTS, OFFICES

logger = logging.getLogger("chat-monitor")

PRESETS = ("today", "7d", "30d", "custom")
DEFAULT_PRESET = "7d"


@dataclass(frozen=True)
class Filters:
    """Parsed dashboard/session-list filters."""

    office: str = "all"
    bot: str = "all"
    preset: str = DEFAULT_PRESET
    date_from: str | None = None
    date_to: str | None = None
    search: str | None = None
    page: int = 1


@dataclass(frozen=True)
class Window:
    """Half-open UTC interval [start, end)."""

    start: datetime
    end: datetime


def _first(value):
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _parse_page(raw) -> int:
    if raw is None:
        return 1
    try:
        number = float(raw)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(number) or number <= 0:
        return 1
    return max(1, math.floor(number))


def parse_filters(params: dict | None) -> Filters:
    """Parse query parameters into Filters, defaulting anything invalid.

    Args:
        params: Mapping of parameter name to a string or list of strings

    Returns:
        Filters with office/bot falling back to "all", preset to "7d" and
        page to 1. Custom bounds are kept only for the "custom" preset.
    """
    params = params or {}
    office = _first(params.get("office"))
    bot = _first(params.get("bot"))
    preset = _first(params.get("range"))
    search = _first(params.get("q"))

    office = office if office in OFFICES or office == "all" else "all"
    bot = bot if bot in BOTS or bot == "all" else "all"
    preset = preset if preset in PRESETS else DEFAULT_PRESET

    date_from = date_to = None
    if preset == "custom":
        date_from = _first(params.get("from")) or None
        date_to = _first(params.get("to")) or None

    return Filters(
        office=office,
        bot=bot,
        preset=preset,
        date_from=date_from,
        date_to=date_to,
        search=search or None,
        page=_parse_page(_first(params.get("page"))),
    )


def display_timezone() -> ZoneInfo:
    name = config.get_timezone_name()
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using {config.DEFAULT_TIMEZONE}")
        return ZoneInfo(config.DEFAULT_TIMEZONE)


def local_date(instant: datetime) -> date:
    """Calendar date of an instant in the display timezone."""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(display_timezone()).date()


def local_midnight(day: date) -> datetime:
    """UTC instant of local midnight at the start of ``day``."""
    return datetime.combine(day, time.min, tzinfo=display_timezone()).astimezone(timezone.utc)


def _utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _parse_calendar_date(value: str, now: datetime) -> date:
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return local_date(now)


def resolve_window(filters: Filters, now: datetime) -> Window:
    """Resolve filters to a concrete half-open UTC window.

    Args:
        filters: Parsed filters
        now: Reference instant

    Returns:
        Window whose end is always after its start
    """
    if filters.preset == "custom" and filters.date_from and filters.date_to:
        first = _parse_calendar_date(filters.date_from, now)
        last = _parse_calendar_date(filters.date_to, now)
        if first > last:
            first, last = last, first
        # Custom bounds are literal calendar dates, no timezone projection
        return Window(start=_utc_midnight(first), end=_utc_midnight(last + timedelta(days=1)))

    # Edges are calendar dates first; local days are not always 24 hours long
    today = local_date(now)
    end = local_midnight(today + timedelta(days=1))
    if filters.preset == "today":
        return Window(start=local_midnight(today), end=end)

    days = 30 if filters.preset == "30d" else config.get_default_range_days()
    return Window(start=local_midnight(today + timedelta(days=1 - days)), end=end)


def format_timestamp(instant: datetime | None) -> str:
    """Operator-facing label, e.g. ``19/10/2026 14.05`` in the display timezone."""
    if instant is None:
        return ""
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(display_timezone()).strftime("%d/%m/%Y %H.%M")
