"""Environment-driven settings.

Every value is read at call time so that changing the environment of a
long-running server takes effect on the next request.
"""

import math
import os

DEFAULT_PENDING_THRESHOLD_MINUTES = 2
DEFAULT_DATE_RANGE_DAYS = 7
DEFAULT_POOL_MAX = 5
DEFAULT_TIMEZONE = "Asia/Jakarta"

# Fixed page sizes
SESSION_LIST_PAGE_SIZE = 50
DASHBOARD_PAGE_SIZE = 20
MESSAGE_LIMIT = 1000


def _read_number(name: str) -> float | None:
    """Parse a numeric variable; None when unset, blank, non-numeric or infinite."""
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def get_pending_threshold_minutes() -> float:
    """Minutes after which an unanswered human message counts as pending.

    Defaults to 2 and never goes below 1.
    """
    value = _read_number("PENDING_THRESHOLD_MINUTES")
    if value is None:
        return DEFAULT_PENDING_THRESHOLD_MINUTES
    return max(1.0, value)


def get_default_range_days() -> int:
    """Length in days of the fallback date range."""
    value = _read_number("DEFAULT_DATE_RANGE_DAYS")
    if value is None or value < 1:
        return DEFAULT_DATE_RANGE_DAYS
    return int(value)


def get_pool_max() -> int:
    """Max connections held by each context's pool."""
    value = _read_number("DB_POOL_MAX")
    if value is None or value < 1:
        return DEFAULT_POOL_MAX
    return int(value)


def get_timezone_name() -> str:
    return os.environ.get("MONITOR_TIMEZONE") or DEFAULT_TIMEZONE
