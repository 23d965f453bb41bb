"""Cross-context aggregation queries for the chat monitor.

Each query is issued independently against every active context. The
per-context calls run concurrently and the merge step only starts once all
of them have returned, so the merge always works on complete, private row
lists.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone

from chat_monitor import config
from chat_monitor.contexts import BOTS, OFFICES, Context
from chat_monitor.storage import QueryExecutor, SourceQueryError, as_utc
from chat_monitor.timewindow import Filters, Window, resolve_window

logger = logging.getLogger("chat-monitor")

STATUS_OVERDUE = "Overdue"
STATUS_OPEN = "Open"
STATUS_NEEDS_ATTENTION = "Needs attention"
STATUS_CLOSED = "Closed"

# Sessions longer than this need a look even when the bot is answering
LONG_SESSION_MESSAGES = 20

SNIPPET_LENGTH = 80
TOP_WORDS_MESSAGE_CAP = 5000
TOP_WORDS_LIMIT = 10
MIN_TOKEN_LENGTH = 3

STOP_WORDS = frozenset(
    {
        "dan",
        "atau",
        "yang",
        "untuk",
        "dari",
        "dengan",
        "pada",
        "dalam",
        "ini",
        "itu",
        "saya",
        "aku",
        "kami",
        "kita",
        "kamu",
        "anda",
        "dia",
        "mereka",
        "apa",
        "oke",
        "baik",
        "iya",
        "tidak",
        "nggak",
        "gak",
        "aja",
        "saja",
        "lagi",
        "sudah",
        "belum",
        "jadi",
        "bisa",
        "mau",
    }
)

_TOKEN_SPLIT = re.compile(r"[\s.,!?;:()\"'`\[\]{}\\/]+")


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

WINDOW_CLAUSE = "created_at >= :start AND created_at < :end"

ACTIVITY_SQL = f"""
    SELECT
        COUNT(DISTINCT session_id) AS session_count,
        COUNT(*) AS message_count
    FROM chat_messages
    WHERE {WINDOW_CLAUSE}
"""

RECENT_SESSIONS_SQL = f"""
    SELECT
        session_id,
        MAX(created_at) AS last_activity,
        COUNT(*) AS message_count,
        SUM(CASE WHEN role = 'human' THEN 1 ELSE 0 END) AS human_count,
        SUM(CASE WHEN role = 'ai' THEN 1 ELSE 0 END) AS ai_count
    FROM chat_messages
    WHERE {WINDOW_CLAUSE}
    GROUP BY session_id
    ORDER BY last_activity DESC, session_id
    LIMIT :limit
"""

PENDING_SESSIONS_SQL = f"""
    WITH ranked AS (
        SELECT
            session_id,
            role,
            created_at,
            ROW_NUMBER() OVER (
                PARTITION BY session_id ORDER BY created_at DESC, seq DESC
            ) AS rn
        FROM chat_messages
        WHERE {WINDOW_CLAUSE}
    )
    SELECT session_id, created_at AS last_human_at
    FROM ranked
    WHERE rn = 1
      AND role = 'human'
      AND created_at < :threshold
    ORDER BY last_human_at DESC, session_id
    LIMIT :limit
"""

# Strictly consecutive pairs: a reply only counts when the ai message
# immediately follows the human one within the session.
RESPONSE_PAIRS_SQL = f"""
    WITH paired AS (
        SELECT
            role,
            created_at,
            LAG(role) OVER (
                PARTITION BY session_id ORDER BY created_at, seq
            ) AS prev_role,
            LAG(created_at) OVER (
                PARTITION BY session_id ORDER BY created_at, seq
            ) AS prev_created_at
        FROM chat_messages
        WHERE {WINDOW_CLAUSE}
    )
    SELECT prev_created_at, created_at
    FROM paired
    WHERE role = 'ai'
      AND prev_role = 'human'
      AND prev_created_at IS NOT NULL
      AND created_at > prev_created_at
"""

HUMAN_CONTENT_SQL = f"""
    SELECT content
    FROM chat_messages
    WHERE {WINDOW_CLAUSE}
      AND role = 'human'
    ORDER BY created_at, seq
    LIMIT :limit
"""

SESSION_LIST_SQL = f"""
    WITH base AS (
        SELECT
            session_id,
            role,
            content,
            created_at,
            ROW_NUMBER() OVER (
                PARTITION BY session_id ORDER BY created_at DESC, seq DESC
            ) AS rn
        FROM chat_messages
        WHERE {WINDOW_CLAUSE}
    ),
    aggregated AS (
        SELECT
            session_id,
            MAX(created_at) AS last_activity,
            COUNT(*) AS message_count
        FROM base
        GROUP BY session_id
    )
    SELECT
        aggregated.session_id,
        aggregated.last_activity,
        aggregated.message_count,
        base.role AS last_role,
        base.content AS last_content
    FROM aggregated
    JOIN base ON base.session_id = aggregated.session_id AND base.rn = 1
    ORDER BY aggregated.last_activity DESC, aggregated.session_id
    LIMIT :limit OFFSET :offset
"""

SESSION_MESSAGES_SQL = """
    SELECT id, session_id, role, content, created_at
    FROM chat_messages
    WHERE session_id = :session_id
    ORDER BY created_at ASC, seq ASC
    LIMIT :limit
"""


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ActivitySummary:
    total_sessions: int = 0
    total_messages: int = 0


@dataclass
class RecentSession:
    id: str
    session_id: str
    office: str
    bot: str
    context_label: str
    last_activity: datetime
    message_count: int
    human_count: int
    ai_count: int


@dataclass
class PendingSession:
    id: str
    session_id: str
    office: str
    bot: str
    context_label: str
    last_human_at: datetime


@dataclass
class ResponseTimeStats:
    """Reply latency in seconds; None when no valid human -> ai pair exists."""

    median_seconds: float | None = None
    p95_seconds: float | None = None


@dataclass
class WordFrequency:
    word: str
    count: int


@dataclass
class SessionTableRow:
    id: str
    session_id: str
    office: str
    bot: str
    context_label: str
    last_activity: datetime
    message_count: int
    human_count: int
    ai_count: int
    status: str


@dataclass
class SessionListItem:
    id: str
    session_id: str
    office: str
    bot: str
    last_activity: datetime
    last_speaker: str  # 'human', 'ai' or 'other'
    last_message_snippet: str
    message_count: int
    is_overdue: bool


@dataclass
class MessageView:
    id: int
    role: str
    content: str
    created_at: datetime


@dataclass
class Dashboard:
    filters: Filters
    window: Window
    activity: ActivitySummary
    sessions: list[SessionTableRow]
    pending: list[PendingSession]
    response_times: ResponseTimeStats
    top_words: list[WordFrequency]
    configured_contexts: list[str] = field(default_factory=list)
    missing_contexts: list[dict] = field(default_factory=list)
    failed_contexts: list[str] = field(default_factory=list)


def _jsonable(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def to_dict(obj) -> dict:
    """Convert a result dataclass into JSON-ready primitives."""
    return _jsonable(asdict(obj))


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


class SourcesUnavailableError(Exception):
    """Every active context failed, so there is no data to show."""

    def __init__(self, context_keys: list[str]):
        super().__init__(f"All sources failed: {', '.join(context_keys)}")
        self.context_keys = context_keys


class SourceHealth:
    """Records which contexts answered and which failed during one request."""

    def __init__(self):
        self.answered: set[str] = set()
        self.failed: set[str] = set()

    def record(self, context_key: str, ok: bool) -> None:
        (self.answered if ok else self.failed).add(context_key)

    def all_failed(self, contexts: list[Context]) -> bool:
        if not contexts or not self.failed:
            return False
        return not any(ctx.key in self.answered for ctx in contexts)

    def raise_if_all_failed(self, contexts: list[Context]) -> None:
        if self.all_failed(contexts):
            keys = [ctx.key for ctx in contexts]
            logger.error(f"No context answered: {', '.join(keys)}")
            raise SourcesUnavailableError(keys)


async def _fan_out(
    executor: QueryExecutor,
    contexts: list[Context],
    sql: str,
    params: dict,
    health: SourceHealth | None = None,
) -> list[tuple[Context, list[dict]]]:
    """Run one query on every context concurrently.

    Failing contexts are logged and left out of the result. Results keep the
    order of ``contexts``.
    """

    async def run(ctx: Context) -> tuple[Context, list[dict] | None]:
        try:
            return ctx, await executor.fetch(ctx, sql, params)
        except SourceQueryError as e:
            logger.warning(f"[{ctx.key}] query failed: {e.cause}")
            return ctx, None

    outcomes = await asyncio.gather(*(run(ctx) for ctx in contexts))

    results = []
    for ctx, rows in outcomes:
        if health is not None:
            health.record(ctx.key, rows is not None)
        if rows is not None:
            results.append((ctx, rows))
    return results


def _window_params(window: Window, **extra) -> dict:
    return {"start": window.start, "end": window.end, **extra}


def composite_id(ctx: Context, session_id: str) -> str:
    return f"{ctx.key}:{session_id}"


# ---------------------------------------------------------------------------
# Aggregations
# ---------------------------------------------------------------------------


async def get_activity_summary(
    executor: QueryExecutor,
    contexts: list[Context],
    window: Window,
    health: SourceHealth | None = None,
) -> ActivitySummary:
    """Distinct sessions and messages in the window, summed over contexts."""
    summary = ActivitySummary()
    if not contexts:
        return summary

    for _, rows in await _fan_out(executor, contexts, ACTIVITY_SQL, _window_params(window), health):
        if rows:
            summary.total_sessions += int(rows[0].get("session_count") or 0)
            summary.total_messages += int(rows[0].get("message_count") or 0)
    return summary


async def get_recent_sessions(
    executor: QueryExecutor,
    contexts: list[Context],
    window: Window,
    limit: int = config.DASHBOARD_PAGE_SIZE,
    health: SourceHealth | None = None,
) -> list[RecentSession]:
    """Most recently active sessions across contexts.

    Each context returns only its own top ``limit`` sessions before the
    global merge. That is enough for the global top ``limit``; only sessions
    tied on last activity at the cut-off may be picked differently than a
    single global query would pick them.
    """
    if not contexts:
        return []

    params = _window_params(window, limit=limit)
    sessions = []
    for ctx, rows in await _fan_out(executor, contexts, RECENT_SESSIONS_SQL, params, health):
        for row in rows:
            sessions.append(
                RecentSession(
                    id=composite_id(ctx, row["session_id"]),
                    session_id=row["session_id"],
                    office=ctx.office,
                    bot=ctx.bot,
                    context_label=ctx.label,
                    last_activity=as_utc(row["last_activity"]),
                    message_count=int(row["message_count"] or 0),
                    human_count=int(row["human_count"] or 0),
                    ai_count=int(row["ai_count"] or 0),
                )
            )

    sessions.sort(key=lambda s: s.last_activity, reverse=True)
    return sessions[:limit]


async def get_pending_sessions(
    executor: QueryExecutor,
    contexts: list[Context],
    window: Window,
    now: datetime,
    threshold: timedelta,
    limit: int = config.DASHBOARD_PAGE_SIZE,
    health: SourceHealth | None = None,
) -> list[PendingSession]:
    """Sessions whose last message is human and older than ``now - threshold``."""
    if not contexts:
        return []

    params = _window_params(window, threshold=now - threshold, limit=limit)
    sessions = []
    for ctx, rows in await _fan_out(executor, contexts, PENDING_SESSIONS_SQL, params, health):
        for row in rows:
            sessions.append(
                PendingSession(
                    id=composite_id(ctx, row["session_id"]),
                    session_id=row["session_id"],
                    office=ctx.office,
                    bot=ctx.bot,
                    context_label=ctx.label,
                    last_human_at=as_utc(row["last_human_at"]),
                )
            )

    sessions.sort(key=lambda s: s.last_human_at, reverse=True)
    return sessions[:limit]


def percentile(values: list[float], fraction: float) -> float | None:
    """Percentile by linear interpolation between closest ranks.

    Same definition as SQL ``PERCENTILE_CONT``: the value at fractional rank
    ``fraction * (n - 1)`` of the sorted samples.
    """
    if not values:
        return None
    ordered = sorted(values)
    rank = fraction * (len(ordered) - 1)
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return float(ordered[lower])
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (rank - lower)


def _reply_gaps(rows: list[dict]) -> list[float]:
    gaps = []
    for row in rows:
        prev_at = as_utc(row.get("prev_created_at"))
        at = as_utc(row.get("created_at"))
        if prev_at is None or at is None:
            continue
        seconds = (at - prev_at).total_seconds()
        if seconds > 0:
            gaps.append(seconds)
    return gaps


async def get_response_time_stats(
    executor: QueryExecutor,
    contexts: list[Context],
    window: Window,
    health: SourceHealth | None = None,
) -> ResponseTimeStats:
    """Median and p95 of human -> ai reply gaps.

    Percentiles are computed per context and the result is the plain mean of
    the per-context estimates, not a percentile over the pooled samples.
    Contexts without a valid pair do not take part in the mean.
    """
    if not contexts:
        return ResponseTimeStats()

    medians = []
    p95s = []
    for _, rows in await _fan_out(
        executor, contexts, RESPONSE_PAIRS_SQL, _window_params(window), health
    ):
        gaps = _reply_gaps(rows)
        if not gaps:
            continue
        medians.append(percentile(gaps, 0.5))
        p95s.append(percentile(gaps, 0.95))

    if not medians or not p95s:
        return ResponseTimeStats()

    return ResponseTimeStats(
        median_seconds=sum(medians) / len(medians),
        p95_seconds=sum(p95s) / len(p95s),
    )


def tokenize(content: str) -> list[str]:
    """Lowercase, split on whitespace and punctuation, drop short and stop words."""
    return [
        token
        for token in _TOKEN_SPLIT.split(content.lower())
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOP_WORDS
    ]


async def get_top_words(
    executor: QueryExecutor,
    contexts: list[Context],
    window: Window,
    limit: int = TOP_WORDS_LIMIT,
    health: SourceHealth | None = None,
) -> list[WordFrequency]:
    """Most frequent words in human messages, best effort.

    Ties keep the order in which words were first seen, walking contexts in
    canonical order.
    """
    if not contexts:
        return []

    params = _window_params(window, limit=TOP_WORDS_MESSAGE_CAP)
    counts: Counter[str] = Counter()
    for _, rows in await _fan_out(executor, contexts, HUMAN_CONTENT_SQL, params, health):
        for row in rows:
            if row.get("content"):
                counts.update(tokenize(row["content"]))

    return [WordFrequency(word=word, count=count) for word, count in counts.most_common(limit)]


# ---------------------------------------------------------------------------
# Session status and search
# ---------------------------------------------------------------------------


def derive_status(session: RecentSession, pending_ids: set[str]) -> str:
    """First matching rule wins: overdue, open, needs attention, closed."""
    if session.id in pending_ids:
        return STATUS_OVERDUE
    if session.ai_count == 0 and session.human_count > 0:
        return STATUS_OPEN
    if session.message_count > LONG_SESSION_MESSAGES or (
        session.human_count > 0 and session.ai_count > 0
    ):
        return STATUS_NEEDS_ATTENTION
    return STATUS_CLOSED


def apply_search(items: list, term: str | None) -> list:
    """Keep items whose session id contains ``term``, ignoring case.

    Runs on an already merged and truncated page, so matching sessions that
    fell outside the page are not brought back.
    """
    if not term:
        return items
    lowered = term.lower()
    return [item for item in items if lowered in item.session_id.lower()]


# ---------------------------------------------------------------------------
# Session list and messages
# ---------------------------------------------------------------------------


def _snippet(content: str | None) -> str:
    content = content or ""
    if len(content) > SNIPPET_LENGTH:
        return f"{content[: SNIPPET_LENGTH - 3]}…"
    return content


def _speaker(role: str | None) -> str:
    return role if role in ("human", "ai") else "other"


async def get_session_list(
    executor: QueryExecutor,
    contexts: list[Context],
    window: Window,
    now: datetime,
    threshold: timedelta,
    page: int = 1,
    search: str | None = None,
    page_size: int = config.SESSION_LIST_PAGE_SIZE,
    health: SourceHealth | None = None,
) -> list[SessionListItem]:
    """One page of sessions, newest first, with last speaker and snippet.

    The page offset is applied inside each context before the merge, so
    pages after the first are not the global pages when activity in the
    contexts interleaves.
    """
    if not contexts:
        return []

    params = _window_params(window, limit=page_size, offset=(page - 1) * page_size)
    cutoff = now - threshold
    sessions = []
    for ctx, rows in await _fan_out(executor, contexts, SESSION_LIST_SQL, params, health):
        for row in rows:
            last_activity = as_utc(row["last_activity"])
            speaker = _speaker(row.get("last_role"))
            sessions.append(
                SessionListItem(
                    id=composite_id(ctx, row["session_id"]),
                    session_id=row["session_id"],
                    office=ctx.office,
                    bot=ctx.bot,
                    last_activity=last_activity,
                    last_speaker=speaker,
                    last_message_snippet=_snippet(row.get("last_content")),
                    message_count=int(row["message_count"] or 0),
                    is_overdue=speaker == "human" and last_activity < cutoff,
                )
            )

    sessions.sort(key=lambda s: s.last_activity, reverse=True)
    return apply_search(sessions[:page_size], search)


def parse_composite_id(value: str) -> tuple[str, str, str] | None:
    """Split ``office:bot:session`` into its parts; None when malformed.

    Session ids may themselves contain colons.
    """
    parts = value.split(":")
    if len(parts) < 3:
        return None
    office, bot, *rest = parts
    if office not in OFFICES or bot not in BOTS:
        return None
    return office, bot, ":".join(rest)


async def get_session_messages(
    executor: QueryExecutor,
    session: str,
    limit: int = config.MESSAGE_LIMIT,
) -> list[MessageView]:
    """Messages of one session in chronological order.

    Malformed ids and unconfigured contexts give an empty list; a failing
    source raises SourcesUnavailableError.
    """
    parsed = parse_composite_id(session)
    if parsed is None:
        return []
    office, bot, session_id = parsed

    ctx = executor.registry.get_context(f"{office}:{bot}")
    if ctx is None or not ctx.is_configured:
        return []

    try:
        rows = await executor.fetch(
            ctx, SESSION_MESSAGES_SQL, {"session_id": session_id, "limit": limit}
        )
    except SourceQueryError as e:
        logger.error(f"[{ctx.key}] loading messages for {session_id} failed: {e.cause}")
        raise SourcesUnavailableError([ctx.key]) from e

    return [
        MessageView(
            id=row["id"],
            role=_speaker(row.get("role")),
            content=row.get("content") or "",
            created_at=as_utc(row["created_at"]),
        )
        for row in rows
    ]


# ---------------------------------------------------------------------------
# Request-level entry points
# ---------------------------------------------------------------------------


def pending_threshold() -> timedelta:
    return timedelta(minutes=config.get_pending_threshold_minutes())


async def list_sessions(
    executor: QueryExecutor,
    filters: Filters,
    now: datetime | None = None,
) -> list[SessionListItem]:
    """Session list for a set of filters (page size 50)."""
    now = now or datetime.now(timezone.utc)
    window = resolve_window(filters, now)
    contexts = executor.registry.filter_contexts(filters.office, filters.bot)
    health = SourceHealth()

    sessions = await get_session_list(
        executor,
        contexts,
        window,
        now,
        pending_threshold(),
        page=filters.page,
        search=filters.search,
        health=health,
    )
    health.raise_if_all_failed(contexts)
    return sessions


async def build_dashboard(
    executor: QueryExecutor,
    filters: Filters,
    now: datetime | None = None,
) -> Dashboard:
    """Run every dashboard aggregation concurrently and assemble the result.

    Raises:
        SourcesUnavailableError: when active contexts exist but none answered
    """
    now = now or datetime.now(timezone.utc)
    window = resolve_window(filters, now)
    registry = executor.registry
    contexts = registry.filter_contexts(filters.office, filters.bot)
    health = SourceHealth()

    activity, recent, pending, response_times, top_words = await asyncio.gather(
        get_activity_summary(executor, contexts, window, health=health),
        get_recent_sessions(executor, contexts, window, health=health),
        get_pending_sessions(executor, contexts, window, now, pending_threshold(), health=health),
        get_response_time_stats(executor, contexts, window, health=health),
        get_top_words(executor, contexts, window, health=health),
    )
    health.raise_if_all_failed(contexts)

    pending_ids = {s.id for s in pending}
    rows = [
        SessionTableRow(**asdict(session), status=derive_status(session, pending_ids))
        for session in recent
    ]

    return Dashboard(
        filters=filters,
        window=window,
        activity=activity,
        sessions=apply_search(rows, filters.search),
        pending=pending,
        response_times=response_times,
        top_words=top_words,
        configured_contexts=[ctx.key for ctx in registry.configured_contexts()],
        missing_contexts=[
            {"key": ctx.key, "label": ctx.label, "env_var": ctx.env_var}
            for ctx in registry.missing_contexts()
        ],
        failed_contexts=sorted(health.failed),
    )
