"""Pytest configuration and shared fixtures."""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sqlalchemy import create_engine

from chat_monitor.contexts import CONTEXTS, ContextRegistry
from chat_monitor.storage import QueryExecutor, chat_messages, metadata
from chat_monitor.timewindow import Window

# 12:00 in Asia/Jakarta
NOW = datetime(2026, 10, 19, 5, 0, tzinfo=timezone.utc)


def msg(session_id: str, role: str, minutes_ago: float, content: str = "", seq: int = 0) -> dict:
    """Build a chat_messages row relative to NOW."""
    return {
        "session_id": session_id,
        "role": role,
        "content": content or f"{role} message",
        "created_at": NOW - timedelta(minutes=minutes_ago),
        "seq": seq,
    }


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test with no database configured and default settings."""
    for ctx in CONTEXTS:
        monkeypatch.delenv(ctx.env_var, raising=False)
    for name in (
        "PENDING_THRESHOLD_MINUTES",
        "DEFAULT_DATE_RANGE_DAYS",
        "DB_POOL_MAX",
        "MONITOR_TIMEZONE",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def db_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_db(db_dir):
    """Factory creating a SQLite transcript database and returning its URL."""
    engines = []

    def factory(name: str, rows: list[dict] | None = None) -> str:
        url = f"sqlite:///{db_dir / name}.db"
        engine = create_engine(url)
        engines.append(engine)
        metadata.create_all(engine)
        if rows:
            with engine.begin() as conn:
                conn.execute(chat_messages.insert(), rows)
        return url

    yield factory
    for engine in engines:
        engine.dispose()


@pytest.fixture
def registry():
    reg = ContextRegistry()
    yield reg
    reg.dispose()


@pytest.fixture
def executor(registry):
    return QueryExecutor(registry)


@pytest.fixture
def window():
    """Window covering the day before NOW and the next hour."""
    return Window(start=NOW - timedelta(days=1), end=NOW + timedelta(hours=1))


@pytest.fixture
def two_contexts(make_db, monkeypatch):
    """AMG:sales and LMP:customer bound to populated databases.

    AMG:sales
    - s-open: one human message 10 minutes ago (pending)
    - s-chat: human then ai reply 10s later, 30 minutes ago
    - s-old: 3 days old, outside the window
    LMP:customer
    - c-1: human, ai 100s later, 5 minutes ago
    - c-2: only an ai message 1 minute ago
    """
    amg = make_db(
        "amg_sales",
        [
            msg("s-open", "human", 10, "Halo, mau tanya harga paket"),
            msg("s-chat", "human", 30, "Berapa harga paket premium?"),
            msg("s-chat", "ai", 30 - 10 / 60, "Harga paket premium 100rb"),
            msg("s-old", "human", 3 * 24 * 60, "pesan lama"),
        ],
    )
    lmp = make_db(
        "lmp_customer",
        [
            msg("c-1", "human", 5 + 100 / 60, "Paket saya belum aktif"),
            msg("c-1", "ai", 5, "Kami cek dulu ya"),
            msg("c-2", "ai", 1, "Promo hari ini"),
        ],
    )
    monkeypatch.setenv("DB_URL_AMG_SALES", amg)
    monkeypatch.setenv("DB_URL_LMP_CUSTOMER", lmp)
    return {"AMG:sales": amg, "LMP:customer": lmp}
