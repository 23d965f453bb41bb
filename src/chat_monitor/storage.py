"""Read-only query execution against per-context transcript databases."""

import asyncio
import logging
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, bindparam, text
from sqlalchemy.exc import ArgumentError, SQLAlchemyError

from chat_monitor.contexts import Context, ContextRegistry

logger = logging.getLogger("chat-monitor")

# Transcript schema owned by the chat system that writes the messages.
# Queries in this package only rely on these columns.
metadata = MetaData()

chat_messages = Table(
    "chat_messages",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("session_id", String(255), nullable=False, index=True),
    Column("role", String(32), nullable=False),  # 'human', 'ai', anything else is 'other'
    Column("content", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("seq", Integer, nullable=False, default=0),
)


class SourceQueryError(Exception):
    """A query against one context failed (connectivity, timeout, bad SQL)."""

    def __init__(self, context_key: str, cause: Exception):
        super().__init__(f"{context_key}: {cause}")
        self.context_key = context_key
        self.cause = cause


def as_utc(value) -> datetime | None:
    """Normalize a timestamp returned by a driver to an aware UTC datetime.

    Handles aware datetimes (PostgreSQL), naive datetimes and the ISO strings
    SQLite hands back for raw SQL. Naive values are taken to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _prepare(sql: str, params: dict):
    """Build the statement, binding datetime parameters as UTC timestamps."""
    stmt = text(sql)
    bound = {}
    typed = []
    for name, value in params.items():
        if isinstance(value, datetime):
            value = as_utc(value)
            typed.append(bindparam(name, type_=DateTime(timezone=True)))
        bound[name] = value
    if typed:
        stmt = stmt.bindparams(*typed)
    return stmt, bound


class QueryExecutor:
    """Runs parameterized SQL on the pool belonging to a context."""

    def __init__(self, registry: ContextRegistry):
        self.registry = registry

    def execute(self, context: Context, sql: str, params: dict | None = None) -> list[dict]:
        """Execute a query and return all rows as plain dicts.

        An unbound context yields an empty list. Any database failure is
        raised as SourceQueryError.

        Args:
            context: Context to query
            sql: SQL text with named (``:name``) parameters
            params: Parameter values

        Returns:
            List of row dicts
        """
        try:
            engine = self.registry.get_engine(context)
        except (ArgumentError, SQLAlchemyError, ImportError, TypeError, ValueError) as e:
            raise SourceQueryError(context.key, e) from e
        if engine is None:
            return []

        stmt, bound = _prepare(sql, params or {})
        logger.debug(f"[{context.key}] query params={bound}")
        try:
            with engine.connect() as conn:
                result = conn.execute(stmt, bound)
                return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as e:
            raise SourceQueryError(context.key, e) from e

    async def fetch(self, context: Context, sql: str, params: dict | None = None) -> list[dict]:
        """Async wrapper around execute() running in a worker thread."""
        return await asyncio.to_thread(self.execute, context, sql, params)
