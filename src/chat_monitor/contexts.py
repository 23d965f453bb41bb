"""Registry of the fixed transcript data contexts and their connection pools."""

import logging
import os
import threading
from dataclasses import dataclass, replace

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from chat_monitor import config

logger = logging.getLogger("chat-monitor")

OFFICES = ("AMG", "LMP")
BOTS = ("sales", "customer")


@dataclass(frozen=True)
class Context:
    """One (business unit, bot type) transcript source."""

    office: str
    bot: str
    label: str
    env_var: str
    url: str | None = None

    @property
    def key(self) -> str:
        return f"{self.office}:{self.bot}"

    @property
    def is_configured(self) -> bool:
        return self.url is not None


# Canonical iteration order; merges that break ties by encounter order rely on it
CONTEXTS: tuple[Context, ...] = (
    Context(office="AMG", bot="sales", label="AMG Sales", env_var="DB_URL_AMG_SALES"),
    Context(office="AMG", bot="customer", label="AMG Customer", env_var="DB_URL_AMG_CUSTOMER"),
    Context(office="LMP", bot="sales", label="LMP Sales", env_var="DB_URL_LMP_SALES"),
    Context(office="LMP", bot="customer", label="LMP Customer", env_var="DB_URL_LMP_CUSTOMER"),
)


def _resolve_url(env_var: str) -> str | None:
    value = os.environ.get(env_var)
    if not value or not value.strip():
        return None
    return value.strip()


class ContextRegistry:
    """Resolves context endpoints and owns one lazily created pool per context.

    Endpoints are looked up in the environment on every access. A pool, once
    created for a context, is reused until ``dispose()`` is called.
    """

    def __init__(self, contexts: tuple[Context, ...] = CONTEXTS):
        self._contexts = contexts
        self._engines: dict[str, tuple[str, Engine]] = {}
        self._lock = threading.Lock()

    def all_contexts(self) -> list[Context]:
        """Return every context with its current endpoint binding."""
        return [replace(ctx, url=_resolve_url(ctx.env_var)) for ctx in self._contexts]

    def configured_contexts(self) -> list[Context]:
        return [ctx for ctx in self.all_contexts() if ctx.is_configured]

    def missing_contexts(self) -> list[Context]:
        return [ctx for ctx in self.all_contexts() if not ctx.is_configured]

    def filter_contexts(self, office: str = "all", bot: str = "all") -> list[Context]:
        """Return the configured contexts matching an office/bot filter."""
        return [
            ctx
            for ctx in self.configured_contexts()
            if (office == "all" or ctx.office == office) and (bot == "all" or ctx.bot == bot)
        ]

    def get_context(self, key: str) -> Context | None:
        for ctx in self.all_contexts():
            if ctx.key == key:
                return ctx
        return None

    def get_engine(self, context: Context) -> Engine | None:
        """Return the pool for a context, creating it on first use.

        Returns None when the context currently has no endpoint.
        """
        with self._lock:
            current = self.get_context(context.key)
            if current is None or current.url is None:
                return None

            cached = self._engines.get(context.key)
            if cached is not None:
                url, engine = cached
                if url == current.url:
                    return engine
                # Endpoint changed since the pool was built
                engine.dispose()

            pool_max = config.get_pool_max()
            engine = create_engine(
                current.url,
                pool_size=pool_max,
                max_overflow=0,
                pool_pre_ping=True,
            )
            self._engines[context.key] = (current.url, engine)
            logger.info(f"Created pool for {context.key} (max {pool_max} connections)")
            return engine

    def dispose(self) -> None:
        """Close every cached pool."""
        with self._lock:
            for _, engine in self._engines.values():
                engine.dispose()
            self._engines.clear()

    def status(self) -> dict:
        """Configured and missing contexts, for operator warnings."""
        contexts = self.all_contexts()
        return {
            "configured": [
                {"key": ctx.key, "label": ctx.label} for ctx in contexts if ctx.is_configured
            ],
            "missing": [
                {"key": ctx.key, "label": ctx.label, "env_var": ctx.env_var}
                for ctx in contexts
                if not ctx.is_configured
            ],
        }
