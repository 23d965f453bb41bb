"""Chat Monitor - cross-context dashboard over chat transcript databases."""

from importlib.metadata import version

try:
    __version__ = version("chat-monitor")
except Exception:
    __version__ = "0.1.0"  # Fallback for development

# Re-export public API
from chat_monitor.contexts import CONTEXTS, Context, ContextRegistry
from chat_monitor.queries import SourcesUnavailableError, build_dashboard, list_sessions
from chat_monitor.storage import QueryExecutor, SourceQueryError
from chat_monitor.timewindow import Filters, Window, parse_filters, resolve_window

__all__ = [
    # Version
    "__version__",
    # Contexts
    "CONTEXTS",
    "Context",
    "ContextRegistry",
    # Storage
    "QueryExecutor",
    "SourceQueryError",
    # Time windows
    "Filters",
    "Window",
    "parse_filters",
    "resolve_window",
    # Aggregation
    "SourcesUnavailableError",
    "build_dashboard",
    "list_sessions",
]
