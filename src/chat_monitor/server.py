"""Chat Monitor server.

Serves the aggregation engine over plain HTTP GET routes and as MCP tools:
- GET /api/dashboard, get_dashboard: activity, latency, recent and pending sessions
- GET /api/sessions, list_sessions: paginated session list
- GET /api/chat, get_session_messages: messages of one session
- GET /health, get_status: configured and missing data sources
"""

import logging
import os
from datetime import datetime, timezone

from fastmcp import FastMCP
from starlette.requests import Request
from starlette.responses import JSONResponse

from chat_monitor import __version__
from chat_monitor.contexts import ContextRegistry
from chat_monitor.queries import (
    SourcesUnavailableError,
    build_dashboard,
    get_session_messages as do_get_session_messages,
    list_sessions as do_list_sessions,
    to_dict,
)
from chat_monitor.storage import QueryExecutor
from chat_monitor.timewindow import parse_filters

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("chat-monitor")
if os.environ.get("DEV_MODE"):
    logger.setLevel(logging.DEBUG)

UNAVAILABLE_MESSAGE = "Data sources are unavailable. Check the server log."

# Initialize MCP server
mcp = FastMCP("chat-monitor")

# One registry per process; pools live as long as it does
registry = ContextRegistry()
executor = QueryExecutor(registry)


def _query_params(request: Request) -> dict:
    return {key: request.query_params.getlist(key) for key in request.query_params.keys()}


def _filter_params(
    office: str,
    bot: str,
    date_range: str,
    date_from: str | None,
    date_to: str | None,
    search: str | None,
    page: int,
) -> dict:
    return {
        "office": office,
        "bot": bot,
        "range": date_range,
        "from": date_from,
        "to": date_to,
        "q": search,
        "page": str(page),
    }


# ---------------------------------------------------------------------------
# HTTP routes
# ---------------------------------------------------------------------------


@mcp.custom_route("/health", methods=["GET"])
async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "version": __version__, **registry.status()})


@mcp.custom_route("/api/dashboard", methods=["GET"])
async def dashboard_route(request: Request) -> JSONResponse:
    filters = parse_filters(_query_params(request))
    try:
        dashboard = await build_dashboard(executor, filters)
    except SourcesUnavailableError as e:
        return JSONResponse(
            {"error": UNAVAILABLE_MESSAGE, "failed_contexts": e.context_keys}, status_code=503
        )
    return JSONResponse(to_dict(dashboard))


@mcp.custom_route("/api/sessions", methods=["GET"])
async def sessions_route(request: Request) -> JSONResponse:
    filters = parse_filters(_query_params(request))
    try:
        sessions = await do_list_sessions(executor, filters)
    except SourcesUnavailableError:
        return JSONResponse({"sessions": [], "error": UNAVAILABLE_MESSAGE}, status_code=503)
    return JSONResponse({"sessions": [to_dict(s) for s in sessions]})


@mcp.custom_route("/api/chat", methods=["GET"])
async def chat_route(request: Request) -> JSONResponse:
    sid = request.query_params.get("sid")
    if not sid:
        return JSONResponse({"error": "sid is required"}, status_code=400)
    try:
        messages = await do_get_session_messages(executor, sid)
    except SourcesUnavailableError:
        return JSONResponse({"messages": [], "error": UNAVAILABLE_MESSAGE}, status_code=503)
    return JSONResponse({"messages": [to_dict(m) for m in messages]})


# ---------------------------------------------------------------------------
# MCP tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_status() -> dict:
    """Get data source configuration status.

    Returns:
        Configured contexts and contexts whose endpoint variable is unset
    """
    return {
        "status": "ok",
        "version": __version__,
        "checked_at": datetime.now(timezone.utc).isoformat(),
        **registry.status(),
    }


@mcp.tool()
async def get_dashboard(
    office: str = "all",
    bot: str = "all",
    date_range: str = "7d",
    date_from: str | None = None,
    date_to: str | None = None,
    search: str | None = None,
) -> dict:
    """Get dashboard aggregates across all matching chat contexts.

    Args:
        office: Business unit (AMG, LMP or all)
        bot: Bot type (sales, customer or all)
        date_range: today, 7d, 30d or custom
        date_from: First day (YYYY-MM-DD) for a custom range
        date_to: Last day (YYYY-MM-DD) for a custom range
        search: Session id substring to keep in the session table

    Returns:
        Activity totals, reply latency, recent and pending sessions, top words
    """
    filters = parse_filters(
        _filter_params(office, bot, date_range, date_from, date_to, search, 1)
    )
    try:
        dashboard = await build_dashboard(executor, filters)
    except SourcesUnavailableError as e:
        return {"status": "degraded", "error": str(e), "failed_contexts": e.context_keys}
    return {"status": "ok", **to_dict(dashboard)}


@mcp.tool()
async def list_sessions(
    office: str = "all",
    bot: str = "all",
    date_range: str = "7d",
    date_from: str | None = None,
    date_to: str | None = None,
    search: str | None = None,
    page: int = 1,
) -> dict:
    """List chat sessions, newest activity first, 50 per page.

    Args:
        office: Business unit (AMG, LMP or all)
        bot: Bot type (sales, customer or all)
        date_range: today, 7d, 30d or custom
        date_from: First day (YYYY-MM-DD) for a custom range
        date_to: Last day (YYYY-MM-DD) for a custom range
        search: Session id substring filter
        page: Page number, starting at 1

    Returns:
        Session summaries with last speaker, snippet and overdue flag
    """
    filters = parse_filters(
        _filter_params(office, bot, date_range, date_from, date_to, search, page)
    )
    try:
        sessions = await do_list_sessions(executor, filters)
    except SourcesUnavailableError as e:
        return {"status": "degraded", "error": str(e), "sessions": []}
    return {"status": "ok", "page": filters.page, "sessions": [to_dict(s) for s in sessions]}


@mcp.tool()
async def get_session_messages(session: str) -> dict:
    """Get the messages of one session in chronological order (max 1000).

    Args:
        session: Composite session id, e.g. "AMG:sales:628123456789"

    Returns:
        Message list; empty for malformed ids or unconfigured sources
    """
    try:
        messages = await do_get_session_messages(executor, session)
    except SourcesUnavailableError as e:
        return {"status": "degraded", "error": str(e), "messages": []}
    return {"status": "ok", "session": session, "messages": [to_dict(m) for m in messages]}


def create_app():
    """Create the ASGI app for uvicorn."""
    # stateless_http=True allows resilience to server restarts
    return mcp.http_app(stateless_http=True)


def main():
    """Run the server."""
    import uvicorn

    port = int(os.environ.get("PORT", 8082))
    host = os.environ.get("HOST", "127.0.0.1")

    print(f"Starting Chat Monitor on {host}:{port}")
    print(f"Dashboard JSON: http://{host}:{port}/api/dashboard")

    uvicorn.run(create_app(), host=host, port=port)


if __name__ == "__main__":
    main()
