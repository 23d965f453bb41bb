"""Command-line interface for the chat monitor."""

import argparse
import asyncio
import json
from datetime import datetime, timezone

from chat_monitor.contexts import ContextRegistry
from chat_monitor.queries import (
    SourcesUnavailableError,
    build_dashboard,
    get_session_messages,
    list_sessions,
    to_dict,
)
from chat_monitor.storage import QueryExecutor
from chat_monitor.timewindow import format_timestamp, parse_filters

# Formatter registry: list of (predicate, formatter) tuples
# Each predicate checks if this formatter can handle the data
# Order matters - first match wins
_FORMATTERS: list[tuple[callable, callable]] = []


def _register_formatter(predicate: callable):
    """Decorator to register a formatter with its predicate."""

    def decorator(formatter: callable):
        _FORMATTERS.append((predicate, formatter))
        return formatter

    return decorator


def format_seconds(value: float | None) -> str:
    """Render a latency; unavailable values show as a dash, never as zero."""
    if value is None or value <= 0:
        return "—"
    if value < 1:
        return "< 1 s"
    return f"{round(value)} s"


def _label(iso: str | None) -> str:
    if not iso:
        return "unknown"
    return format_timestamp(datetime.fromisoformat(iso))


@_register_formatter(lambda d: "error" in d)
def _format_error(data: dict) -> list[str]:
    lines = [f"Error: {data['error']}"]
    if data.get("failed_contexts"):
        lines.append(f"Failed sources: {', '.join(data['failed_contexts'])}")
    return lines


@_register_formatter(lambda d: "configured" in d and "missing" in d)
def _format_status(data: dict) -> list[str]:
    lines = ["Configured sources:"]
    for ctx in data["configured"]:
        lines.append(f"  {ctx['label']} ({ctx['key']})")
    if not data["configured"]:
        lines.append("  (none)")
    if data["missing"]:
        lines.append("")
        lines.append("Missing sources:")
        for ctx in data["missing"]:
            lines.append(f"  {ctx['label']} ({ctx['env_var']} not set)")
    return lines


@_register_formatter(lambda d: "activity" in d and "response_times" in d)
def _format_dashboard(data: dict) -> list[str]:
    window = data["window"]
    lines = [
        f"Window: {_label(window['start'])} - {_label(window['end'])}",
        f"Sessions: {data['activity']['total_sessions']}",
        f"Messages: {data['activity']['total_messages']}",
        f"Reply time (median): {format_seconds(data['response_times']['median_seconds'])}",
        f"Reply time (p95): {format_seconds(data['response_times']['p95_seconds'])}",
        "",
        "Recent sessions:",
    ]
    for row in data["sessions"]:
        lines.append(
            f"  [{_label(row['last_activity'])}] {row['id']} "
            f"({row['message_count']} msgs) {row['status']}"
        )
    if not data["sessions"]:
        lines.append("  (none)")

    lines.append("")
    lines.append("Awaiting reply:")
    for session in data["pending"]:
        lines.append(
            f"  [{_label(session['last_human_at'])}] "
            f"{session['office']}/{session['bot']} {session['session_id']}"
        )
    if not data["pending"]:
        lines.append("  (none)")

    if data.get("top_words"):
        lines.append("")
        words = ", ".join(f"{w['word']} ({w['count']})" for w in data["top_words"])
        lines.append(f"Top words: {words}")

    if data.get("failed_contexts"):
        lines.append("")
        lines.append(f"Failed sources: {', '.join(data['failed_contexts'])}")

    if data.get("missing_contexts"):
        lines.append("")
        lines.append("Missing sources:")
        for ctx in data["missing_contexts"]:
            lines.append(f"  {ctx['label']} ({ctx['env_var']} not set)")
    return lines


@_register_formatter(lambda d: "sessions" in d and "page" in d)
def _format_sessions(data: dict) -> list[str]:
    lines = [f"Sessions (page {data['page']}):"]
    for s in data["sessions"]:
        marker = "!" if s["is_overdue"] else " "
        lines.append(
            f" {marker}[{_label(s['last_activity'])}] {s['id']} "
            f"{s['last_speaker']}: {s['last_message_snippet']}"
        )
    if not data["sessions"]:
        lines.append("  (none)")
    return lines


@_register_formatter(lambda d: "messages" in d and "session" in d)
def _format_messages(data: dict) -> list[str]:
    lines = [f"Session {data['session']} ({len(data['messages'])} messages)", ""]
    for m in data["messages"]:
        lines.append(f"  [{_label(m['created_at'])}] {m['role']}: {m['content']}")
    return lines


def format_output(data: dict, json_output: bool = False) -> str:
    """Format output as JSON or human-readable."""
    if json_output:
        return json.dumps(data, indent=2, default=str)

    # Find matching formatter from registry
    for predicate, formatter in _FORMATTERS:
        if predicate(data):
            return "\n".join(formatter(data))

    # Fallback to JSON if no formatter matches
    return json.dumps(data, indent=2, default=str)


def _filter_params(args) -> dict:
    return {
        "office": args.office,
        "bot": args.bot,
        "range": args.range,
        "from": getattr(args, "date_from", None),
        "to": getattr(args, "date_to", None),
        "q": getattr(args, "search", None),
        "page": str(getattr(args, "page", 1)),
    }


def _run(coro, registry: ContextRegistry):
    try:
        return asyncio.run(coro)
    finally:
        registry.dispose()


def cmd_status(args):
    """Show which data sources are configured."""
    registry = ContextRegistry()
    print(format_output(registry.status(), args.json))


def cmd_dashboard(args):
    """Show dashboard aggregates."""
    registry = ContextRegistry()
    executor = QueryExecutor(registry)
    filters = parse_filters(_filter_params(args))
    try:
        dashboard = _run(build_dashboard(executor, filters), registry)
        result = to_dict(dashboard)
    except SourcesUnavailableError as e:
        result = {"error": str(e), "failed_contexts": e.context_keys}
    print(format_output(result, args.json))


def cmd_sessions(args):
    """List sessions."""
    registry = ContextRegistry()
    executor = QueryExecutor(registry)
    filters = parse_filters(_filter_params(args))
    try:
        sessions = _run(list_sessions(executor, filters), registry)
        result = {"page": filters.page, "sessions": [to_dict(s) for s in sessions]}
    except SourcesUnavailableError as e:
        result = {"error": str(e), "failed_contexts": e.context_keys}
    print(format_output(result, args.json))


def cmd_messages(args):
    """Show the messages of one session."""
    registry = ContextRegistry()
    executor = QueryExecutor(registry)
    try:
        messages = _run(get_session_messages(executor, args.session), registry)
        result = {"session": args.session, "messages": [to_dict(m) for m in messages]}
    except SourcesUnavailableError as e:
        result = {"error": str(e), "failed_contexts": e.context_keys}
    print(format_output(result, args.json))


def cmd_serve(args):
    """Run the HTTP/MCP server."""
    from chat_monitor.server import main as serve

    serve()


def _add_filter_args(sub, with_page: bool = False):
    sub.add_argument(
        "--office", choices=["AMG", "LMP", "all"], default="all", help="Business unit"
    )
    sub.add_argument(
        "--bot", choices=["sales", "customer", "all"], default="all", help="Bot type"
    )
    sub.add_argument(
        "--range",
        choices=["today", "7d", "30d", "custom"],
        default="7d",
        help="Date range (default: 7d)",
    )
    sub.add_argument("--from", dest="date_from", help="First day for --range custom (YYYY-MM-DD)")
    sub.add_argument("--to", dest="date_to", help="Last day for --range custom (YYYY-MM-DD)")
    sub.add_argument("--search", help="Session id substring")
    if with_page:
        sub.add_argument("--page", type=int, default=1, help="Page number (default: 1)")


def main():
    """CLI entry point."""
    epilog = """
Examples:
  chat-monitor status                      # Which databases are configured
  chat-monitor dashboard --range today     # Today's activity for all contexts
  chat-monitor sessions --office AMG --page 2
  chat-monitor messages AMG:sales:6281234  # Transcript of one session

All commands support --json for machine-readable output.
Databases are read from DB_URL_AMG_SALES, DB_URL_AMG_CUSTOMER,
DB_URL_LMP_SALES and DB_URL_LMP_CUSTOMER.
"""
    parser = argparse.ArgumentParser(
        description="Chat Monitor CLI - Monitor chatbot transcripts across databases",
        prog="chat-monitor",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    sub = subparsers.add_parser("status", help="Show data source status")
    sub.set_defaults(func=cmd_status)

    # dashboard
    sub = subparsers.add_parser("dashboard", help="Show dashboard aggregates")
    _add_filter_args(sub)
    sub.set_defaults(func=cmd_dashboard)

    # sessions
    sub = subparsers.add_parser("sessions", help="List sessions")
    _add_filter_args(sub, with_page=True)
    sub.set_defaults(func=cmd_sessions)

    # messages
    sub = subparsers.add_parser("messages", help="Show messages of a session")
    sub.add_argument("session", help="Composite session id (office:bot:session)")
    sub.set_defaults(func=cmd_messages)

    # serve
    sub = subparsers.add_parser("serve", help="Run the HTTP/MCP server")
    sub.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
