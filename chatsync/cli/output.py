"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich table output (default) and machine-parseable
JSON output (--json flag). All formatting goes through these functions
so the CLI commands stay clean.
"""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chatsync.models import OverallStats, QueuedMessage, QueueStats

console = Console()

# Status color map for queue entries.
STATUS_COLORS = {
    "queued": "yellow",
    "sending": "blue",
    "retry_pending": "magenta",
    "failed": "red",
    "sent": "green",
}


def _render(renderable: Any) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def _short(value: Any, width: int = 19) -> str:
    if value is None or value == "":
        return "—"
    return str(value)[:width]


def format_overall_stats(stats: OverallStats, as_json: bool = False) -> str:
    """Format engine-wide counters as a Rich panel or JSON.

    Args:
        stats: Overall statistics snapshot.
        as_json: If True, return JSON string instead of Rich panel.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps(stats.to_dict(), indent=2)

    lines = [
        f"[bold]Active chats:[/bold]  {stats.active_chats}",
        f"[bold]Queued:[/bold]        {stats.total_queued}",
        f"[bold]Failed:[/bold]        [red]{stats.total_failed}[/red]",
        "",
        f"[bold]Cached chats:[/bold]  {stats.cached_chats}",
        f"[bold]Cached msgs:[/bold]   {stats.total_cached}",
    ]
    return _render(Panel("\n".join(lines), title="chatsync", border_style="cyan"))


def format_queue_table(
    chat_id: str,
    messages: list[QueuedMessage],
    stats: QueueStats,
    as_json: bool = False,
) -> str:
    """Format a chat's outbound queue as a Rich table or JSON.

    Args:
        chat_id: Chat the queue belongs to.
        messages: Queue entries in enqueue order.
        stats: Counts by status.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps(
            {
                "chat_id": chat_id,
                "stats": stats.to_dict(),
                "messages": [m.to_dict() for m in messages],
            },
            indent=2,
            default=str,
        )

    if not messages:
        return f"Queue for {chat_id} is empty."

    table = Table(title=f"Queue: {chat_id} ({stats.total})", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Queued")
    table.add_column("Content")
    table.add_column("Last error", style="red")

    for message in messages:
        color = STATUS_COLORS.get(message.status.value, "white")
        table.add_row(
            message.id,
            f"[{color}]{message.status.value}[/{color}]",
            str(message.retry_count),
            _short(message.queued_at),
            _short(message.content, 40),
            _short(message.last_error, 40),
        )
    return _render(table)


def format_message_table(
    title: str, messages: list[dict[str, Any]], as_json: bool = False
) -> str:
    """Format cached message records as a Rich table or JSON.

    Args:
        title: Table title.
        messages: Cached records sorted by timestamp.
        as_json: If True, return JSON string instead of Rich table.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps(messages, indent=2, default=str)

    if not messages:
        return "No cached messages found."

    table = Table(title=f"{title} ({len(messages)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Time")
    table.add_column("Sender")
    table.add_column("Status")
    table.add_column("Content")

    for message in messages:
        status = str(message.get("status") or "")
        color = STATUS_COLORS.get(status, "white")
        table.add_row(
            _short(message.get("id"), 32),
            _short(message.get("timestamp")),
            _short(message.get("sender_name"), 20),
            f"[{color}]{status}[/{color}]" if status else "—",
            _short(message.get("content"), 60),
        )
    return _render(table)
