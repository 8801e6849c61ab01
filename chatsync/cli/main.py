"""chatsync CLI: inspect and maintain persisted queue and cache state.

Usage:
    chatsync stats                       Overall queue and cache counters
    chatsync queue list CHAT_ID          Show a chat's outbound queue
    chatsync queue clear-failed CHAT_ID  Drop failed messages
    chatsync cache search CHAT_ID QUERY  Search cached history
    chatsync probe --url URL             Check backend reachability

The CLI never sends: it works against persisted state with an offline
connectivity monitor. Only `probe` touches the network.
"""

import asyncio
import logging
import sys
from typing import Optional

import typer
from rich.console import Console

from chatsync.cli.config import ChatSyncConfig, resolve_config
from chatsync.cli.factory import build_coordinator, build_probe
from chatsync.cli.output import (
    format_message_table,
    format_overall_stats,
    format_queue_table,
)
from chatsync.services.connectivity import ConnectivityMonitor

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="chatsync",
    help="Offline message queue and cache maintenance",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Configuration management")
queue_app = typer.Typer(help="Inspect and edit outbound queues")
cache_app = typer.Typer(help="Inspect and edit message caches")

app.add_typer(config_app, name="config")
app.add_typer(queue_app, name="queue")
app.add_typer(cache_app, name="cache")

console = Console()

# --- Global state ---
_config_path: str | None = None


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logging.getLogger("chatsync").setLevel(level.upper())


def _emit(output: str) -> None:
    """Print pre-rendered formatter output verbatim."""
    console.print(output, markup=False, highlight=False, soft_wrap=True)


def _load_config() -> ChatSyncConfig:
    try:
        cfg = resolve_config(_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except (ValueError, TypeError) as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)
    _configure_logging(cfg.logging.level)
    return cfg


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to chatsync.yaml config file"
    ),
):
    """chatsync: offline-resilient chat delivery state."""
    global _config_path
    _config_path = config


# --- Version ---


@app.command()
def version():
    """Show chatsync version."""
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as pkg_version

    try:
        v = pkg_version("chatsync")
    except PackageNotFoundError:
        v = "unknown"
    console.print(f"[bold]chatsync[/bold] v{v}")


# --- Config commands ---


@config_app.command("show")
def config_show(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Display resolved configuration."""
    cfg = _load_config()
    if json_output:
        _emit(cfg.model_dump_json(indent=2))
        return

    for section, values in cfg.model_dump().items():
        console.print(f"[bold]{section}:[/bold]")
        for key, value in values.items():
            console.print(f"  {key}: {value}")


# --- Stats ---


@app.command()
def stats(
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show overall queue and cache statistics."""
    cfg = _load_config()

    async def _run():
        async with build_coordinator(cfg) as sync:
            _emit(format_overall_stats(sync.get_overall_stats(), as_json=json_output))

    asyncio.run(_run())


# --- Connectivity ---


@app.command()
def probe(
    url: Optional[str] = typer.Option(
        None, "--url", help="Health URL (defaults to connectivity.probe_url)"
    ),
):
    """Check whether the sync backend is reachable."""
    cfg = _load_config()
    prober = build_probe(cfg, ConnectivityMonitor(online=False), url)
    if prober is None:
        console.print(
            "[red]No probe URL configured.[/red] "
            "Set connectivity.probe_url or pass --url."
        )
        raise typer.Exit(1)

    if not asyncio.run(prober.check()):
        console.print(f"[red]offline[/red] {prober.url}")
        raise typer.Exit(1)
    console.print(f"[green]online[/green] {prober.url}")


# --- Queue commands ---


@queue_app.command("list")
def queue_list(
    chat_id: str = typer.Argument(help="Chat ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List a chat's queued messages."""
    cfg = _load_config()

    async def _run():
        async with build_coordinator(cfg) as sync:
            output = format_queue_table(
                chat_id,
                sync.get_queue(chat_id),
                sync.get_queue_stats(chat_id),
                as_json=json_output,
            )
            _emit(output)

    asyncio.run(_run())


@queue_app.command("remove")
def queue_remove(
    chat_id: str = typer.Argument(help="Chat ID"),
    message_id: str = typer.Argument(help="Queued message ID"),
):
    """Remove one message from a chat's queue."""
    cfg = _load_config()

    async def _run():
        async with build_coordinator(cfg) as sync:
            return await sync.remove_from_queue(chat_id, message_id)

    if not asyncio.run(_run()):
        console.print(f"[red]Message {message_id} not found in queue for {chat_id}.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Removed {message_id} from {chat_id}.[/green]")


@queue_app.command("clear-failed")
def queue_clear_failed(
    chat_id: str = typer.Argument(help="Chat ID"),
):
    """Drop every failed message from a chat's queue."""
    cfg = _load_config()

    async def _run():
        async with build_coordinator(cfg) as sync:
            return await sync.clear_failed_messages(chat_id)

    removed = asyncio.run(_run())
    console.print(f"Cleared {removed} failed message(s) from {chat_id}.")


# --- Cache commands ---


@cache_app.command("show")
def cache_show(
    chat_id: str = typer.Argument(help="Chat ID"),
    limit: int = typer.Option(50, "--limit", "-n", help="Show the most recent N"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show a chat's cached messages."""
    cfg = _load_config()

    async def _run():
        async with build_coordinator(cfg) as sync:
            return sync.get_cached_messages(chat_id)

    messages = asyncio.run(_run())
    if limit > 0:
        messages = messages[-limit:]
    _emit(format_message_table(f"Cache: {chat_id}", messages, as_json=json_output))


@cache_app.command("search")
def cache_search(
    chat_id: str = typer.Argument(help="Chat ID"),
    query: str = typer.Argument(help="Text to find in content or sender name"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Search a chat's cached messages."""
    cfg = _load_config()

    async def _run():
        async with build_coordinator(cfg) as sync:
            return sync.search_cached_messages(chat_id, query)

    matches = asyncio.run(_run())
    _emit(format_message_table(f"Matches for {query!r}", matches, as_json=json_output))


@cache_app.command("clear")
def cache_clear(
    chat_id: str = typer.Argument(help="Chat ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete a chat's cached history."""
    if not yes:
        typer.confirm(f"Clear cached messages for {chat_id}?", abort=True)
    cfg = _load_config()

    async def _run():
        async with build_coordinator(cfg) as sync:
            await sync.clear_cache(chat_id)

    asyncio.run(_run())
    _log.info("Cleared cache for chat %s", chat_id)
    console.print(f"[green]Cache cleared for {chat_id}.[/green]")


if __name__ == "__main__":
    app()
