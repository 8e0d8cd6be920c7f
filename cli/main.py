# cli/main.py
import asyncio
import logging
import sys
from datetime import datetime

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from net.file_relay import FileRelayStore
from net.session import SharedSession
from sync.messages import ContentUpdate, DarkModeUpdate, Message
from util import log as event_log
from util import metrics
from util.config import PairingConfig, get_config

console = Console()

HELP_TEXT = "commands: /cursor START [END], /bigger, /smaller, /font, /dark, /clear, /stats, /quit"


def relay_options(f):
    f = click.option("--relay-dir", default=None,
                     help="Directory shared by both participants [env TEXTPAIR_RELAY_DIR]")(f)
    f = click.option("--session", "session_key", default=None,
                     help="Session document key [env TEXTPAIR_SESSION_KEY]")(f)
    return f


def build_config(**options) -> PairingConfig:
    """Environment settings with whatever was given on the command line on top."""
    overrides = {name: value for name, value in options.items() if value is not None}
    return get_config().replace(**overrides)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging from the transport layer")
@click.option("--quiet", is_flag=True, help="Suppress JSON event lines on stderr")
def cli(verbose, quiet):
    """[bold green]textpair[/bold green] - two-person shared text pad over a direct WebRTC channel"""
    event_log.configure_logging(logging.DEBUG if verbose else logging.WARNING)
    event_log.set_enabled(not quiet)


@cli.command()
@relay_options
@click.option("--no-stun", is_flag=True, help="Host candidates only (same machine / LAN)")
@click.option("--ice-server", "ice_servers", multiple=True,
              help="STUN/TURN url, repeatable [env TEXTPAIR_ICE_SERVERS, comma-separated]")
@click.option("--exclusive-create/--no-exclusive-create", default=None,
              help="Create the offer document only if absent instead of last-writer-wins")
@click.option("--retry-delay", type=float, default=None)
@click.option("--cleanup-delay", type=float, default=None)
@click.option("--connected-delay", type=float, default=None)
@click.option("--poll-interval", type=float, default=None)
def pair(relay_dir, session_key, no_stun, ice_servers, exclusive_create,
         retry_delay, cleanup_delay, connected_delay, poll_interval):
    """Pair with the other participant and start editing."""
    config = build_config(
        relay_dir=relay_dir,
        session_key=session_key,
        ice_servers=() if no_stun else (tuple(ice_servers) or None),
        exclusive_create=exclusive_create,
        retry_delay=retry_delay,
        cleanup_delay=cleanup_delay,
        connected_delay=connected_delay,
        poll_interval=poll_interval,
    )
    asyncio.run(run_pair(config))


@cli.command()
@relay_options
def status(relay_dir, session_key):
    """Show the pending session document, if any."""
    config = build_config(relay_dir=relay_dir, session_key=session_key)
    relay = FileRelayStore(config.relay_dir)
    doc = asyncio.run(relay.read(config.session_key))
    if not doc:
        console.print(f"[green]No session document at[/green] {config.session_key}")
        return
    table = Table(title=f"session '{config.session_key}'")
    table.add_column("field")
    table.add_column("value")
    created = doc.get("created")
    table.add_row("offerer", str(doc.get("offerer")))
    table.add_row("offer", "yes" if doc.get("offer") else "no")
    table.add_row("answer", "yes" if doc.get("answer") else "no")
    table.add_row("created", datetime.fromtimestamp(created / 1000).isoformat() if created else "-")
    table.add_row("candidates", str(len(doc.get("candidates") or {})))
    console.print(table)


@cli.command()
@relay_options
def reset(relay_dir, session_key):
    """Delete the session document so the next participant starts fresh."""
    config = build_config(relay_dir=relay_dir, session_key=session_key)
    relay = FileRelayStore(config.relay_dir)
    asyncio.run(relay.delete(config.session_key))
    console.print(f"[yellow]Deleted[/yellow] {config.session_key}")


# ---------------- interactive session ----------------
async def run_pair(config: PairingConfig) -> None:
    relay = FileRelayStore(config.relay_dir, poll_interval=config.poll_interval)
    session = SharedSession(config, relay)
    console.print(f"[cyan]participant[/cyan] {session.participant_id}  [dim]{HELP_TEXT}[/dim]")

    def _on_status(connected: bool, reason: str) -> None:
        colour = "green" if connected else "red"
        console.print(f"[{colour}]● {reason}[/{colour}]")

    session.on_status_change(_on_status)
    session.on_remote_change(lambda message: render_remote(session, message))

    try:
        role = await session.start()
        if role is None:
            console.print("[red]Pairing failed; see the event log.[/red]")
            return
        console.print(f"[cyan]role[/cyan] {role.value}")
        loop = asyncio.get_running_loop()
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line or not handle_line(session, line.rstrip("\n")):
                break
    finally:
        await session.close()
        await relay.close()


def handle_line(session: SharedSession, line: str) -> bool:
    """Apply one input line; False ends the session."""
    if line == "/quit":
        return False
    if line == "/stats":
        print_stats()
        return True
    if not session.connected:
        console.print("[yellow]not connected yet; input dropped[/yellow]")
        return True

    parts = line.split()
    if line.startswith("/cursor") and len(parts) in (2, 3):
        try:
            start = int(parts[1])
            end = int(parts[2]) if len(parts) == 3 else None
        except ValueError:
            console.print("[red]usage: /cursor START [END][/red]")
            return True
        session.move_cursor(start, end)
    elif line == "/bigger":
        session.increase_font_size()
    elif line == "/smaller":
        session.decrease_font_size()
    elif line == "/font":
        session.toggle_font()
    elif line == "/dark":
        session.toggle_dark_mode()
    elif line == "/clear":
        session.clear()
    elif line.startswith("/"):
        console.print(f"[red]unknown command[/red] {line}  [dim]{HELP_TEXT}[/dim]")
    else:
        session.type_text(line + "\n")
    return True


def print_stats() -> None:
    table = Table(title="counters")
    table.add_column("family")
    table.add_column("counter")
    table.add_column("value", justify="right")
    for family, counters in metrics.grouped().items():
        for name, value in counters.items():
            table.add_row(family, name, str(value))
    console.print(table)


def render_remote(session: SharedSession, message: Message) -> None:
    editor = session.editor
    if isinstance(message, ContentUpdate):
        style = "white on grey11" if editor.dark_mode else ""
        console.print(Panel(editor.remote_content or " ", title="peer", style=style))
    elif isinstance(message, DarkModeUpdate):
        console.print(f"[magenta]dark mode {'on' if editor.dark_mode else 'off'}[/magenta]")
    else:
        console.print(f"[dim]{message.type}: {message.to_payload()}[/dim]")


if __name__ == "__main__":
    cli()
