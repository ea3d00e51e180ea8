"""
filecoffee CLI

Command-line interface for peer-to-peer file transfer.

Usage:
    filecoffee send FILE            # Create a room and send a file
    filecoffee receive ROOM_ID      # Join a room and receive its file
    filecoffee check ROOM_ID        # Does the room exist, does it need a password
    filecoffee ice-servers          # Show the ICE servers the relay hands out
    filecoffee serve                # Run the local control API
"""

import asyncio
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import load_config
from .errors import ProtocolError, RoomNotFoundError, TransferError, TransportError
from .rtc.ice import fetch_ice_servers
from .session import SessionController, SessionStatus

console = Console()

STATUS_LABELS = {
    SessionStatus.IDLE: "Idle",
    SessionStatus.CONNECTING: "Connecting to server...",
    SessionStatus.WAITING_FOR_PEER: "Waiting for peer...",
    SessionStatus.NEGOTIATING: "Establishing connection...",
    SessionStatus.CONNECTED: "Connected",
    SessionStatus.TRANSFERRING: "Transferring",
    SessionStatus.COMPLETE: "Done!",
    SessionStatus.DISCONNECTED: "Disconnected",
    SessionStatus.FAILED: "Failed",
}


def setup_logging(verbose: bool = False):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )
    # aiortc/aioice are chatty at DEBUG
    if not verbose:
        for name in ('aiortc', 'aioice', 'websockets'):
            logging.getLogger(name).setLevel(logging.WARNING)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), help='JSON config file')
@click.option('--signaling-url', help='Signaling websocket URL')
@click.option('--api-url', help='Relay HTTP base URL')
@click.pass_context
def cli(ctx, verbose, config_path, signaling_url, api_url):
    """filecoffee - send files directly between two machines over WebRTC."""
    config = load_config(Path(config_path) if config_path else None)
    if signaling_url:
        config.signaling_url = signaling_url
    if api_url:
        config.api_base_url = api_url

    setup_logging(verbose or config.log_level.upper() == 'DEBUG')
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


def _track(progress: Progress, task, context):
    """Mirror session changes onto a progress bar."""
    def on_change(ctx):
        label = STATUS_LABELS.get(ctx.status, ctx.status.value)
        if ctx.status == SessionStatus.TRANSFERRING and ctx.file_name:
            label = f"{ctx.file_name} ({format_size(ctx.bytes_transferred)})"
        progress.update(task, completed=ctx.percent, description=label)

    context.add_listener(on_change)
    on_change(context)


def _report_outcome(context) -> bool:
    if context.status == SessionStatus.COMPLETE:
        return True
    if context.error:
        console.print(f"\n[red]✗ {context.error}[/red]")
    else:
        console.print(f"\n[red]✗ Session ended: {context.status.value}[/red]")
    return False


@cli.command()
@click.argument('file_path', type=click.Path(exists=True, dir_okay=False))
@click.option('--password', '-p', default=None, help='Password receivers must enter')
@click.pass_context
def send(ctx, file_path, password):
    """Create a room and send a file to the first peer that joins."""
    config = ctx.obj['config']
    file_path = Path(file_path)

    async def run() -> bool:
        controller = SessionController(config)
        try:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task("Connecting to server...", total=100)

                shown = False

                def show_room(c):
                    nonlocal shown
                    if c.share_url and not shown:
                        shown = True
                        progress.console.print(Panel.fit(
                            f"[bold green]Room Created[/bold green]\n\n"
                            f"File: [cyan]{file_path.name}[/cyan]\n"
                            f"Size: [yellow]{format_size(file_path.stat().st_size)}[/yellow]\n\n"
                            f"[bold]Room ID:[/bold] [green]{c.room_id}[/green]\n"
                            f"[bold]Link (share this):[/bold]\n[green]{c.share_url}[/green]",
                            title="Share"
                        ))

                context = await controller.share(file_path, password)
                context.add_listener(show_room)
                show_room(context)
                _track(progress, task, context)
                await context.wait_finished()

            ok = _report_outcome(context)
            if ok:
                console.print(f"\n[green]✓ Sent {file_path.name}[/green]")
            return ok
        except TransferError as e:
            console.print(f"[red]✗ {e}[/red]")
            return False
        finally:
            await controller.close()

    try:
        ok = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        ok = False
    ctx.exit(0 if ok else 1)


@cli.command()
@click.argument('room_id')
@click.option('--password', '-p', default=None, help='Room password')
@click.option('--output', '-o', type=click.Path(file_okay=False), help='Directory to save into')
@click.pass_context
def receive(ctx, room_id, password, output):
    """Join a room and receive the file it shares."""
    config = ctx.obj['config']
    output_dir = Path(output) if output else None

    async def run() -> bool:
        controller = SessionController(config)
        try:
            secret = password
            if secret is None:
                # a protected room needs its password before joining
                try:
                    status = await controller.check_room(room_id)
                except (RoomNotFoundError, TransportError, ProtocolError) as e:
                    console.print(f"[red]✗ {e}[/red]")
                    return False
                if status.has_password:
                    secret = click.prompt("Room password", hide_input=True)

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
                console=console,
            ) as progress:
                task = progress.add_task("Connecting to server...", total=100)
                # the room was looked up above unless a password was given
                context = await controller.receive(room_id, secret, output_dir,
                                                   check=password is not None)
                _track(progress, task, context)
                await context.wait_finished()

            ok = _report_outcome(context)
            if ok and context.received is not None:
                console.print(f"\n[green]✓ Downloaded to: {context.received.saved_path}[/green]")
            return ok
        finally:
            await controller.close()

    try:
        ok = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        ok = False
    ctx.exit(0 if ok else 1)


@cli.command()
@click.argument('room_id')
@click.pass_context
def check(ctx, room_id):
    """Check whether a room exists."""
    config = ctx.obj['config']

    async def run():
        controller = SessionController(config)
        return await controller.check_room(room_id)

    try:
        status = asyncio.run(run())
    except RoomNotFoundError as e:
        console.print(f"[red]✗ {e}[/red]")
        ctx.exit(1)
    except (TransportError, ProtocolError) as e:
        console.print(f"[red]✗ {e}[/red]")
        ctx.exit(2)

    console.print(Panel.fit(
        f"[bold green]Room Found[/bold green]\n\n"
        f"Room ID: [cyan]{status.room_id}[/cyan]\n"
        f"Password: [yellow]{'required' if status.has_password else 'none'}[/yellow]",
        title="Room"
    ))


@cli.command('ice-servers')
@click.pass_context
def ice_servers(ctx):
    """List the ICE servers connections will use."""
    config = ctx.obj['config']

    servers = asyncio.run(fetch_ice_servers(
        config.api_base_url,
        timeout=config.ice_fetch_timeout,
        fallback_url=config.fallback_stun_url,
    ))

    table = Table(title="ICE Servers")
    table.add_column("URLs", style="cyan")
    table.add_column("Username", style="yellow")
    table.add_column("Credential")

    for s in servers:
        urls = s.urls if isinstance(s.urls, list) else [s.urls]
        table.add_row(
            "\n".join(urls),
            s.username or "-",
            "****" if s.credential else "-",
        )

    console.print(table)


@cli.command()
@click.option('--host', default=None, help='Bind address')
@click.option('--port', default=None, type=int, help='API port')
@click.pass_context
def serve(ctx, host, port):
    """Run the local control API."""
    config = ctx.obj['config']
    host = host or config.api_host
    port = port or config.api_port

    async def run():
        from .api import run_api_server

        controller = SessionController(config)
        console.print(Panel.fit(
            f"[bold green]Control API[/bold green]\n\n"
            f"Relay: [cyan]{config.signaling_url}[/cyan]\n"
            f"Downloads: [blue]{config.download_dir}[/blue]\n\n"
            f"[dim]API docs at http://{host}:{port}/docs[/dim]",
            title="filecoffee"
        ))
        await run_api_server(controller, host=host, port=port)

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
