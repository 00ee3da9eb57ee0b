"""Burrow CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from burrow.client.tunnel import ConnectionState, TunnelClient, TunnelOutcome
from burrow.core.config import (
    ClientConfig,
    ReconnectConfig,
    flatten_config,
    get_config,
    load_config_from_file,
)
from burrow.core.logging import configure_logging

console = Console()

_shutdown_requested = False

BANNER = """
┌┐ ┬ ┬┬─┐┬─┐┌─┐┬ ┬
├┴┐│ │├┬┘├┬┘│ ││││
└─┘└─┘┴└─┴└─└─┘└┴┘
 Dig a tunnel to localhost
"""


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context):
    """Burrow - expose a local HTTP server through a relay.

    Examples:

        burrow http 3000

        burrow http 3000 --subdomain myapp --server ws://relay.example.com:8000

        burrow status --server http://relay.example.com:8000

    Use 'burrow COMMAND --help' for more info on specific commands.
    """
    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("Usage: burrow http 3000", style="yellow")
        console.print("       burrow http 3000 --subdomain myapp", style="yellow")
        console.print("\nCommands:", style="bold")
        console.print("  burrow http     Start HTTP tunnel", style="dim")
        console.print("  burrow status   Show relay status", style="dim")
        console.print("  burrow version  Show version information", style="dim")
        console.print("  burrow config   Show configuration", style="dim")


def _file_value(file_config: dict[str, Any], section: str, key: str) -> Any:
    return file_config.get(f"{section}_{key}", file_config.get(key))


def _build_configs(
    file_config: dict[str, Any],
    port: int | None,
    subdomain: str | None,
    server: str | None,
    use_https: bool | None,
    local_url: str | None,
    max_attempts: int | None,
    base_delay: float | None,
) -> tuple[ClientConfig, ReconnectConfig]:
    """Merge command line options over file values over environment/defaults."""
    client_values = {
        "local_port": port if port is not None else _file_value(file_config, "client", "local_port"),
        "subdomain": subdomain or _file_value(file_config, "client", "subdomain"),
        "server_url": server or _file_value(file_config, "client", "server_url"),
        "use_https": use_https if use_https is not None else _file_value(file_config, "client", "use_https"),
        "local_url": local_url or _file_value(file_config, "client", "local_url"),
    }
    reconnect_values = {
        "max_attempts": max_attempts if max_attempts is not None else _file_value(file_config, "reconnect", "max_attempts"),
        "base_delay": base_delay if base_delay is not None else _file_value(file_config, "reconnect", "base_delay"),
    }
    client_config = ClientConfig(**{k: v for k, v in client_values.items() if v is not None})
    reconnect_config = ReconnectConfig(**{k: v for k, v in reconnect_values.items() if v is not None})
    return client_config, reconnect_config


@main.command()
@click.argument("port", type=int, required=False)
@click.option("--subdomain", "-s", help="Subdomain to register (default: BURROW_SUBDOMAIN or 'default')")
@click.option("--server", default=None, help="Relay WebSocket URL (default: ws://localhost:8000)")
@click.option("--https/--no-https", "use_https", default=None, help="Use HTTPS to reach the local server")
@click.option("--local-url", default=None, help="Full base URL of the local server (overrides PORT)")
@click.option("--max-attempts", type=click.IntRange(min=0), default=None, help="Reconnection attempts before giving up (default: 10)")
@click.option("--base-delay", type=click.FloatRange(min=0), default=None, help="Seconds per attempt of linear backoff (default: 1.0)")
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def http(
    port: int | None,
    subdomain: str | None,
    server: str | None,
    use_https: bool | None,
    local_url: str | None,
    max_attempts: int | None,
    base_delay: float | None,
    config_file: str | None,
    verbose: bool,
):
    """Expose a local HTTP server on PORT through the relay.

    Exits with status 1 when the relay rejects the subdomain or when the
    relay stays unreachable after every reconnection attempt.
    """
    configure_logging("debug" if verbose else "info")

    file_config: dict[str, Any] = {}
    if config_file:
        try:
            file_config = flatten_config(load_config_from_file(config_file))
            console.print(f"Loaded config from {config_file}", style="dim")
        except (OSError, ValueError) as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)

    client_config, reconnect_config = _build_configs(
        file_config, port, subdomain, server, use_https, local_url, max_attempts, base_delay
    )

    outcome = _run_tunnel_with_signal_handling(client_config, reconnect_config)
    if outcome in (TunnelOutcome.REJECTED, TunnelOutcome.EXHAUSTED):
        sys.exit(1)


def _run_tunnel_with_signal_handling(
    client_config: ClientConfig,
    reconnect_config: ReconnectConfig,
) -> TunnelOutcome:
    """Run tunnel with proper signal handling for clean Ctrl+C shutdown."""
    global _shutdown_requested
    _shutdown_requested = False

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    main_task = loop.create_task(start_tunnel(client_config, reconnect_config))

    def signal_handler(sig: int, frame: object) -> None:
        """Handle Ctrl+C signal."""
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        main_task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        return loop.run_until_complete(main_task)
    except (asyncio.CancelledError, KeyboardInterrupt):
        return TunnelOutcome.CLOSED
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


async def start_tunnel(
    client_config: ClientConfig,
    reconnect_config: ReconnectConfig,
) -> TunnelOutcome:
    """Run a tunnel until it is closed, rejected or runs out of retries."""
    console.print(BANNER, style="cyan")
    console.print(
        f"Starting tunnel for {client_config.local_base_url} via {client_config.server_url}...",
        style="yellow",
    )

    client = TunnelClient(client_config, reconnect_config)

    def announce(state: ConnectionState) -> None:
        if state == ConnectionState.REGISTERED:
            panel_content = (
                f"[green]Tunnel established![/green]\n\n"
                f"[bold]Public URL:[/bold] [cyan]{client.url}[/cyan]\n"
                f"[bold]Forwarding:[/bold] {client_config.local_base_url}"
            )
            console.print(Panel(panel_content, title="Burrow", border_style="green"))
            console.print("\nPress Ctrl+C to stop.\n", style="dim")

    client.add_state_hook(announce)

    try:
        outcome = await client.run()
    except asyncio.CancelledError:
        await client.close()
        console.print("[green]Tunnel closed.[/green]")
        return TunnelOutcome.CLOSED

    if outcome == TunnelOutcome.REJECTED and client.rejection is not None:
        console.print(
            Panel(
                f"[red]{client.rejection.message}[/red]",
                title=f"Error: {client.rejection.code}",
                border_style="red",
            )
        )
    elif outcome == TunnelOutcome.EXHAUSTED:
        console.print(
            Panel(
                f"[red]Could not reach the relay at {client_config.server_url} "
                f"after {reconnect_config.max_attempts} reconnection attempts.[/red]",
                title="Connection Error",
                border_style="red",
            )
        )
    return outcome


def _admin_base_url(server: str) -> str:
    if server.startswith("ws://"):
        server = "http://" + server[len("ws://"):]
    elif server.startswith("wss://"):
        server = "https://" + server[len("wss://"):]
    elif "://" not in server:
        server = f"http://{server}"
    return f"{server.rstrip('/')}/_burrow"


@main.command()
@click.option("--server", default="http://localhost:8000", help="Relay address")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(server: str, json_output: bool):
    """Show relay status and active tunnels."""
    import httpx

    base_url = _admin_base_url(server)
    try:
        with httpx.Client(timeout=5.0) as client:
            health = client.get(f"{base_url}/health").json()
            stats = client.get(f"{base_url}/stats").json()
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"[red]Error connecting to relay:[/red] {e}")
        sys.exit(1)

    if json_output:
        console.print(json.dumps({"health": health, "stats": stats}, indent=2))
        return

    console.print(f"\n[bold]Relay:[/bold] {server}")
    console.print(f"[bold]Status:[/bold] [green]{health.get('status', 'unknown')}[/green]")
    console.print(f"[bold]Active Tunnels:[/bold] {stats.get('total_tunnels', 0)}")
    console.print(f"[bold]Pending Requests:[/bold] {stats.get('pending_requests', 0)}")

    tunnels = stats.get("tunnels", [])
    if tunnels:
        table = Table(title="Active Tunnels")
        table.add_column("Subdomain", style="cyan")
        table.add_column("Client", style="dim")
        table.add_column("Requests", justify="right")
        table.add_column("Bytes In", justify="right")
        table.add_column("Bytes Out", justify="right")
        table.add_column("Connected At")

        for tunnel in tunnels:
            table.add_row(
                tunnel.get("subdomain", ""),
                tunnel.get("client_id", "")[:8],
                str(tunnel.get("request_count", 0)),
                _format_bytes(tunnel.get("bytes_sent", 0)),
                _format_bytes(tunnel.get("bytes_received", 0)),
                tunnel.get("connected_at", "")[:19],
            )
        console.print(table)
    else:
        console.print("\n[dim]No active tunnels[/dim]")


@main.command()
def version():
    """Show version information."""
    from burrow import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


def _format_bytes(num_bytes: int | float) -> str:
    """Format bytes into human readable string."""
    value: float = float(num_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(value) < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


@main.group()
def config():
    """View configuration settings.

    All settings can be configured via environment variables with the
    BURROW_ prefix, or a .env file in the working directory.
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def config_show(json_output: bool):
    """Show current configuration settings.

    Values come from environment variables or defaults.
    """
    display = get_config().to_display_dict()

    if json_output:
        console.print(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")
    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, f"BURROW_{key.upper()}")

        console.print(table)
        console.print()


if __name__ == "__main__":
    main()
