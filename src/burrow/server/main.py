"""Burrow Relay - Main entry point."""

import asyncio

import click
from rich.console import Console

from burrow.core.config import RelayConfig
from burrow.core.logging import configure_logging
from burrow.server.relay import RelayServer

console = Console()

BANNER = """
┌┐ ┬ ┬┬─┐┬─┐┌─┐┬ ┬
├┴┐│ │├┬┘├┬┘│ ││││
└─┘└─┘┴└─┴└─└─┘└┴┘
   RELAY SERVER
"""


@click.command()
@click.option("--host", default=None, help="Interface to listen on (default: 0.0.0.0)")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: 8000)")
@click.option("--domain", "-d", default=None, help="Base domain for tunnels")
@click.option(
    "--public-scheme",
    type=click.Choice(["http", "https"]),
    default=None,
    help="Scheme of the public tunnel URLs",
)
@click.option(
    "--public-port",
    type=int,
    default=None,
    help="Port shown in public tunnel URLs (omitted by default)",
)
@click.option(
    "--request-timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds a public request waits for the tunnel client. Default: 30s",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(
    host: str | None,
    port: int | None,
    domain: str | None,
    public_scheme: str | None,
    public_port: int | None,
    request_timeout: float | None,
    verbose: bool,
):
    """Run the Burrow relay server."""
    configure_logging("debug" if verbose else "info")
    console.print(BANNER, style="cyan")

    overrides = {
        "host": host,
        "port": port,
        "base_domain": domain,
        "public_scheme": public_scheme,
        "public_port": public_port,
        "request_timeout": request_timeout,
    }
    config = RelayConfig(**{key: value for key, value in overrides.items() if value is not None})

    console.print(f"Starting relay server for *.{config.base_domain}...", style="yellow")
    console.print(f"Listening: {config.host}:{config.port}", style="dim")
    console.print(f"Request timeout: {config.request_timeout}s", style="dim")

    asyncio.run(run_server(config))


async def run_server(config: RelayConfig):
    """Run the relay server."""
    server = RelayServer(config)

    try:
        await server.start()
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
