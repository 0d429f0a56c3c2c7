"""Command-line interface for the VLESS tunnel.

This module provides the main command-line interface, handling:
- Command-line argument parsing
- Settings overrides (ports, engine binary)
- Foreground tunnel sessions
- Key inspection and config generation
- Traffic totals, network service and latency reports
- Error reporting

The CLI is built using Typer.

Example:
    # Run from command line:
    $ vless-tunnel connect "vless://uuid@example.com:443?security=tls#Home"
"""

import asyncio
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from vless_tunnel import __version__
from vless_tunnel.cmd.find_service import show_service_info
from vless_tunnel.cmd.tunnel import run_tunnel
from vless_tunnel.core.descriptor import parse_descriptor
from vless_tunnel.core.exceptions import SettingsError, TunnelError
from vless_tunnel.core.lib.latency import measure_latency
from vless_tunnel.core.lib.subscription import fetch_subscription
from vless_tunnel.core.lib.traffic_stats import StatsStore
from vless_tunnel.core.settings import (
    DEFAULT_API_PORT,
    DEFAULT_HTTP_PORT,
    DEFAULT_SOCKS_PORT,
    TunnelSettings,
)
from vless_tunnel.core.transport_config import build_config
from vless_tunnel.core.utils.log_config import enable_debug_logging
from vless_tunnel.core.utils.utils import format_bytes

console = Console()
app = typer.Typer(help="Route system traffic through a VLESS server using xray-core")


def make_settings(
    engine: Path | None = None,
    socks_port: int = DEFAULT_SOCKS_PORT,
    http_port: int = DEFAULT_HTTP_PORT,
    api_port: int = DEFAULT_API_PORT,
) -> TunnelSettings:
    """Build settings from CLI options, refusing clashing ports."""
    try:
        return TunnelSettings(engine_path=engine, socks_port=socks_port, http_port=http_port, api_port=api_port)
    except SettingsError as e:
        console.print(f"[red]{e}")
        raise typer.Exit(2) from e


@app.callback(invoke_without_command=True)
def version_callback(ctx: typer.Context):
    """Show version information."""
    # Subcommands such as `config` write machine-readable stdout
    if ctx.invoked_subcommand is None:
        console.print(f"[cyan]VLESS Tunnel v{__version__}[/cyan]")


@app.command(name="connect")
def connect(
    uri: str = typer.Argument(..., help="vless:// connection key"),
    engine: Path | None = typer.Option(None, "--engine", "-e", help="Path to the xray binary"),
    socks_port: int = typer.Option(DEFAULT_SOCKS_PORT, "--socks-port", help="Local SOCKS port"),
    http_port: int = typer.Option(DEFAULT_HTTP_PORT, "--http-port", help="Local HTTP port"),
    api_port: int = typer.Option(DEFAULT_API_PORT, "--api-port", help="Local stats API port"),
    debug: bool = typer.Option(
        default=False,
        help="Enable debug logging",
    ),
):
    """Connect and stay in the foreground until Ctrl+C."""
    if debug:
        enable_debug_logging()

    settings = make_settings(engine, socks_port, http_port, api_port)
    logger.info("Starting tunnel session")
    try:
        clean = run_tunnel(uri, settings)
    except TunnelError as e:
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e
    except Exception as e:
        logger.exception("Error running tunnel")
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e
    if not clean:
        raise typer.Exit(1)


@app.command(name="parse")
def parse(uri: str = typer.Argument(..., help="vless:// connection key")):
    """Show what a connection key contains."""
    try:
        descriptor = parse_descriptor(uri)
    except TunnelError as e:
        console.print(f"[red]Invalid key: {e}")
        raise typer.Exit(1) from e

    table = Table(title="Connection Key")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    for name, value in descriptor.summary().items():
        table.add_row(name, value)
    console.print(table)


@app.command(name="config")
def config(
    uri: str = typer.Argument(..., help="vless:// connection key"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
    socks_port: int = typer.Option(DEFAULT_SOCKS_PORT, "--socks-port", help="Local SOCKS port"),
    http_port: int = typer.Option(DEFAULT_HTTP_PORT, "--http-port", help="Local HTTP port"),
    api_port: int = typer.Option(DEFAULT_API_PORT, "--api-port", help="Local stats API port"),
):
    """Print the xray config generated for a key."""
    settings = make_settings(None, socks_port, http_port, api_port)
    try:
        document = build_config(parse_descriptor(uri), settings).to_json()
    except TunnelError as e:
        console.print(f"[red]Invalid key: {e}")
        raise typer.Exit(1) from e

    if output:
        output.write_text(document, encoding="utf-8")
        console.print(f"[green]Config written to {output}")
    else:
        sys.stdout.write(document + "\n")


@app.command(name="stats")
def stats():
    """Show cumulative traffic across all sessions."""
    uplink, downlink = StatsStore(TunnelSettings().stats_path).load()
    table = Table(title="Traffic Totals")
    table.add_column("Direction", style="cyan")
    table.add_column("Bytes", style="green")
    table.add_row("Sent", format_bytes(uplink))
    table.add_row("Received", format_bytes(downlink))
    console.print(table)


@app.command(name="service")
def service():
    """Show the network service whose proxy settings would change."""
    show_service_info(TunnelSettings())


@app.command(name="ping")
def ping(
    uri: str = typer.Argument(..., help="vless:// connection key"),
    timeout: float = typer.Option(3.0, "--timeout", help="Seconds to wait for the TCP handshake"),
):
    """Measure TCP connect latency to a key's server."""
    try:
        descriptor = parse_descriptor(uri)
    except TunnelError as e:
        console.print(f"[red]Invalid key: {e}")
        raise typer.Exit(1) from e

    latency = asyncio.run(measure_latency(descriptor.host, descriptor.port, timeout))
    if latency is None:
        console.print(f"[red]{descriptor.address} unreachable")
        raise typer.Exit(1)
    console.print(f"[green]{descriptor.label} ({descriptor.address}): {latency:.0f} ms")


@app.command(name="subscription")
def subscription(
    url: str = typer.Argument(..., help="Subscription URL"),
    with_ping: bool = typer.Option(False, "--ping", help="Measure latency of each server"),
):
    """List the servers offered by a subscription."""
    try:
        result = asyncio.run(fetch_subscription(url))
    except TunnelError as e:
        console.print(f"[red]Error: {e}")
        raise typer.Exit(1) from e

    latencies: list[float | None] = []
    if with_ping:

        async def ping_all() -> list[float | None]:
            return list(await asyncio.gather(*(measure_latency(s.host, s.port) for s in result.servers)))

        latencies = asyncio.run(ping_all())

    table = Table(title=f"Subscription ({len(result.servers)} of {result.total} usable)")
    table.add_column("Label", style="cyan")
    table.add_column("Server", style="green")
    table.add_column("Transport")
    table.add_column("Security")
    if with_ping:
        table.add_column("Latency")
    for index, server in enumerate(result.servers):
        row = [server.label, server.address, server.transport_name, server.security.value]
        if with_ping:
            latency = latencies[index]
            row.append(f"{latency:.0f} ms" if latency is not None else "-")
        table.add_row(*row)
    console.print(table)


if __name__ == "__main__":
    app()
