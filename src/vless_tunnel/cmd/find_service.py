"""Active network service detection and display.

This module shows which interface carries the default route, which macOS
network service it belongs to, and the interface psutil would pick as a
fallback. The system proxy is applied to that service on connect.

Example:
    # Show the service the tunnel would modify
    show_service_info(TunnelSettings())
"""

import asyncio

from rich.console import Console
from rich.progress import Progress
from rich.table import Table

from vless_tunnel.core.lib.commands import CommandRunner
from vless_tunnel.core.network import HostNetworkIntegrator, scan_interfaces
from vless_tunnel.core.settings import TunnelSettings

console = Console()


async def get_service_info(settings: TunnelSettings) -> dict[str, str]:
    """Gather interface and service information.

    Returns:
        dict[str, str]: Dictionary with keys:
            - route_interface: Interface of the default route
            - service: Network service that would be modified
            - fallback_interface: Interface chosen by the psutil scan
            - fallback_ip: IPv4 address of that interface
    """
    integrator = HostNetworkIntegrator(settings, CommandRunner())
    route_interface = await integrator.default_route_interface()
    service = await integrator.active_service()
    scanned = scan_interfaces()
    return {
        "route_interface": route_interface or "Not found",
        "service": service,
        "fallback_interface": scanned.name if scanned else "Not found",
        "fallback_ip": scanned.ip if scanned else "Not found",
    }


def show_service_info(settings: TunnelSettings) -> dict[str, str]:
    """Display network service information and return it."""
    with Progress(transient=True) as progress:
        task = progress.add_task("Resolving network service...", total=1)
        info = asyncio.run(get_service_info(settings))
        progress.update(task, advance=1)

    table = Table(title="Active Network Service")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Default Route Interface", info["route_interface"])
    table.add_row("Network Service", info["service"])
    table.add_row("Fallback Interface", info["fallback_interface"])
    table.add_row("Fallback IP", info["fallback_ip"])

    console.print(table)
    return info
