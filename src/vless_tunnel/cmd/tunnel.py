"""Foreground tunnel session.

This module provides the interactive ``connect`` flow:
- Validating the key and building the engine config up front
- Connecting through the connection manager
- Copying the local SOCKS address to the clipboard
- Rendering live traffic until Ctrl+C or an engine crash
- Disconnecting and persisting traffic totals on the way out

Example:
    # Connect and stay in the foreground
    run_tunnel("vless://uuid@example.com:443?security=tls#Home", TunnelSettings())
"""

import asyncio

import pyperclip
from loguru import logger
from prompt_toolkit.shortcuts import ProgressBar
from rich.console import Console

from vless_tunnel.core.connection import ConnectionManager, ConnectionState
from vless_tunnel.core.descriptor import ConnectionDescriptor, parse_descriptor
from vless_tunnel.core.settings import TunnelSettings
from vless_tunnel.core.transport_config import build_config
from vless_tunnel.core.utils.prompt import TunnelUI

console = Console()

CLIPBOARD_DELAY = 0.5  # Seconds to wait after clipboard copy


def prepare(uri: str, settings: TunnelSettings) -> ConnectionDescriptor:
    """Parse the key and dry-run the config builder before touching the host."""
    with ProgressBar(title="Validating connection key...") as pb:
        for _ in pb(range(1)):
            descriptor = parse_descriptor(uri)
            build_config(descriptor, settings)
    return descriptor


async def watch(manager: ConnectionManager, ui: TunnelUI) -> None:
    """Refresh the live panel until the session leaves CONNECTED."""
    stats = await manager.stats()
    with ui.create_live_display(ui.generate_display("CONNECTED", stats)) as live:
        while manager.state is ConnectionState.CONNECTED:
            await asyncio.sleep(ui.refresh_rate)
            stats = await manager.stats()
            live.update(ui.generate_display(manager.state.value, stats))


async def run_session(uri: str, descriptor: ConnectionDescriptor, settings: TunnelSettings) -> bool:
    """Connect, watch and disconnect. Returns True on a clean session."""
    manager = ConnectionManager(settings)
    result = await manager.connect(uri)
    if not result.ok:
        console.print(f"[red]Connection failed: {result.error}")
        await manager.disconnect()
        return False

    console.print(f"[bold green]Connected to {descriptor.label} via {settings.socks_address}")
    try:
        pyperclip.copy(f"socks5://{settings.socks_address}")
        console.print("[bold green]SOCKS address copied to clipboard")
        await asyncio.sleep(CLIPBOARD_DELAY)
    except pyperclip.PyperclipException as e:
        console.print(f"[yellow]Could not copy to clipboard: {e}")

    clean = True
    try:
        await watch(manager, TunnelUI(descriptor.label, settings.socks_address))
        status = await manager.status()
        if status.state is ConnectionState.ERROR:
            console.print(f"[red]Tunnel lost: {status.error}")
            clean = False
    except asyncio.CancelledError:
        logger.info("Session interrupted")
        raise
    finally:
        await manager.disconnect()
        stats = await manager.stats()
        logger.info(f"Totals: {stats.cumulative_uplink} up, {stats.cumulative_downlink} down")
        console.print("[yellow]Disconnected")
    return clean


def run_tunnel(uri: str, settings: TunnelSettings) -> bool:
    """Run a foreground tunnel session."""
    descriptor = prepare(uri, settings)
    try:
        return asyncio.run(run_session(uri, descriptor, settings))
    except KeyboardInterrupt:
        # asyncio.run has already cancelled the session and let it disconnect
        console.print("\n[yellow]Tunnel closed")
        return True
