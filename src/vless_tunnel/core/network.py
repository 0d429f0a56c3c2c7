"""Host network integration: routing system traffic through the engine.

This module provides functionality for:
- Detecting the interface that carries the default route
- Scanning interfaces with psutil when the route lookup fails
- Mapping an interface to its macOS network service (e.g. "Wi-Fi")
- Pointing the service's SOCKS, HTTP and HTTPS proxies at the local inbounds
- Reverting those settings on teardown

Every host command is independent: a failing command is logged and the
remaining ones still run, so a partially applied proxy is preferred over none.

Example:
    integrator = HostNetworkIntegrator(settings, CommandRunner())
    service = await integrator.enable(LocalEndpoints.from_settings(settings))
    ...
    await integrator.disable(service)
"""

import os
import re
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import psutil
from loguru import logger

from vless_tunnel.core.exceptions import CommandError, NetworkConfigError
from vless_tunnel.core.lib.commands import CommandRunner
from vless_tunnel.core.settings import TunnelSettings

ROUTE: Final = "route"
NETWORKSETUP: Final = "networksetup"

SKIPPED_PREFIXES: Final = ("lo", "vmnet", "docker", "veth", "bridge", "utun")
WIRELESS_PREFIXES: Final = ("wlan", "wifi", "en", "wlp", "wl", "ap")
UNUSABLE_IP_PREFIXES: Final = ("127.", "169.254.")

_ROUTE_INTERFACE = re.compile(r"^\s*interface:\s*(\S+)", re.MULTILINE)


@dataclass
class NetworkInterface:
    """Network interface representation with its key properties.

    Attributes:
        name: Interface name (e.g., 'en0', 'eth0')
        ip: IPv4 address assigned to the interface
        is_up: Boolean indicating if the interface is up and running
        is_wireless: Boolean indicating if this is a wireless interface
    """

    name: str
    ip: str
    is_up: bool
    is_wireless: bool


@dataclass(frozen=True)
class LocalEndpoints:
    """Local inbounds the host proxy settings point at."""

    host: str
    socks_port: int
    http_port: int

    @classmethod
    def from_settings(cls, settings: TunnelSettings) -> "LocalEndpoints":
        return cls(settings.listen_host, settings.socks_port, settings.http_port)


@dataclass(frozen=True)
class ProxyStep:
    """One proxy kind with the commands that apply and revert it.

    Attributes:
        name: Human readable proxy kind
        apply: ``networksetup`` argument lists run by ``enable``
        revert: ``networksetup`` argument lists run by ``disable``
    """

    name: str
    apply: tuple[tuple[str, ...], ...]
    revert: tuple[tuple[str, ...], ...]


def proxy_steps(service: str, endpoints: LocalEndpoints) -> list[ProxyStep]:
    """Build the ordered proxy steps for ``service``."""
    socks_port = str(endpoints.socks_port)
    http_port = str(endpoints.http_port)
    return [
        ProxyStep(
            name="SOCKS",
            apply=(
                ("-setsocksfirewallproxy", service, endpoints.host, socks_port),
                ("-setsocksfirewallproxystate", service, "on"),
            ),
            revert=(("-setsocksfirewallproxystate", service, "off"),),
        ),
        ProxyStep(
            name="HTTP",
            apply=(
                ("-setwebproxy", service, endpoints.host, http_port),
                ("-setwebproxystate", service, "on"),
            ),
            revert=(("-setwebproxystate", service, "off"),),
        ),
        ProxyStep(
            name="HTTPS",
            apply=(
                ("-setsecurewebproxy", service, endpoints.host, http_port),
                ("-setsecurewebproxystate", service, "on"),
            ),
            revert=(("-setsecurewebproxystate", service, "off"),),
        ),
    ]


def scan_interfaces() -> NetworkInterface | None:
    """Scan for available network interfaces and return the most suitable one."""
    interfaces = []
    stats = psutil.net_if_stats()
    for name, addrs in psutil.net_if_addrs().items():
        if name.startswith(SKIPPED_PREFIXES):
            continue

        ipv4 = next((addr.address for addr in addrs if addr.family == socket.AF_INET), None)
        if not ipv4:
            continue

        if_stats = stats.get(name)
        if not if_stats or not if_stats.isup:
            continue

        is_wireless = (
            name.startswith(WIRELESS_PREFIXES)
            or "802.11" in str(getattr(if_stats, "flags", ""))
            or (Path(f"/sys/class/net/{name}/wireless").exists() if os.name != "nt" else False)
        )
        interfaces.append(NetworkInterface(name=name, ip=ipv4, is_up=True, is_wireless=is_wireless))

    usable = [iface for iface in interfaces if not iface.ip.startswith(UNUSABLE_IP_PREFIXES)]
    wireless = [iface for iface in usable if iface.is_wireless]
    if wireless:
        return wireless[0]
    if usable:
        return usable[0]
    return interfaces[0] if interfaces else None


def parse_hardware_ports(listing: str) -> dict[str, str]:
    """Map device names to service names from ``-listallhardwareports`` output."""
    services: dict[str, str] = {}
    current_port: str | None = None
    for line in listing.splitlines():
        line = line.strip()
        if line.startswith("Hardware Port:"):
            current_port = line.removeprefix("Hardware Port:").strip()
        elif line.startswith("Device:") and current_port:
            services[line.removeprefix("Device:").strip()] = current_port
    return services


class HostNetworkIntegrator:
    """Toggle the host's proxy settings for the active network service."""

    def __init__(self, settings: TunnelSettings | None = None, runner: CommandRunner | None = None) -> None:
        self.settings = settings or TunnelSettings()
        self.runner = runner or CommandRunner()
        self.applied_service: str | None = None

    async def default_route_interface(self) -> str | None:
        """Return the interface carrying the default route, if any."""
        try:
            result = await self.runner.run(ROUTE, "-n", "get", "default", timeout=self.settings.command_timeout)
        except CommandError as e:
            logger.debug(f"Default route lookup failed: {e}")
            return None
        match = _ROUTE_INTERFACE.search(result.stdout) if result.ok else None
        return match.group(1) if match else None

    async def active_service(self) -> str:
        """Resolve the network service in use, falling back to the default name."""
        interface = await self.default_route_interface()
        if interface is None:
            scanned = scan_interfaces()
            interface = scanned.name if scanned else None
        if interface is None:
            logger.warning(f"No active interface found; using {self.settings.default_service!r}")
            return self.settings.default_service

        try:
            result = await self.runner.run(NETWORKSETUP, "-listallhardwareports", timeout=self.settings.command_timeout)
        except CommandError as e:
            logger.debug(f"Hardware port listing failed: {e}")
            return self.settings.default_service

        service = parse_hardware_ports(result.stdout).get(interface) if result.ok else None
        if service is None:
            logger.warning(f"No network service for {interface}; using {self.settings.default_service!r}")
            return self.settings.default_service
        logger.debug(f"Interface {interface} belongs to service {service!r}")
        return service

    async def _networksetup(self, *args: str) -> None:
        try:
            result = await self.runner.run(NETWORKSETUP, *args, timeout=self.settings.command_timeout)
        except CommandError as e:
            raise NetworkConfigError(str(e)) from e
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            raise NetworkConfigError(f"networksetup {args[0]} exited with {result.returncode}: {detail}")

    async def _run_all(self, commands: tuple[tuple[str, ...], ...], step: str) -> int:
        failures = 0
        for args in commands:
            try:
                await self._networksetup(*args)
            except NetworkConfigError as e:
                failures += 1
                logger.warning(f"{step} proxy command failed: {e}")
        return failures

    async def enable(self, endpoints: LocalEndpoints) -> str:
        """Point the active service's proxies at the local inbounds.

        Args:
            endpoints: Local SOCKS and HTTP inbounds

        Returns:
            str: Name of the service that was modified
        """
        service = await self.active_service()
        self.applied_service = service

        failures = 0
        for step in proxy_steps(service, endpoints):
            failures += await self._run_all(step.apply, step.name)

        if failures:
            logger.warning(f"System proxy on {service!r} applied with {failures} failed command(s)")
        else:
            logger.info(f"System proxy on {service!r} -> {endpoints.host}:{endpoints.socks_port}")
        return service

    async def disable(self, service: str | None = None) -> None:
        """Turn off every proxy kind on ``service`` (default: the last enabled one)."""
        service = service or self.applied_service or self.settings.default_service
        endpoints = LocalEndpoints.from_settings(self.settings)

        failures = 0
        for step in proxy_steps(service, endpoints):
            failures += await self._run_all(step.revert, step.name)

        if failures:
            logger.warning(f"System proxy on {service!r} reverted with {failures} failed command(s)")
        else:
            logger.info(f"System proxy on {service!r} disabled")
        self.applied_service = None
