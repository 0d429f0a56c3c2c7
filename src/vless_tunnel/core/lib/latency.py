"""TCP connect latency to a server.

Measures how long a TCP handshake with the server takes, which is what the
server list uses to rank entries. Names are resolved through the dnspython
backed resolver off the event loop.
"""

import asyncio
import contextlib
import time
from typing import Final

from loguru import logger

from vless_tunnel.core.exceptions import DNSResolutionError
from vless_tunnel.core.lib.dns_handler import DNSResolver, dns_resolver

DEFAULT_PING_TIMEOUT: Final = 3.0  # seconds


async def measure_latency(
    host: str,
    port: int,
    timeout: float = DEFAULT_PING_TIMEOUT,
    resolver: DNSResolver | None = None,
) -> float | None:
    """Time a TCP connect to ``host:port``.

    Args:
        host: Server name or address
        port: Server port
        timeout: Seconds before giving up on the connect
        resolver: Resolver for server names

    Returns:
        float | None: Round trip in milliseconds, or None when unreachable
    """
    resolver = resolver or dns_resolver
    try:
        address = await asyncio.to_thread(resolver.resolve, host)
    except DNSResolutionError as e:
        logger.debug(f"Ping {host}:{port} skipped: {e}")
        return None

    start = time.perf_counter()
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"Ping {host}:{port} failed: {e!r}")
        return None

    elapsed = (time.perf_counter() - start) * 1000
    writer.close()
    with contextlib.suppress(OSError):
        await writer.wait_closed()
    return elapsed
