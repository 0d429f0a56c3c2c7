"""Subscription feeds: many connection keys behind one URL.

A subscription body is either plain text or base64, with one key per line.
Lines that are not ``vless://`` keys, or that fail to parse, are skipped;
the total line count is kept so callers can report how much was ignored.

Example:
    result = await fetch_subscription("https://cdn.example.com/sub/abc")
    for descriptor in result.servers:
        print(descriptor.label)
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from typing import Final

import aiohttp
from loguru import logger

from vless_tunnel import __version__
from vless_tunnel.core.descriptor import SCHEME_DEFAULT_PORTS, ConnectionDescriptor, parse_descriptor
from vless_tunnel.core.exceptions import ParseError, SubscriptionError

FETCH_TIMEOUT: Final = 10.0  # seconds
MAX_REDIRECTS: Final = 5
USER_AGENT: Final = f"vless-tunnel/{__version__}"


@dataclass
class SubscriptionResult:
    """Decoded subscription.

    Attributes:
        servers: Descriptors that parsed successfully
        uris: Original key for each entry of ``servers``
        total: Number of non-empty lines in the body
    """

    servers: list[ConnectionDescriptor] = field(default_factory=list)
    uris: list[str] = field(default_factory=list)
    total: int = 0

    @property
    def skipped(self) -> int:
        return self.total - len(self.servers)


def _maybe_base64(body: str) -> str:
    compact = "".join(body.split())
    padded = compact + "=" * (-len(compact) % 4)
    try:
        return base64.b64decode(padded, validate=True).decode("utf-8")
    except (binascii.Error, ValueError):
        return body


def decode_subscription(body: str) -> SubscriptionResult:
    """Decode a subscription body into descriptors."""
    text = _maybe_base64(body.strip())
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    prefixes = tuple(f"{scheme}://" for scheme in SCHEME_DEFAULT_PORTS)

    result = SubscriptionResult(total=len(lines))
    for line in lines:
        if not line.lower().startswith(prefixes):
            continue
        try:
            result.servers.append(parse_descriptor(line))
        except ParseError as e:
            logger.debug(f"Skipping subscription entry: {e}")
            continue
        result.uris.append(line)
    return result


async def fetch_subscription(url: str, timeout: float = FETCH_TIMEOUT) -> SubscriptionResult:
    """Download and decode a subscription.

    Raises:
        SubscriptionError: On network errors or an HTTP error status
    """
    try:
        async with aiohttp.ClientSession(headers={"User-Agent": USER_AGENT}) as session:
            async with session.get(
                url,
                max_redirects=MAX_REDIRECTS,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                if response.status >= 400:
                    raise SubscriptionError(f"HTTP {response.status} from {url}")
                body = await response.text()
    except aiohttp.ClientError as e:
        raise SubscriptionError(f"Could not fetch subscription: {e}") from e
    except asyncio.TimeoutError as e:
        raise SubscriptionError("Subscription fetch timed out") from e

    result = decode_subscription(body)
    logger.info(f"Subscription {url}: {len(result.servers)} of {result.total} entries usable")
    return result
