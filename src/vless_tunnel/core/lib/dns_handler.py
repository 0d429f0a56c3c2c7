"""Server name resolution using dnspython.

Used by the latency probe so a server can be measured even when the system
resolver is blocked or poisoned: the system resolver is tried first, then
each public nameserver in turn.
"""

import ipaddress
import socket
from typing import TYPE_CHECKING, ClassVar, cast

import dns.exception
import dns.resolver
from loguru import logger

from vless_tunnel.core.exceptions import DNSResolutionError

if TYPE_CHECKING:
    from dns.resolver import Resolver

DEFAULT_TIMEOUT = 1.0  # seconds
DEFAULT_LIFETIME = 3.0  # seconds
DEFAULT_NAMESERVERS = [
    "1.1.1.1",  # Cloudflare
    "8.8.8.8",  # Google
    "9.9.9.9",  # Quad9
]


class DNSResolver:
    """Resolve server names with a system-first, public-fallback strategy."""

    _resolve_cache: ClassVar[dict[str, str]] = {}

    def __init__(self, nameservers: list[str] | None = None) -> None:
        self.nameservers = nameservers or DEFAULT_NAMESERVERS
        self.resolver = cast("Resolver", dns.resolver.Resolver(configure=False))
        self.resolver.timeout = DEFAULT_TIMEOUT
        self.resolver.lifetime = DEFAULT_LIFETIME

    def _try_system_dns(self, domain: str) -> str | None:
        try:
            return socket.gethostbyname(domain)
        except (socket.gaierror, UnicodeError) as e:
            logger.debug(f"System DNS resolution failed for {domain}: {e}")
            return None

    def _try_nameservers(self, domain: str) -> str | None:
        for nameserver in self.nameservers:
            try:
                self.resolver.nameservers = [nameserver]
                answer = self.resolver.resolve(domain, "A")
                return str(answer[0])
            except dns.exception.DNSException as e:
                logger.debug(f"Nameserver {nameserver} failed for {domain}: {e}")
        return None

    def resolve(self, domain: str) -> str:
        """Resolve a host name to an IPv4 address.

        Address literals are returned unchanged.

        Args:
            domain: Host name or literal IP address

        Returns:
            str: Resolved IP address

        Raises:
            DNSResolutionError: If every method fails
        """
        try:
            return str(ipaddress.ip_address(domain))
        except ValueError:
            pass

        if domain in self._resolve_cache:
            return self._resolve_cache[domain]

        ip = self._try_system_dns(domain) or self._try_nameservers(domain)
        if ip is None:
            raise DNSResolutionError(f"Could not resolve {domain} using any available method")

        self._resolve_cache[domain] = ip
        return ip


# Global resolver instance
dns_resolver = DNSResolver()
