"""Parsing of shareable ``vless://`` connection keys.

A key looks like::

    vless://<uuid>@<host>:<port>?type=ws&security=tls&sni=cdn.example.com#My%20Server

and is turned into a ``ConnectionDescriptor`` holding everything the config
builder needs: the credential, the remote endpoint, the transport and the
security layer with its parameters. Malformed keys raise ``ParseError`` before
anything touches the engine or the host network.

Example:
    descriptor = parse_descriptor(uri)
    print(f"{descriptor.label}: {descriptor.host}:{descriptor.port}")
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Final
from urllib.parse import parse_qsl, unquote, urlsplit

from loguru import logger

from vless_tunnel.core.exceptions import ParseError

# Default port per recognised scheme; None means the port is mandatory
SCHEME_DEFAULT_PORTS: Final[dict[str, int | None]] = {"vless": 443}

DEFAULT_LABEL: Final = "VLESS"
DEFAULT_FINGERPRINT: Final = "chrome"
DEFAULT_ENCRYPTION: Final = "none"
MAX_PORT: Final = 65535

_BAD_PERCENT_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class Transport(str, Enum):
    """Stream framing between the engine and the remote endpoint."""

    TCP = "tcp"
    WS = "ws"
    GRPC = "grpc"
    HTTP = "tcp+http"  # plain stream disguised with an HTTP request header


class SecurityMode(str, Enum):
    """Encryption layer applied on top of the transport."""

    NONE = "none"
    TLS = "tls"
    REALITY = "reality"


@dataclass(frozen=True)
class TlsSettings:
    server_name: str
    fingerprint: str = DEFAULT_FINGERPRINT
    alpn: tuple[str, ...] = ()


@dataclass(frozen=True)
class RealitySettings:
    server_name: str = ""
    fingerprint: str = DEFAULT_FINGERPRINT
    public_key: str = ""
    short_id: str = ""
    spider_x: str = ""


@dataclass(frozen=True)
class ConnectionDescriptor:
    """Validated form of a shareable connection key.

    Attributes:
        user_id: Opaque credential, usually a UUID
        host: Remote server address
        port: Remote server port
        transport: A known ``Transport`` or the raw ``type`` value when unknown
        security: Security mode
        tls: TLS parameters when ``security`` is TLS
        reality: Reality parameters when ``security`` is REALITY
        path: Request path override for ws and HTTP-disguised transports
        host_header: Host header override for ws and HTTP-disguised transports
        service_name: gRPC service name
        flow: Optional flow control method
        encryption: User encryption, ``none`` for VLESS
        label: Human readable server name
        params: Raw query parameters
    """

    user_id: str
    host: str
    port: int
    transport: Transport | str = Transport.TCP
    security: SecurityMode = SecurityMode.NONE
    tls: TlsSettings | None = None
    reality: RealitySettings | None = None
    path: str | None = None
    host_header: str | None = None
    service_name: str | None = None
    flow: str | None = None
    encryption: str = DEFAULT_ENCRYPTION
    label: str = DEFAULT_LABEL
    params: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def address(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"

    @property
    def transport_name(self) -> str:
        return self.transport.value if isinstance(self.transport, Transport) else self.transport

    def summary(self) -> dict[str, str]:
        """Return display rows describing the descriptor."""
        rows = {
            "Label": self.label,
            "Server": self.address,
            "Transport": self.transport_name,
            "Security": self.security.value,
        }
        if self.tls:
            rows["SNI"] = self.tls.server_name
            rows["Fingerprint"] = self.tls.fingerprint
        if self.reality:
            rows["SNI"] = self.reality.server_name
            rows["Fingerprint"] = self.reality.fingerprint
            rows["Public Key"] = self.reality.public_key
        if self.flow:
            rows["Flow"] = self.flow
        return rows


def _strict_unquote(value: str, what: str) -> str:
    """Percent-decode ``value``, refusing malformed escapes instead of guessing."""
    if _BAD_PERCENT_ESCAPE.search(value):
        raise ParseError(f"Invalid percent-encoding in {what}")
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError as e:
        raise ParseError(f"Invalid percent-encoding in {what}") from e


def _parse_query(query: str) -> dict[str, str]:
    try:
        pairs = parse_qsl(query, keep_blank_values=True, errors="strict")
    except UnicodeDecodeError as e:
        raise ParseError("Invalid percent-encoding in query") from e
    # dict() keeps the last occurrence of a repeated key
    return dict(pairs)


def _parse_security(params: dict[str, str], host: str) -> tuple[SecurityMode, TlsSettings | None, RealitySettings | None]:
    raw = params.get("security") or SecurityMode.NONE.value
    try:
        mode = SecurityMode(raw.lower())
    except ValueError:
        raise ParseError(f"Unsupported security mode: {raw}") from None

    if mode is SecurityMode.TLS:
        alpn = tuple(item.strip() for item in params.get("alpn", "").split(",") if item.strip())
        tls = TlsSettings(
            server_name=params.get("sni") or host,
            fingerprint=params.get("fp") or DEFAULT_FINGERPRINT,
            alpn=alpn,
        )
        return mode, tls, None

    if mode is SecurityMode.REALITY:
        reality = RealitySettings(
            server_name=params.get("sni", ""),
            fingerprint=params.get("fp") or DEFAULT_FINGERPRINT,
            public_key=params.get("pbk", ""),
            short_id=params.get("sid", ""),
            spider_x=params.get("spx", ""),
        )
        missing = [key for key in ("sni", "pbk", "sid") if not params.get(key)]
        if missing:
            logger.debug(f"Reality key without {', '.join(missing)}; using empty defaults")
        return mode, None, reality

    return mode, None, None


def _parse_transport(params: dict[str, str]) -> Transport | str:
    network = params.get("type") or Transport.TCP.value
    if network == Transport.TCP.value and params.get("headerType") == "http":
        return Transport.HTTP
    try:
        return Transport(network)
    except ValueError:
        logger.debug(f"Unrecognised transport {network!r}; passing it through")
        return network


def parse_descriptor(uri: str) -> ConnectionDescriptor:
    """Parse a shareable connection key.

    Args:
        uri: Key such as ``vless://uuid@host:443?security=tls#Label``

    Returns:
        ConnectionDescriptor: The validated descriptor

    Raises:
        ParseError: If the scheme, credential, host, port or any encoded
            component is invalid
    """
    uri = uri.strip()
    if "://" not in uri:
        raise ParseError("Not a connection key: missing scheme")

    scheme = uri.split("://", 1)[0].lower()
    if scheme not in SCHEME_DEFAULT_PORTS:
        raise ParseError(f"Unsupported scheme: {scheme}")

    try:
        parts = urlsplit(uri)
    except ValueError as e:
        raise ParseError(f"Malformed key: {e}") from e

    if not parts.username:
        raise ParseError("Missing credential")
    user_id = _strict_unquote(parts.username, "credential")

    host = parts.hostname
    if not host:
        raise ParseError("Missing host")

    try:
        port = parts.port
    except ValueError:
        raise ParseError("Invalid port") from None
    if port is None:
        port = SCHEME_DEFAULT_PORTS[scheme]
        if port is None:
            raise ParseError(f"Missing port for scheme {scheme}")
    if not 0 < port <= MAX_PORT:
        raise ParseError(f"Port out of range: {port}")

    label = _strict_unquote(parts.fragment, "label") if parts.fragment else DEFAULT_LABEL
    params = _parse_query(parts.query)
    security, tls, reality = _parse_security(params, host)
    transport = _parse_transport(params)

    path = host_header = service_name = None
    if transport in (Transport.WS, Transport.HTTP):
        path = params.get("path") or None
        host_header = params.get("host") or None
    elif transport is Transport.GRPC:
        service_name = params.get("serviceName", "")

    return ConnectionDescriptor(
        user_id=user_id,
        host=host,
        port=port,
        transport=transport,
        security=security,
        tls=tls,
        reality=reality,
        path=path,
        host_header=host_header,
        service_name=service_name,
        flow=params.get("flow") or None,
        encryption=params.get("encryption") or DEFAULT_ENCRYPTION,
        label=label or DEFAULT_LABEL,
        params=params,
    )
