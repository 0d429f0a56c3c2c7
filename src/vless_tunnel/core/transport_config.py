"""Expansion of a connection descriptor into a full xray-core config.

The generated document always has the same shape:

- three local inbounds: SOCKS, HTTP and the control (stats API) inbound
- exactly one ``proxy`` outbound built from the descriptor, followed by the
  ``direct`` and ``block`` outbounds
- routing rules sending control traffic to the API handler and private or
  loopback ranges straight out, everything else through ``proxy``

Building is pure: nothing is written here, the supervisor persists the
result when it launches the engine.

Example:
    config = build_config(parse_descriptor(uri), TunnelSettings())
    path.write_text(config.to_json())
"""

import json
from dataclasses import dataclass
from typing import Any, Final

from vless_tunnel.core.descriptor import ConnectionDescriptor, SecurityMode, Transport
from vless_tunnel.core.settings import TunnelSettings

PROXY_TAG: Final = "proxy"
DIRECT_TAG: Final = "direct"
BLOCK_TAG: Final = "block"
API_TAG: Final = "api"
SOCKS_TAG: Final = "socks-in"
HTTP_TAG: Final = "http-in"

PRIVATE_RANGES: Final = [
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
]

LOG_LEVEL: Final = "warning"


@dataclass
class TransportConfig:
    """Engine configuration for one connection.

    Attributes:
        inbounds: Local listeners
        outbounds: Proxy, direct and block outbounds, in that order
        routing: Routing section
        log_level: Engine log level
    """

    inbounds: list[dict[str, Any]]
    outbounds: list[dict[str, Any]]
    routing: dict[str, Any]
    log_level: str = LOG_LEVEL

    @property
    def proxy_outbound(self) -> dict[str, Any]:
        return next(o for o in self.outbounds if o["tag"] == PROXY_TAG)

    def inbound_port(self, tag: str) -> int:
        return next(i["port"] for i in self.inbounds if i["tag"] == tag)

    def to_dict(self) -> dict[str, Any]:
        return {
            "log": {"loglevel": self.log_level},
            "stats": {},
            "api": {"tag": API_TAG, "services": ["StatsService"]},
            "policy": {
                "system": {
                    "statsInboundUplink": True,
                    "statsInboundDownlink": True,
                    "statsOutboundUplink": True,
                    "statsOutboundDownlink": True,
                }
            },
            "inbounds": self.inbounds,
            "outbounds": self.outbounds,
            "routing": self.routing,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def _security_settings(descriptor: ConnectionDescriptor) -> dict[str, Any]:
    if descriptor.security is SecurityMode.TLS and descriptor.tls:
        tls: dict[str, Any] = {
            "serverName": descriptor.tls.server_name,
            "allowInsecure": False,
            "fingerprint": descriptor.tls.fingerprint,
        }
        if descriptor.tls.alpn:
            tls["alpn"] = list(descriptor.tls.alpn)
        return {"security": "tls", "tlsSettings": tls}

    if descriptor.security is SecurityMode.REALITY and descriptor.reality:
        reality = descriptor.reality
        return {
            "security": "reality",
            "realitySettings": {
                "serverName": reality.server_name,
                "fingerprint": reality.fingerprint,
                "publicKey": reality.public_key,
                "shortId": reality.short_id,
                "spiderX": reality.spider_x,
            },
        }

    return {}


def _stream_settings(descriptor: ConnectionDescriptor) -> dict[str, Any]:
    """Build ``streamSettings``; unknown transports fall back to plain tcp."""
    host_header = descriptor.host_header or descriptor.host
    path = descriptor.path or "/"

    if descriptor.transport is Transport.WS:
        stream: dict[str, Any] = {
            "network": "ws",
            "wsSettings": {"path": path, "headers": {"Host": host_header}},
        }
    elif descriptor.transport is Transport.GRPC:
        stream = {
            "network": "grpc",
            "grpcSettings": {"serviceName": descriptor.service_name or ""},
        }
    elif descriptor.transport is Transport.HTTP:
        stream = {
            "network": "tcp",
            "tcpSettings": {
                "header": {
                    "type": "http",
                    "request": {"path": [path], "headers": {"Host": [host_header]}},
                }
            },
        }
    else:
        stream = {"network": "tcp"}

    stream.update(_security_settings(descriptor))
    return stream


def build_outbound(descriptor: ConnectionDescriptor) -> dict[str, Any]:
    """Build the single ``proxy`` outbound for a descriptor."""
    user: dict[str, Any] = {"id": descriptor.user_id, "encryption": descriptor.encryption}
    # The engine rejects an empty flow, so only set it when present
    if descriptor.flow:
        user["flow"] = descriptor.flow

    return {
        "tag": PROXY_TAG,
        "protocol": "vless",
        "settings": {
            "vnext": [
                {
                    "address": descriptor.host,
                    "port": descriptor.port,
                    "users": [user],
                }
            ]
        },
        "streamSettings": _stream_settings(descriptor),
    }


def build_inbounds(settings: TunnelSettings) -> list[dict[str, Any]]:
    return [
        {
            "tag": SOCKS_TAG,
            "protocol": "socks",
            "listen": settings.listen_host,
            "port": settings.socks_port,
            "settings": {"auth": "noauth", "udp": True},
        },
        {
            "tag": HTTP_TAG,
            "protocol": "http",
            "listen": settings.listen_host,
            "port": settings.http_port,
            "settings": {},
        },
        {
            "tag": API_TAG,
            "protocol": "dokodemo-door",
            "listen": settings.listen_host,
            "port": settings.api_port,
            "settings": {"address": settings.listen_host},
        },
    ]


def build_routing() -> dict[str, Any]:
    return {
        "domainStrategy": "AsIs",
        "rules": [
            {"type": "field", "inboundTag": [API_TAG], "outboundTag": API_TAG},
            {"type": "field", "outboundTag": DIRECT_TAG, "ip": list(PRIVATE_RANGES)},
        ],
    }


def build_config(descriptor: ConnectionDescriptor, settings: TunnelSettings | None = None) -> TransportConfig:
    """Build the engine configuration for a parsed descriptor.

    Args:
        descriptor: Parsed connection descriptor
        settings: Port layout; defaults to ``TunnelSettings()``

    Returns:
        TransportConfig: Configuration ready to be written for the engine
    """
    settings = settings or TunnelSettings()
    return TransportConfig(
        inbounds=build_inbounds(settings),
        outbounds=[
            build_outbound(descriptor),
            {"tag": DIRECT_TAG, "protocol": "freedom"},
            {"tag": BLOCK_TAG, "protocol": "blackhole"},
        ],
        routing=build_routing(),
    )
