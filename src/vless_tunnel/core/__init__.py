"""Core tunnel supervisor implementation.

This package contains the components behind a tunnel session:
- Connection key parsing and engine config generation
- The connection manager state machine
- Host network (system proxy) integration
- Engine process supervision and traffic statistics (``lib``)
- Logging, formatting and terminal UI helpers (``utils``)

The core package holds everything needed to run a session while keeping
the command-line front-end separate.
"""

from vless_tunnel.core.connection import ConnectionManager, ConnectionState
from vless_tunnel.core.descriptor import ConnectionDescriptor, parse_descriptor
from vless_tunnel.core.settings import TunnelSettings
from vless_tunnel.core.transport_config import TransportConfig, build_config

__all__ = [
    "build_config",
    "ConnectionDescriptor",
    "ConnectionManager",
    "ConnectionState",
    "parse_descriptor",
    "TransportConfig",
    "TunnelSettings",
]
