"""Runtime settings for one connection manager.

Ports, paths and timeouts live here instead of being scattered as module
globals so a manager instance owns its own layout. The defaults match the
ports xray clients conventionally use; the CLI overrides them per run.
"""

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

from vless_tunnel.core.exceptions import SettingsError

DEFAULT_LISTEN_HOST: Final = "127.0.0.1"
DEFAULT_SOCKS_PORT: Final = 10808
DEFAULT_HTTP_PORT: Final = 10809
DEFAULT_API_PORT: Final = 10085

DEFAULT_READY_TIMEOUT: Final = 3.0  # seconds
DEFAULT_STATS_QUERY_TIMEOUT: Final = 2.0  # seconds
DEFAULT_STOP_TIMEOUT: Final = 5.0  # seconds
DEFAULT_COMMAND_TIMEOUT: Final = 5.0  # seconds

DEFAULT_SERVICE: Final = "Wi-Fi"
ENGINE_NAME: Final = "xray"

STATE_DIR: Final = Path.home() / ".vless-tunnel"
CONFIG_FILENAME: Final = "vless-tunnel-xray-config.json"
STATS_FILENAME: Final = "traffic-stats.json"


@dataclass
class TunnelSettings:
    """Ports, paths and timeouts shared by the tunnel components.

    Attributes:
        listen_host: Address the engine's local inbounds bind to
        socks_port: SOCKS inbound port
        http_port: HTTP inbound port
        api_port: Control (stats) inbound port
        engine_path: Explicit engine binary, searched before the fixed locations
        runtime_dir: Directory holding the generated engine config
        state_dir: Directory holding the persisted traffic totals
        ready_timeout: Seconds to wait for a readiness marker
        stats_query_timeout: Seconds allowed for one counter query
        stop_timeout: Seconds to wait after SIGTERM before killing the engine
        command_timeout: Seconds allowed for one host command
        default_service: Network service used when detection fails
    """

    listen_host: str = DEFAULT_LISTEN_HOST
    socks_port: int = DEFAULT_SOCKS_PORT
    http_port: int = DEFAULT_HTTP_PORT
    api_port: int = DEFAULT_API_PORT
    engine_path: Path | None = None
    runtime_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))
    state_dir: Path = STATE_DIR
    ready_timeout: float = DEFAULT_READY_TIMEOUT
    stats_query_timeout: float = DEFAULT_STATS_QUERY_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    command_timeout: float = DEFAULT_COMMAND_TIMEOUT
    default_service: str = DEFAULT_SERVICE

    def __post_init__(self) -> None:
        ports = {"SOCKS": self.socks_port, "HTTP": self.http_port, "API": self.api_port}
        for name, port in ports.items():
            if not 0 < port <= 65535:
                raise SettingsError(f"{name} port out of range: {port}")
        if len(set(ports.values())) != len(ports):
            raise SettingsError("SOCKS, HTTP and API ports must differ")

    @property
    def config_path(self) -> Path:
        return self.runtime_dir / CONFIG_FILENAME

    @property
    def stats_path(self) -> Path:
        return self.state_dir / STATS_FILENAME

    @property
    def api_address(self) -> str:
        return f"{self.listen_host}:{self.api_port}"

    @property
    def socks_address(self) -> str:
        return f"{self.listen_host}:{self.socks_port}"
