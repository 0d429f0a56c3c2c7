"""Tunnel-specific UI components."""

import time

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from vless_tunnel.core.lib.traffic_stats import TrafficStats
from vless_tunnel.core.utils.utils import format_bytes, format_duration, format_rate

from .prompt import PromptHandler

BANDWIDTH_THRESHOLD = 100  # bytes per second


class TunnelUI(PromptHandler):
    """Live panel showing the state and traffic of a tunnel session."""

    def __init__(self, label: str, socks_address: str) -> None:
        """Initialize the tunnel UI handler.

        Args:
            label: Display name of the connected server
            socks_address: Local SOCKS endpoint shown to the user
        """
        super().__init__()
        self.label = label
        self.socks_address = socks_address
        self._start_time = time.monotonic()
        self._last_sample: tuple[float, int, int] | None = None
        self._up_rate = 0.0
        self._down_rate = 0.0

    def _update_rates(self, stats: TrafficStats) -> None:
        now = time.monotonic()
        if self._last_sample is not None:
            then, uplink, downlink = self._last_sample
            elapsed = now - then
            if elapsed > 0:
                up_rate = (stats.session_uplink - uplink) / elapsed
                down_rate = (stats.session_downlink - downlink) / elapsed
                # Avoid jitter on near-idle links
                if abs(up_rate - self._up_rate) > BANDWIDTH_THRESHOLD:
                    self._up_rate = up_rate
                if abs(down_rate - self._down_rate) > BANDWIDTH_THRESHOLD:
                    self._down_rate = down_rate
        self._last_sample = (now, stats.session_uplink, stats.session_downlink)

    def _generate_table(self, state: str, stats: TrafficStats) -> Table:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Property", style="cyan", no_wrap=True)
        table.add_column("Value", style="green", no_wrap=True)

        elapsed = time.monotonic() - self._start_time
        table.add_row("State", f"{self.spinner_frame(elapsed)} {state}")
        table.add_row("Local SOCKS", self.socks_address)
        table.add_row("Upload", f"{format_rate(self._up_rate)}  ({format_bytes(stats.session_uplink)})")
        table.add_row("Download", f"{format_rate(self._down_rate)}  ({format_bytes(stats.session_downlink)})")
        table.add_row("Total Sent", format_bytes(stats.total_uplink))
        table.add_row("Total Received", format_bytes(stats.total_downlink))
        table.add_row("Uptime", format_duration(elapsed))
        return table

    def generate_display(self, state: str, stats: TrafficStats) -> Panel:
        """Build the panel for the latest stats sample."""
        self._update_rates(stats)
        title = Text(f"VLESS Tunnel: {self.label}", style="bold cyan")
        return Panel(
            self._generate_table(state, stats),
            title=title,
            subtitle="Press Ctrl+C to disconnect",
            border_style="blue",
            padding=(1, 2),
        )
