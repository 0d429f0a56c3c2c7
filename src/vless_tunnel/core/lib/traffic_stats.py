"""Traffic statistics for the tunnel.

Two kinds of counters are tracked:

- session counters, read live from the engine's stats API and reset each time
  a new session connects
- cumulative counters, persisted in a small JSON record so totals survive
  restarts of the engine and of the application

A session is folded into the cumulative totals exactly once, right before the
engine is stopped, and the record is written immediately afterwards. A crash
mid-session therefore loses at most that session's delta.

Counter queries never raise: a failed query is logged and counted as zero so
a stats display cannot block or break the connection.

Example:
    collector = StatsCollector(settings, CommandRunner())
    stats = await collector.snapshot(handle)
    print(stats.session_downlink)
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

from loguru import logger

from vless_tunnel.core.exceptions import CommandError, StatsQueryError
from vless_tunnel.core.lib.commands import CommandRunner
from vless_tunnel.core.lib.supervisor import EngineHandle
from vless_tunnel.core.settings import TunnelSettings

UPLINK_PATTERN: Final = "uplink"
DOWNLINK_PATTERN: Final = "downlink"


@dataclass
class TrafficStats:
    """Byte counters for the current session and all past sessions."""

    cumulative_uplink: int = 0
    cumulative_downlink: int = 0
    session_uplink: int = 0
    session_downlink: int = 0

    @property
    def total_uplink(self) -> int:
        return self.cumulative_uplink + self.session_uplink

    @property
    def total_downlink(self) -> int:
        return self.cumulative_downlink + self.session_downlink

    def to_dict(self) -> dict[str, int]:
        return {
            "cumulativeUplink": self.cumulative_uplink,
            "cumulativeDownlink": self.cumulative_downlink,
            "sessionUplink": self.session_uplink,
            "sessionDownlink": self.session_downlink,
        }


class StatsStore:
    """Durable record of cumulative uplink/downlink totals."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> tuple[int, int]:
        """Read the stored totals; a missing or corrupt record reads as zero."""
        if not self.path.exists():
            return 0, 0
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            uplink = max(int(data.get("uplink", 0)), 0)
            downlink = max(int(data.get("downlink", 0)), 0)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable stats record {self.path}: {e}")
            return 0, 0
        return uplink, downlink

    def save(self, uplink: int, downlink: int) -> None:
        """Atomically replace the stored totals."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps({"uplink": uplink, "downlink": downlink}), encoding="utf-8")
        os.replace(tmp_path, self.path)


def sum_counters(payload: dict[str, Any]) -> int:
    """Sum every counter value in a ``statsquery`` response."""
    total = 0
    for stat in payload.get("stat") or []:
        # Zero-valued counters are omitted from the value field
        total += int(stat.get("value") or 0)
    return total


class StatsCollector:
    """Query the engine for traffic counters and maintain cumulative totals."""

    def __init__(
        self,
        settings: TunnelSettings | None = None,
        runner: CommandRunner | None = None,
        store: StatsStore | None = None,
    ) -> None:
        """Initialize the collector and load persisted totals.

        Args:
            settings: Provides the API address, query timeout and record path
            runner: Runs the engine's ``api statsquery`` subcommand
            store: Durable record; defaults to ``settings.stats_path``
        """
        self.settings = settings or TunnelSettings()
        self.runner = runner or CommandRunner()
        self.store = store or StatsStore(self.settings.stats_path)
        self.cumulative_uplink, self.cumulative_downlink = self.store.load()

    async def _query(self, handle: EngineHandle, pattern: str) -> int:
        try:
            result = await self.runner.run(
                str(handle.engine_path),
                "api",
                "statsquery",
                f"--server={self.settings.api_address}",
                "-pattern",
                pattern,
                timeout=self.settings.stats_query_timeout,
            )
        except CommandError as e:
            raise StatsQueryError(str(e)) from e
        if not result.ok:
            raise StatsQueryError(result.stderr.strip() or f"statsquery exited with {result.returncode}")
        try:
            return sum_counters(json.loads(result.stdout))
        except (ValueError, TypeError, AttributeError) as e:
            raise StatsQueryError(f"Malformed statsquery output: {e}") from e

    async def query(self, handle: EngineHandle | None, pattern: str) -> int:
        """Sum all counters matching ``pattern``; any failure reads as zero."""
        if handle is None:
            return 0
        try:
            return await self._query(handle, pattern)
        except StatsQueryError as e:
            logger.debug(f"Stats query for {pattern!r} failed: {e}")
            return 0

    async def session_snapshot(self, handle: EngineHandle | None) -> tuple[int, int]:
        """Return ``(uplink, downlink)`` for the running session."""
        uplink = await self.query(handle, UPLINK_PATTERN)
        downlink = await self.query(handle, DOWNLINK_PATTERN)
        return uplink, downlink

    async def snapshot(self, handle: EngineHandle | None = None) -> TrafficStats:
        """Merge persisted totals with the live session counters."""
        uplink, downlink = await self.session_snapshot(handle)
        return TrafficStats(
            cumulative_uplink=self.cumulative_uplink,
            cumulative_downlink=self.cumulative_downlink,
            session_uplink=uplink,
            session_downlink=downlink,
        )

    async def fold_into_cumulative(self, handle: EngineHandle | None) -> TrafficStats:
        """Add the session counters to the totals and persist them.

        Returns:
            TrafficStats: Totals after folding, with zeroed session counters
        """
        uplink, downlink = await self.session_snapshot(handle)
        self.cumulative_uplink += max(uplink, 0)
        self.cumulative_downlink += max(downlink, 0)
        try:
            self.store.save(self.cumulative_uplink, self.cumulative_downlink)
        except OSError as e:
            logger.error(f"Could not persist traffic totals to {self.store.path}: {e}")
        logger.info(f"Session folded: +{uplink} up, +{downlink} down")
        return TrafficStats(
            cumulative_uplink=self.cumulative_uplink,
            cumulative_downlink=self.cumulative_downlink,
        )
