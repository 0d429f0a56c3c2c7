"""Engine-facing library components."""

from .commands import CommandResult, CommandRunner
from .supervisor import EngineHandle, ProcessState, ProcessSupervisor
from .traffic_stats import StatsCollector, StatsStore, TrafficStats

__all__ = [
    "CommandResult",
    "CommandRunner",
    "EngineHandle",
    "ProcessState",
    "ProcessSupervisor",
    "StatsCollector",
    "StatsStore",
    "TrafficStats",
]
