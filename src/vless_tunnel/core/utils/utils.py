"""Formatting helpers for traffic counters and session timing."""

from typing import Final

KIB: Final = 1024
UNITS: Final = ("B", "KB", "MB", "GB", "TB")


def format_bytes(bytes_: float) -> str:
    """Format a byte count into human readable form.

    Args:
        bytes_: Number of bytes to format

    Returns:
        str: Formatted string with appropriate unit, e.g. ``"1.5 MB"``
    """
    value = float(bytes_)
    for unit in UNITS[:-1]:
        if abs(value) < KIB:
            return f"{value:.1f} {unit}"
        value /= KIB
    return f"{value:.1f} {UNITS[-1]}"


def format_rate(bytes_per_second: float) -> str:
    """Format a transfer rate, e.g. ``"12.0 KB/s"``."""
    return f"{format_bytes(max(bytes_per_second, 0))}/s"


def format_duration(seconds: float) -> str:
    """Format an elapsed time as ``HH:MM:SS``, growing past 24 hours."""
    total = max(int(seconds), 0)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
