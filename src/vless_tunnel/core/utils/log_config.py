"""Logging configuration for the tunnel supervisor.

Loguru is configured once at import with two sinks: a coloured console sink
on stderr and a rotating file sink that always records DEBUG, so engine output
pumped by the supervisor can be inspected after a failed session.
"""

import sys

from loguru import logger

from vless_tunnel.core.settings import STATE_DIR

LOG_DIR = STATE_DIR / "logs"
LOG_FILE = LOG_DIR / "tunnel.log"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def configure_logging(console_level: str = "INFO") -> None:
    """Replace all loguru sinks with the console and rotating file sinks."""
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=console_level, backtrace=True, diagnose=True)
    logger.add(
        LOG_FILE,
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        format=FILE_FORMAT,
        level="DEBUG",
        backtrace=True,
        diagnose=True,
    )


def enable_debug_logging() -> None:
    """Show DEBUG messages, including engine output, on the console."""
    configure_logging("DEBUG")


configure_logging()

__all__ = ["configure_logging", "enable_debug_logging", "logger", "LOG_DIR"]
