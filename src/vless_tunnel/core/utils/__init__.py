"""Utility functions and helpers."""

from vless_tunnel.core.utils.prompt import PromptHandler, TunnelUI
from vless_tunnel.core.utils.utils import format_bytes, format_duration, format_rate

__all__ = ["format_bytes", "format_duration", "format_rate", "PromptHandler", "TunnelUI"]
