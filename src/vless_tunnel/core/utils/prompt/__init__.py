"""Prompt and UI utilities."""

from vless_tunnel.core.utils.prompt.prompt import PromptHandler, console
from vless_tunnel.core.utils.prompt.tunnel_ui import TunnelUI

__all__ = ["console", "PromptHandler", "TunnelUI"]
