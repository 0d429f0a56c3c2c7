"""Command line interface modules.

This package provides the command-line tools for:
- Connecting through a VLESS key and watching live traffic
- Inspecting keys and the engine config they produce
- Showing the active network service
- Probing server latency and reading subscriptions

The command modules are thin front-ends over ``vless_tunnel.core``.
"""
