"""Exceptions raised by the tunnel supervisor.

Every error the core raises derives from ``TunnelError`` so callers at the
boundary (the connection manager and the CLI) can catch one type. The
subclasses mirror the stages of a connection:

- ``ParseError``: the shareable URI is malformed, raised before any side effect
- ``StartError``: the engine binary is missing, failed to spawn or exited early
- ``CrashError``: the engine went away after it was reported ready
- ``NetworkConfigError``: a single host proxy command failed (logged, non-fatal)
- ``StatsQueryError``: a counter query failed (reported as zero)

Example:
    try:
        descriptor = parse_descriptor(uri)
    except ParseError as e:
        console.print(f"[red]Invalid key: {e}")
"""


class TunnelError(Exception):
    """Base exception for tunnel errors."""


class ParseError(TunnelError, ValueError):
    """Raised when a connection descriptor cannot be parsed."""


class StartError(TunnelError):
    """Raised when the proxy engine cannot be started."""


class CrashError(TunnelError):
    """Raised when the proxy engine exits unexpectedly."""


class NetworkConfigError(TunnelError):
    """Raised when a host network-configuration command fails."""


class StatsQueryError(TunnelError):
    """Raised when the engine's stats endpoint cannot be queried."""


class CommandError(TunnelError):
    """Raised when a host command cannot be executed."""


class DNSResolutionError(TunnelError):
    """Raised when DNS resolution fails."""


class SubscriptionError(TunnelError):
    """Raised when a subscription cannot be fetched or decoded."""


class SettingsError(TunnelError, ValueError):
    """Raised when tunnel settings are inconsistent, e.g. clashing ports."""
