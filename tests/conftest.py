"""Common test fixtures and utilities."""

import stat
from collections.abc import Callable
from pathlib import Path

import pytest

from vless_tunnel.core.exceptions import CommandError
from vless_tunnel.core.lib.commands import CommandResult
from vless_tunnel.core.settings import TunnelSettings

UUID = "b831381d-6324-4d53-ad4f-8cda48b30811"
TLS_URI = f"vless://{UUID}@example.com:443?security=tls&type=tcp#Label"


class FakeRunner:
    """Stand-in for ``CommandRunner`` that answers by argv prefix."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self._responses: list[tuple[tuple[str, ...], CommandResult | Exception]] = []

    def respond(self, *prefix: str, stdout: str = "", stderr: str = "", returncode: int = 0) -> None:
        self._responses.append((prefix, CommandResult(returncode, stdout, stderr)))

    def fail(self, *prefix: str, error: Exception | None = None) -> None:
        self._responses.append((prefix, error or CommandError(f"Executable not found: {prefix[0]}")))

    def calls_to(self, program: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[0] == program]

    async def run(self, *argv: str, timeout: float | None = None) -> CommandResult:
        self.calls.append(argv)
        matches = [(prefix, outcome) for prefix, outcome in self._responses if argv[: len(prefix)] == prefix]
        if not matches:
            return CommandResult(0, "", "")
        # Longest prefix wins, later registrations win ties
        _, outcome = max(enumerate(matches), key=lambda item: (len(item[1][0]), item[0]))[1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def settings(tmp_path: Path) -> TunnelSettings:
    """Settings isolated under tmp_path with short timeouts."""
    return TunnelSettings(
        runtime_dir=tmp_path / "run",
        state_dir=tmp_path / "state",
        ready_timeout=2.0,
        stop_timeout=2.0,
        stats_query_timeout=1.0,
        command_timeout=1.0,
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_engine(tmp_path: Path) -> Callable[[str], Path]:
    """Write an executable /bin/sh script standing in for xray."""

    def factory(body: str, name: str = "xray") -> Path:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return factory
