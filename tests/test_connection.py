"""Tests for the connection manager state machine."""

import asyncio
import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from vless_tunnel.core.connection import ConnectionManager, ConnectionState
from vless_tunnel.core.exceptions import CrashError, StartError
from vless_tunnel.core.lib.supervisor import EngineHandle, ProcessSupervisor
from vless_tunnel.core.lib.traffic_stats import StatsCollector, StatsStore
from vless_tunnel.core.network import HostNetworkIntegrator, LocalEndpoints

from .conftest import TLS_URI, UUID

ENGINE = "/opt/xray/xray"
OTHER_URI = f"vless://{UUID}@other.example.net:8443?security=tls#Other"


def counters(value: int) -> str:
    return json.dumps({"stat": [{"name": "outbound>>>proxy>>>traffic>>>uplink", "value": value}]})


@pytest.fixture
def events():
    return []


@pytest.fixture
def supervisor(events, tmp_path):
    supervisor = MagicMock(spec=ProcessSupervisor)
    pids = iter(range(1000, 2000))

    async def start(config):
        handle = EngineHandle(
            pid=next(pids), engine_path=Path(ENGINE), config_path=tmp_path / "config.json", started_at=0.0
        )
        events.append(("start", config.proxy_outbound["settings"]["vnext"][0]["address"]))
        return handle

    async def stop(handle=None):
        events.append(("stop", handle.pid if handle else None))

    supervisor.start = AsyncMock(side_effect=start)
    supervisor.stop = AsyncMock(side_effect=stop)
    return supervisor


@pytest.fixture
def integrator(events):
    integrator = MagicMock(spec=HostNetworkIntegrator)
    integrator.applied_service = None

    async def enable(endpoints):
        events.append(("enable", endpoints))
        integrator.applied_service = "Wi-Fi"
        return "Wi-Fi"

    async def disable(service=None):
        events.append(("disable", service))
        integrator.applied_service = None

    integrator.enable = AsyncMock(side_effect=enable)
    integrator.disable = AsyncMock(side_effect=disable)
    return integrator


@pytest.fixture
def collector(settings, runner):
    runner.respond(ENGINE, "api", "statsquery", stdout=counters(0))
    return StatsCollector(settings, runner)


@pytest.fixture
def manager(settings, supervisor, integrator, collector, runner):
    return ConnectionManager(settings, supervisor=supervisor, integrator=integrator, collector=collector, runner=runner)


def event_names(events):
    return [name for name, _ in events]


@pytest.mark.asyncio
async def test_connect_and_disconnect(manager, settings, events, collector):
    result = await manager.connect(TLS_URI)

    assert result.ok and result.error is None
    assert manager.state is ConnectionState.CONNECTED
    assert (await manager.status()).to_dict() == {"state": "CONNECTED", "error": None}
    assert ("enable", LocalEndpoints.from_settings(settings)) in events

    result = await manager.disconnect()

    assert result.ok
    assert manager.state is ConnectionState.DISCONNECTED
    assert manager.session is None
    assert event_names(events) == ["start", "enable", "stop", "disable"]
    assert events[-1] == ("disable", "Wi-Fi")
    stats = await manager.stats()
    assert stats.session_uplink == 0 and stats.session_downlink == 0


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(manager, integrator):
    assert (await manager.disconnect()).ok
    assert (await manager.disconnect()).ok

    await manager.connect(TLS_URI)
    await manager.disconnect()
    await manager.disconnect()

    assert manager.state is ConnectionState.DISCONNECTED
    assert integrator.disable.await_count == 1


@pytest.mark.asyncio
async def test_reconnect_tears_down_previous_session(manager, events, supervisor):
    await manager.connect(TLS_URI)
    first_pid = manager.session.handle.pid

    result = await manager.connect(OTHER_URI)

    assert result.ok
    assert manager.session.descriptor.host == "other.example.net"
    names = event_names(events)
    assert names == ["start", "enable", "stop", "disable", "start", "enable"]
    assert events[2] == ("stop", first_pid)
    assert supervisor.start.await_count == 2


@pytest.mark.asyncio
async def test_concurrent_connects_are_serialised(manager, events):
    results = await asyncio.gather(manager.connect(TLS_URI), manager.connect(OTHER_URI))

    assert all(result.ok for result in results)
    names = event_names(events)
    # The second start only happens after the first session is fully gone
    second_start = names.index("start", 1)
    assert names[:second_start] == ["start", "enable", "stop", "disable"]
    assert manager.session.descriptor.host == "other.example.net"


@pytest.mark.asyncio
async def test_parse_failure_has_no_side_effects(manager, supervisor, integrator):
    result = await manager.connect("vless://not-a-valid-key")

    assert not result.ok
    assert "Missing credential" in result.error
    assert manager.state is ConnectionState.ERROR
    assert manager.session is None
    supervisor.start.assert_not_awaited()
    integrator.enable.assert_not_awaited()
    integrator.disable.assert_not_awaited()

    status = await manager.status()
    assert status.error == result.error


@pytest.mark.asyncio
async def test_start_failure_reports_error(manager, supervisor, integrator):
    supervisor.start.side_effect = StartError("xray error: bad config")

    result = await manager.connect(TLS_URI)

    assert result.error == "xray error: bad config"
    assert manager.state is ConnectionState.ERROR
    assert manager.session is None
    integrator.enable.assert_not_awaited()
    integrator.disable.assert_not_awaited()

    await manager.disconnect()
    assert manager.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_unexpected_failure_stops_engine(manager, integrator, events):
    integrator.enable.side_effect = RuntimeError("boom")

    result = await manager.connect(TLS_URI)

    assert result.error == "boom"
    assert manager.state is ConnectionState.ERROR
    assert event_names(events) == ["start", "stop"]


@pytest.mark.asyncio
async def test_crash_while_connected_releases_session(manager, events):
    await manager.connect(TLS_URI)

    session = manager.session
    manager.supervisor.on_crash(CrashError("xray exited unexpectedly (code 1)"))

    assert manager.state is ConnectionState.ERROR
    assert session.last_error == "xray exited unexpectedly (code 1)"
    assert (await manager.status()).error == "xray exited unexpectedly (code 1)"
    await manager._crash_task
    assert manager.session is None
    assert event_names(events)[-2:] == ["stop", "disable"]

    await manager.disconnect()
    assert manager.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_crash_while_connecting_fails_connect(manager, integrator, events):
    async def enable_then_crash(endpoints):
        manager.supervisor.on_crash(CrashError("xray exited unexpectedly (code 2)"))
        return "Wi-Fi"

    integrator.enable.side_effect = enable_then_crash

    result = await manager.connect(TLS_URI)

    assert not result.ok
    assert "code 2" in result.error
    assert manager.state is ConnectionState.ERROR
    assert manager.session is None
    assert events[-1] == ("disable", "Wi-Fi")


@pytest.mark.asyncio
async def test_cumulative_stats_are_monotonic(manager, settings, runner):
    totals = []
    for session_bytes in (100, 0, 250):
        runner.respond(ENGINE, "api", "statsquery", stdout=counters(session_bytes))
        await manager.connect(TLS_URI)

        live = await manager.stats()
        assert live.session_uplink == session_bytes

        await manager.disconnect()
        stats = await manager.stats()
        totals.append(stats.cumulative_uplink)

    assert totals == [100, 100, 350]
    assert StatsStore(settings.stats_path).load() == (350, 350)


@pytest.mark.asyncio
async def test_stats_not_queried_when_disconnected(manager, runner):
    stats = await manager.stats()

    assert stats.session_uplink == 0
    assert runner.calls_to(ENGINE) == []


@pytest.mark.asyncio
async def test_failed_session_is_not_folded(manager, supervisor, runner, settings):
    runner.respond(ENGINE, "api", "statsquery", stdout=counters(500))
    supervisor.start.side_effect = StartError("xray error: bad config")

    await manager.connect(TLS_URI)
    await manager.disconnect()

    assert (await manager.stats()).cumulative_uplink == 0
    assert not settings.stats_path.exists()


@pytest.mark.asyncio
async def test_end_to_end_with_shell_engine(settings, runner, make_engine, tmp_path, monkeypatch):
    """Real supervisor and integrator, with host commands faked."""
    monkeypatch.chdir(tmp_path)
    settings.engine_path = make_engine('echo "Xray 1.8.24 started"\nexec sleep 30')
    runner.respond(str(settings.engine_path), "api", "statsquery", stdout=counters(42))
    manager = ConnectionManager(settings, runner=runner)
    manager.integrator.active_service = AsyncMock(return_value="Wi-Fi")

    result = await manager.connect(TLS_URI)
    assert result.ok, result.error
    assert settings.config_path.exists()

    await manager.disconnect()

    assert manager.state is ConnectionState.DISCONNECTED
    assert not settings.config_path.exists()
    states = [call[1:] for call in runner.calls_to("networksetup") if call[-1] in ("on", "off")]
    assert states[:3] == [
        ("-setsocksfirewallproxystate", "Wi-Fi", "on"),
        ("-setwebproxystate", "Wi-Fi", "on"),
        ("-setsecurewebproxystate", "Wi-Fi", "on"),
    ]
    assert states[3:] == [
        ("-setsocksfirewallproxystate", "Wi-Fi", "off"),
        ("-setwebproxystate", "Wi-Fi", "off"),
        ("-setsecurewebproxystate", "Wi-Fi", "off"),
    ]
    assert StatsStore(settings.stats_path).load() == (42, 42)


@pytest.mark.asyncio
async def test_unsupported_scheme_spawns_nothing(manager, supervisor, integrator, runner):
    result = await manager.connect(f"vmess://{UUID}@example.com:443?security=tls#Label")

    assert not result.ok
    assert "Unsupported scheme" in result.error
    supervisor.start.assert_not_awaited()
    integrator.enable.assert_not_awaited()
    assert runner.calls == []
