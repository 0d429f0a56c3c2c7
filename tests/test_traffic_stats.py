"""Tests for traffic counters and the persisted totals record."""

import json
from pathlib import Path

import pytest

from vless_tunnel.core.lib.supervisor import EngineHandle
from vless_tunnel.core.lib.traffic_stats import StatsCollector, StatsStore, TrafficStats, sum_counters

ENGINE = "/opt/xray/xray"


def statsquery_output(*values):
    return json.dumps(
        {"stat": [{"name": f"outbound>>>proxy>>>traffic>>>link{i}", "value": v} for i, v in enumerate(values)]}
    )


@pytest.fixture
def handle(tmp_path):
    return EngineHandle(pid=4242, engine_path=Path(ENGINE), config_path=tmp_path / "config.json", started_at=0.0)


@pytest.fixture
def collector(settings, runner):
    return StatsCollector(settings, runner)


def test_sum_counters_treats_missing_value_as_zero():
    payload = {"stat": [{"name": "a", "value": 10}, {"name": "b"}, {"name": "c", "value": "5"}]}

    assert sum_counters(payload) == 15
    assert sum_counters({}) == 0


def test_traffic_stats_totals():
    stats = TrafficStats(cumulative_uplink=10, cumulative_downlink=20, session_uplink=1, session_downlink=2)

    assert stats.total_uplink == 11
    assert stats.total_downlink == 22
    assert stats.to_dict() == {
        "cumulativeUplink": 10,
        "cumulativeDownlink": 20,
        "sessionUplink": 1,
        "sessionDownlink": 2,
    }


def test_store_missing_record_reads_zero(tmp_path):
    assert StatsStore(tmp_path / "absent.json").load() == (0, 0)


def test_store_corrupt_record_reads_zero(tmp_path):
    path = tmp_path / "stats.json"
    path.write_text("{not json")

    assert StatsStore(path).load() == (0, 0)


def test_store_save_replaces_record(tmp_path):
    store = StatsStore(tmp_path / "nested" / "stats.json")
    store.save(100, 200)
    store.save(150, 250)

    assert store.load() == (150, 250)
    assert not store.path.with_suffix(".tmp").exists()


@pytest.mark.asyncio
async def test_query_sums_matching_counters(collector, runner, handle, settings):
    runner.respond(ENGINE, "api", "statsquery", stdout=statsquery_output(100, 23))

    assert await collector.query(handle, "uplink") == 123
    assert runner.calls[0] == (
        ENGINE,
        "api",
        "statsquery",
        f"--server={settings.api_address}",
        "-pattern",
        "uplink",
    )


@pytest.mark.asyncio
async def test_query_without_handle_skips_engine(collector, runner):
    assert await collector.query(None, "uplink") == 0
    assert runner.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "configure",
    [
        lambda runner: runner.fail(ENGINE),
        lambda runner: runner.respond(ENGINE, returncode=1, stderr="connection refused"),
        lambda runner: runner.respond(ENGINE, stdout="not json"),
        lambda runner: runner.respond(ENGINE, stdout="[1, 2]"),
    ],
)
async def test_query_failure_reads_zero(collector, runner, handle, configure):
    configure(runner)

    assert await collector.query(handle, "downlink") == 0


@pytest.mark.asyncio
async def test_snapshot_merges_totals_and_session(settings, runner, handle):
    StatsStore(settings.stats_path).save(1000, 2000)
    runner.respond(ENGINE, "api", "statsquery", stdout=statsquery_output(7))
    collector = StatsCollector(settings, runner)

    stats = await collector.snapshot(handle)

    assert stats == TrafficStats(1000, 2000, 7, 7)


@pytest.mark.asyncio
async def test_fold_persists_and_resets_session(settings, runner, handle):
    runner.respond(ENGINE, "api", "statsquery", stdout=statsquery_output(300))
    collector = StatsCollector(settings, runner)

    folded = await collector.fold_into_cumulative(handle)

    assert folded == TrafficStats(300, 300, 0, 0)
    assert StatsStore(settings.stats_path).load() == (300, 300)
    assert StatsCollector(settings, runner).cumulative_uplink == 300


@pytest.mark.asyncio
async def test_fold_with_zero_delta_keeps_totals(settings, runner, handle):
    StatsStore(settings.stats_path).save(10, 20)
    runner.fail(ENGINE)
    collector = StatsCollector(settings, runner)

    folded = await collector.fold_into_cumulative(handle)

    assert (folded.cumulative_uplink, folded.cumulative_downlink) == (10, 20)
    assert StatsStore(settings.stats_path).load() == (10, 20)
