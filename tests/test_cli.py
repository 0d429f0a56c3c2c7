"""Tests for the command-line interface."""

import json

import pytest
from typer.testing import CliRunner

from vless_tunnel.cmd import cli
from vless_tunnel.core.lib.traffic_stats import StatsStore
from vless_tunnel.core.settings import TunnelSettings

from .conftest import TLS_URI

runner = CliRunner()


def test_no_command_prints_version():
    result = runner.invoke(cli.app, [])

    assert "VLESS Tunnel v" in result.stdout


def test_parse_command():
    result = runner.invoke(cli.app, ["parse", TLS_URI])

    assert result.exit_code == 0
    assert "example.com:443" in result.stdout
    assert "tls" in result.stdout


def test_parse_command_invalid_key():
    result = runner.invoke(cli.app, ["parse", "vless://example.com"])

    assert result.exit_code == 1
    assert "Invalid key" in result.stdout


def test_config_command_writes_json_to_stdout():
    result = runner.invoke(cli.app, ["config", TLS_URI, "--socks-port", "1080"])

    assert result.exit_code == 0
    document = json.loads(result.stdout)
    assert document["inbounds"][0]["port"] == 1080
    assert document["outbounds"][0]["tag"] == "proxy"


def test_config_command_output_file(tmp_path):
    target = tmp_path / "xray.json"

    result = runner.invoke(cli.app, ["config", TLS_URI, "--output", str(target)])

    assert result.exit_code == 0
    assert json.loads(target.read_text())["routing"]["rules"]


def test_clashing_ports_rejected():
    result = runner.invoke(cli.app, ["config", TLS_URI, "--socks-port", "9000", "--http-port", "9000"])

    assert result.exit_code == 2
    assert "must differ" in result.stdout


def test_api_port_clashing_with_socks_rejected():
    result = runner.invoke(cli.app, ["config", TLS_URI, "--api-port", "10808"])

    assert result.exit_code == 2
    assert "must differ" in result.stdout


def test_stats_command(tmp_path, monkeypatch):
    settings = TunnelSettings(state_dir=tmp_path)
    StatsStore(settings.stats_path).save(2048, 3 * 1024 * 1024)
    monkeypatch.setattr(cli, "TunnelSettings", lambda: settings)

    result = runner.invoke(cli.app, ["stats"])

    assert result.exit_code == 0
    assert "2.0 KB" in result.stdout
    assert "3.0 MB" in result.stdout


@pytest.mark.parametrize("command", ["connect", "ping"])
def test_key_commands_reject_invalid_keys(command, monkeypatch):
    monkeypatch.setattr("vless_tunnel.cmd.tunnel.ProgressBar", _NullProgressBar)

    result = runner.invoke(cli.app, [command, "vless://example.com"])

    assert result.exit_code == 1


class _NullProgressBar:
    def __init__(self, *args, **kwargs):
        pass

    def __enter__(self):
        return lambda iterable: iterable

    def __exit__(self, *exc):
        return False
