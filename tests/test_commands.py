"""Tests for the async host command runner."""

import asyncio
from unittest.mock import patch

import pytest

from vless_tunnel.core.exceptions import CommandError
from vless_tunnel.core.lib.commands import CommandRunner


@pytest.mark.asyncio
async def test_run_captures_output():
    result = await CommandRunner().run("sh", "-c", "echo out; echo err >&2; exit 3", timeout=5)

    assert result.returncode == 3
    assert not result.ok
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"


@pytest.mark.asyncio
async def test_missing_executable():
    with pytest.raises(CommandError, match="Executable not found"):
        await CommandRunner().run("definitely-not-a-real-binary-xyz")


@pytest.mark.asyncio
async def test_timeout_kills_child():
    spawned = []
    original = asyncio.create_subprocess_exec

    async def recording_exec(*args, **kwargs):
        proc = await original(*args, **kwargs)
        spawned.append(proc)
        return proc

    with patch("asyncio.create_subprocess_exec", side_effect=recording_exec):
        with pytest.raises(CommandError, match="Timeout"):
            await CommandRunner().run("sleep", "30", timeout=0.2)

    assert spawned[0].returncode is not None


@pytest.mark.asyncio
async def test_cancellation_kills_child():
    spawned = []
    original = asyncio.create_subprocess_exec

    async def recording_exec(*args, **kwargs):
        proc = await original(*args, **kwargs)
        spawned.append(proc)
        return proc

    with patch("asyncio.create_subprocess_exec", side_effect=recording_exec):
        task = asyncio.create_task(CommandRunner().run("sleep", "30", timeout=30))
        while not spawned:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert spawned[0].returncode is not None
