"""Lifecycle management of the external xray-core process.

The supervisor owns exactly one engine process at a time and walks it through

    IDLE -> STARTING -> RUNNING -> STOPPED

with ERROR reachable from STARTING (early exit) and RUNNING (crash). It:

- locates the engine binary at its fixed locations
- writes the generated config to the runtime directory
- spawns ``xray run -config <file>`` and drains stdout/stderr line by line
- decides readiness through a pluggable predicate, treating an elapsed
  ``ready_timeout`` without exit as ready
- turns an early non-zero exit into a ``StartError`` carrying the most useful
  line of engine output, via a pluggable diagnostic extractor
- reports a crash after RUNNING through the ``on_crash`` callback

Example:
    supervisor = ProcessSupervisor(settings, on_crash=handle_crash)
    handle = await supervisor.start(config)
    ...
    await supervisor.stop(handle)
"""

import asyncio
import contextlib
import os
import re
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Final

from loguru import logger

from vless_tunnel.core.exceptions import CrashError, StartError
from vless_tunnel.core.settings import ENGINE_NAME, TunnelSettings
from vless_tunnel.core.transport_config import TransportConfig

PACKAGE_DIR: Final = Path(__file__).resolve().parents[2]

READY_MARKERS: Final = ("started", "listening")
FAILURE_PATTERN: Final = re.compile(r"Failed to start:(.+)")
MAX_DIAGNOSTIC_LENGTH: Final = 150
MAX_OUTPUT_EXCERPT: Final = 200
OUTPUT_BUFFER_LINES: Final = 200
DRAIN_TIMEOUT: Final = 1.0  # seconds
OUTPUT_LINE_LIMIT: Final = 1024 * 1024  # bytes per engine output line
CONFIG_FLAGS: Final = os.O_WRONLY | os.O_CREAT | os.O_EXCL | getattr(os, "O_NOFOLLOW", 0)

# Type aliases
ReadinessPredicate = Callable[[str], bool]
DiagnosticExtractor = Callable[[str], str]
CrashCallback = Callable[[CrashError], None]


class ProcessState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


@dataclass(frozen=True)
class EngineHandle:
    """Reference to a running engine process.

    Attributes:
        pid: Process id
        engine_path: Binary that was launched
        config_path: Config file handed to the engine
        started_at: Monotonic timestamp of the spawn
    """

    pid: int
    engine_path: Path
    config_path: Path
    started_at: float

    @property
    def uptime(self) -> float:
        return time.monotonic() - self.started_at


def marker_readiness(*markers: str) -> ReadinessPredicate:
    """Build a predicate that accepts any output line containing a marker."""

    def is_ready(line: str) -> bool:
        return any(marker in line for marker in markers)

    return is_ready


def extract_failure(output: str) -> str:
    """Pull the most specific failure text out of engine output."""
    match = FAILURE_PATTERN.search(output)
    if match:
        return match.group(1).strip()[:MAX_DIAGNOSTIC_LENGTH]
    return output.strip()[:MAX_OUTPUT_EXCERPT]


class ProcessSupervisor:
    """Spawn, watch and stop the xray-core engine."""

    def __init__(
        self,
        settings: TunnelSettings | None = None,
        *,
        readiness: ReadinessPredicate | None = None,
        diagnostics: DiagnosticExtractor | None = None,
        on_crash: CrashCallback | None = None,
    ) -> None:
        self.settings = settings or TunnelSettings()
        self.readiness = readiness or marker_readiness(*READY_MARKERS)
        self.diagnostics = diagnostics or extract_failure
        self.on_crash = on_crash
        self._state = ProcessState.IDLE
        self._process: asyncio.subprocess.Process | None = None
        self._handle: EngineHandle | None = None
        self._output: deque[str] = deque(maxlen=OUTPUT_BUFFER_LINES)
        self._ready = asyncio.Event()
        self._pumps: list[asyncio.Task] = []
        self._exit_task: asyncio.Task | None = None

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def handle(self) -> EngineHandle | None:
        return self._handle

    @property
    def output(self) -> str:
        """Captured engine output, most recent lines only."""
        return "\n".join(self._output)

    def locate_engine(self) -> Path:
        """Find the engine binary.

        Returns:
            Path: First executable candidate

        Raises:
            StartError: If no candidate exists
        """
        candidates = []
        if self.settings.engine_path:
            candidates.append(Path(self.settings.engine_path))
        candidates += [PACKAGE_DIR / "bin" / ENGINE_NAME, Path.cwd() / "bin" / ENGINE_NAME]

        for candidate in candidates:
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return candidate

        searched = ", ".join(str(c) for c in candidates)
        raise StartError(f"xray binary not found (searched: {searched})")

    def _write_config(self, config: TransportConfig) -> Path:
        """Create the config owner-only and never through a pre-existing entry."""
        path = self.settings.config_path
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Removes a stale file or a planted symlink, never its target
            path.unlink(missing_ok=True)
            fd = os.open(path, CONFIG_FLAGS, 0o600)  # holds the credential
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(config.to_json())
        except OSError as e:
            raise StartError(f"Could not write xray config: {e}") from e
        return path

    def _remove_config(self) -> None:
        try:
            self.settings.config_path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove {self.settings.config_path}: {e}")

    async def _pump(self, stream: asyncio.StreamReader, tag: str) -> None:
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                # The reader drops the oversized line; keep draining the pipe
                logger.warning(f"[xray {tag}] output line over {OUTPUT_LINE_LIMIT} bytes dropped")
                continue
            if not line:
                break
            text = line.decode(errors="ignore").rstrip()
            self._output.append(text)
            logger.debug(f"[xray {tag}] {text}")
            if tag == "stdout" and self.readiness(text):
                self._ready.set()

    async def start(self, config: TransportConfig) -> EngineHandle:
        """Launch the engine and wait until it is ready.

        Args:
            config: Engine configuration to write and launch with

        Returns:
            EngineHandle: Handle of the running engine

        Raises:
            StartError: If the binary is missing, cannot be spawned or exits
                with a non-zero status before becoming ready
            CrashError: If the engine exits cleanly before becoming ready
        """
        engine = self.locate_engine()
        config_path = self._write_config(config)

        self._output.clear()
        self._ready = asyncio.Event()
        self._state = ProcessState.STARTING

        try:
            self._process = await asyncio.create_subprocess_exec(
                str(engine),
                "run",
                "-config",
                str(config_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=OUTPUT_LINE_LIMIT,
            )
        except OSError as e:
            self._state = ProcessState.ERROR
            self._remove_config()
            raise StartError(f"xray spawn error: {e}") from e

        logger.info(f"Spawned {engine} (pid {self._process.pid})")
        self._pumps = [
            asyncio.create_task(self._pump(self._process.stdout, "stdout")),
            asyncio.create_task(self._pump(self._process.stderr, "stderr")),
        ]
        self._exit_task = asyncio.create_task(self._process.wait())
        ready_task = asyncio.create_task(self._ready.wait())

        try:
            done, _ = await asyncio.wait(
                {ready_task, self._exit_task},
                timeout=self.settings.ready_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready_task.cancel()

        if self._exit_task in done:
            returncode = self._exit_task.result()
            await asyncio.wait(self._pumps, timeout=DRAIN_TIMEOUT)
            error = self._early_exit_error(returncode)
            logger.error(f"xray exited during startup (code {returncode}): {error}")
            self._state = ProcessState.ERROR
            await self._release()
            raise error

        if not done:
            logger.warning(
                f"xray printed no readiness marker within {self.settings.ready_timeout}s; assuming it is up"
            )

        self._state = ProcessState.RUNNING
        self._handle = EngineHandle(
            pid=self._process.pid,
            engine_path=engine,
            config_path=config_path,
            started_at=time.monotonic(),
        )
        self._exit_task.add_done_callback(self._on_exit)
        logger.info(f"xray running (pid {self._handle.pid})")
        return self._handle

    def _early_exit_error(self, returncode: int) -> StartError | CrashError:
        if returncode != 0:
            return StartError(f"xray error: {self.diagnostics(self.output)}")
        return CrashError("xray exited before it became ready")

    def _on_exit(self, task: asyncio.Task) -> None:
        # Exits of a released process or an intentional stop are not crashes
        if task is not self._exit_task or task.cancelled() or self._state is not ProcessState.RUNNING:
            return

        self._state = ProcessState.ERROR
        error = CrashError(f"xray exited unexpectedly (code {task.result()})")
        logger.error(str(error))
        if self.on_crash:
            self.on_crash(error)

    async def _release(self) -> None:
        for pump in self._pumps:
            pump.cancel()
        await asyncio.gather(*self._pumps, return_exceptions=True)
        self._pumps = []

        if self._exit_task and not self._exit_task.done():
            self._exit_task.cancel()
        self._exit_task = None
        self._process = None
        self._handle = None
        self._remove_config()

    async def stop(self, handle: EngineHandle | None = None) -> None:
        """Terminate the engine; a no-op when nothing is running.

        Args:
            handle: Handle returned by ``start``; a stale handle is ignored
        """
        if handle is not None and handle is not self._handle:
            logger.debug(f"Ignoring stop for stale engine handle (pid {handle.pid})")
            return

        process = self._process
        if process is None:
            return

        # Mark the exit as intentional before the process goes away
        self._state = ProcessState.STOPPED

        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.settings.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("xray ignored SIGTERM, killing it")
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        await self._release()
        logger.info("xray stopped")
