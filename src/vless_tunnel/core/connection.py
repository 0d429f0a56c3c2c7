"""Connection manager: the single entry point callers talk to.

The manager composes the descriptor parser, config builder, process
supervisor, host network integrator and stats collector into one state
machine::

    DISCONNECTED -> CONNECTING -> CONNECTED | ERROR
    CONNECTED | ERROR -> DISCONNECTED   (via disconnect)

At most one session exists per manager. ``connect`` and ``disconnect`` are
serialised by a lock, and ``connect`` tears down any existing session before
starting a new one. Boundary calls never raise: they return an
``OperationResult`` and leave details in the logs.

Example:
    manager = ConnectionManager(TunnelSettings())
    result = await manager.connect("vless://uuid@example.com:443?security=tls#Home")
    if not result.ok:
        print(result.error)
    print((await manager.stats()).to_dict())
    await manager.disconnect()
"""

import asyncio
from dataclasses import dataclass
from enum import Enum

from loguru import logger

from vless_tunnel.core.descriptor import ConnectionDescriptor, parse_descriptor
from vless_tunnel.core.exceptions import CrashError, ParseError, TunnelError
from vless_tunnel.core.lib.commands import CommandRunner
from vless_tunnel.core.lib.supervisor import EngineHandle, ProcessSupervisor
from vless_tunnel.core.lib.traffic_stats import StatsCollector, TrafficStats
from vless_tunnel.core.network import HostNetworkIntegrator, LocalEndpoints
from vless_tunnel.core.settings import TunnelSettings
from vless_tunnel.core.transport_config import build_config


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


@dataclass
class ConnectionSession:
    """Runtime state of one connection.

    Attributes:
        descriptor: Parsed key the session was started from
        handle: Running engine, written only from supervisor results
        active_network_service: Service whose proxy settings were changed
        established: True once the session reached CONNECTED
        last_error: Most recent failure seen while the session existed
    """

    descriptor: ConnectionDescriptor
    handle: EngineHandle | None = None
    active_network_service: str | None = None
    established: bool = False
    last_error: str | None = None


@dataclass(frozen=True)
class OperationResult:
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"ok": self.ok, "error": self.error}


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState
    error: str | None = None
    label: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {"state": self.state.value, "error": self.error}


class ConnectionManager:
    """Own one tunnel session and its lifecycle."""

    def __init__(
        self,
        settings: TunnelSettings | None = None,
        *,
        supervisor: ProcessSupervisor | None = None,
        integrator: HostNetworkIntegrator | None = None,
        collector: StatsCollector | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            settings: Port layout, paths and timeouts shared by all components
            supervisor: Engine supervisor; its crash callback is taken over
            integrator: Host proxy integrator
            collector: Traffic stats collector
            runner: Host command runner for the default integrator and collector
        """
        self.settings = settings or TunnelSettings()
        runner = runner or CommandRunner()
        self.supervisor = supervisor or ProcessSupervisor(self.settings)
        self.supervisor.on_crash = self._on_engine_crash
        self.integrator = integrator or HostNetworkIntegrator(self.settings, runner)
        self.collector = collector or StatsCollector(self.settings, runner)

        self._state = ConnectionState.DISCONNECTED
        self._error: str | None = None
        self._session: ConnectionSession | None = None
        self._lock = asyncio.Lock()
        self._crash_task: asyncio.Task | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> ConnectionSession | None:
        return self._session

    def _fail(self, message: str) -> OperationResult:
        self._state = ConnectionState.ERROR
        self._error = message
        return OperationResult(ok=False, error=message)

    async def connect(self, uri: str) -> OperationResult:
        """Connect using a shareable key, replacing any existing session."""
        async with self._lock:
            if self._session is not None:
                logger.info("Replacing the active session")
                await self._teardown()

            self._state = ConnectionState.CONNECTING
            self._error = None

            try:
                descriptor = parse_descriptor(uri)
            except ParseError as e:
                logger.warning(f"Rejected connection key: {e}")
                return self._fail(str(e))

            session = ConnectionSession(descriptor=descriptor)
            self._session = session
            logger.info(f"Connecting to {descriptor.label} ({descriptor.address})")

            try:
                config = build_config(descriptor, self.settings)
                session.handle = await self.supervisor.start(config)
                session.active_network_service = await self.integrator.enable(LocalEndpoints.from_settings(self.settings))
            except TunnelError as e:
                logger.error(f"Connection failed: {e}")
                session.last_error = str(e)
                await self._teardown()
                return self._fail(str(e))
            except Exception as e:
                logger.exception("Unexpected error while connecting")
                session.last_error = str(e) or e.__class__.__name__
                await self._teardown()
                return self._fail(str(e) or e.__class__.__name__)

            # The engine may have died while the host proxy was being applied
            if self._state is not ConnectionState.CONNECTING:
                await self._teardown()
                return OperationResult(ok=False, error=self._error)

            session.established = True
            self._state = ConnectionState.CONNECTED
            logger.info(f"Connected to {descriptor.label}")
            return OperationResult(ok=True)

    async def disconnect(self) -> OperationResult:
        """Tear down the session; safe to call in any state."""
        async with self._lock:
            await self._teardown()
            self._state = ConnectionState.DISCONNECTED
            self._error = None
        return OperationResult(ok=True)

    async def status(self) -> ConnectionStatus:
        session = self._session
        return ConnectionStatus(
            state=self._state,
            error=self._error,
            label=session.descriptor.label if session else None,
        )

    async def stats(self) -> TrafficStats:
        """Cumulative totals plus live session counters when connected."""
        session = self._session
        handle = session.handle if session and self._state is ConnectionState.CONNECTED else None
        return await self.collector.snapshot(handle)

    async def _teardown(self) -> None:
        """Fold stats, stop the engine and revert the host proxy, in that order."""
        session = self._session
        if session is None:
            await self.supervisor.stop()
            return

        if session.established and self._state is ConnectionState.CONNECTED:
            await self.collector.fold_into_cumulative(session.handle)

        try:
            await self.supervisor.stop(session.handle)
        except Exception:
            logger.exception("Error while stopping xray")

        service = session.active_network_service or self.integrator.applied_service
        if service is not None:
            try:
                await self.integrator.disable(service)
            except Exception:
                logger.exception("Error while reverting the system proxy")

        self._session = None

    def _on_engine_crash(self, error: CrashError) -> None:
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        was_connected = self._state is ConnectionState.CONNECTED
        self._state = ConnectionState.ERROR
        self._error = str(error)
        if self._session is not None:
            self._session.last_error = self._error
        if was_connected:
            self._crash_task = asyncio.get_running_loop().create_task(self._release_after_crash())

    async def _release_after_crash(self) -> None:
        async with self._lock:
            if self._state is ConnectionState.ERROR and self._session is not None:
                logger.info("Releasing the crashed session")
                await self._teardown()
