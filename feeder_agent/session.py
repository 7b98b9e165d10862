"""
Agent Session

Owns everything that lives for one agent run: the registry, the diff
engine, the poll scheduler, the connection test coordinator, the device
status board and the heartbeat. Transport events enter through
dispatch(); nothing else mutates the registry or the timers.

Event handling:
    Connected        operator log only
    Authenticated    start heartbeat; fetch registry and load it if no baseline
    RegistryChanged  diff against the baseline and apply start/stop instructions
    TestRequested    run the test concurrently, deduplicated by test id
    Disconnected     drop every timer and the baseline (next snapshot reloads)
"""

import asyncio
import time
from typing import Any

from .common.clock import Clock
from .common.config import AgentConfig
from .common.events import (
    Authenticated,
    Connected,
    Disconnected,
    LogLevel,
    ReadingRecord,
    RegistryChanged,
    TestRequested,
    TransportEvent,
)
from .common.exceptions import AgentError, ReportingError
from .common.logging_setup import get_service_logger
from .services.config import (
    ChangeKind,
    ConfigDiff,
    ConfigDiffEngine,
    RegistryState,
    RegistryValidator,
)
from .services.config.diff import Action
from .services.device import (
    ConnectionTestCoordinator,
    DeviceManager,
    ModbusReader,
    PollScheduler,
    ReadExecutor,
)
from .services.system.heartbeat import HeartbeatSender
from .services.transport import wire
from .services.transport.base import BackendTransport

logger = get_service_logger("session")


class AgentSession:
    """One authenticated agent run"""

    def __init__(
        self,
        config: AgentConfig,
        transport: BackendTransport,
        reader: ModbusReader | None = None,
        clock: Clock | None = None,
        link_code: str | None = None,
    ):
        self.config = config
        self.transport = transport
        self.link_code = link_code

        self.device_manager = DeviceManager()
        self.registry = RegistryState()
        self.diff_engine = ConfigDiffEngine()
        self.validator = RegistryValidator(config.default_timeout_ms)

        self.executor = ReadExecutor(reader or ModbusReader(config.modbus_mode))
        self.scheduler = PollScheduler(
            self.executor,
            self.registry,
            on_reading=self._report_reading,
            device_manager=self.device_manager,
            clock=clock,
        )
        self.tests = ConnectionTestCoordinator(
            self.executor,
            report=transport.report_test_outcome,
            device_manager=self.device_manager,
        )
        self.heartbeat = HeartbeatSender(transport, config.heartbeat_interval_s)

        self.started_at = time.monotonic()
        self.readings_reported = 0
        self.reporting_failures = 0

        self._test_tasks: set[asyncio.Task] = set()
        self._shutdown_event = asyncio.Event()
        self._stopped = False

    @property
    def uptime_seconds(self) -> float:
        return round(time.monotonic() - self.started_at, 1)

    @property
    def agent_name(self) -> str | None:
        agent = self.transport.agent
        if agent is None:
            return None
        return agent.name or agent.id

    # --- Event dispatch ---

    async def dispatch(self, event: TransportEvent) -> None:
        """Single entry point for transport events"""
        if isinstance(event, Connected):
            self.device_manager.log("Connected to backend", LogLevel.SUCCESS)

        elif isinstance(event, Authenticated):
            await self._on_authenticated(event)

        elif isinstance(event, RegistryChanged):
            self.apply_snapshot(event.records)

        elif isinstance(event, TestRequested):
            task = asyncio.create_task(self.tests.handle_test_request(event.request))
            self._test_tasks.add(task)
            task.add_done_callback(self._test_tasks.discard)

        elif isinstance(event, Disconnected):
            self._on_disconnected(event)

        else:
            logger.warning(f"Unknown transport event: {event!r}")

    async def _on_authenticated(self, event: Authenticated) -> None:
        name = event.agent.name or event.agent.id
        self.device_manager.log(f"Authenticated as {name}", LogLevel.SUCCESS)
        for workspace in event.workspaces:
            self.device_manager.log(f"Linked workspace: {wire.workspace_name(workspace)}")
        if event.warning:
            self.device_manager.log(event.warning, LogLevel.WARNING)

        await self.heartbeat.start()

        if self.link_code:
            await self._link_workspace(self.link_code)
            self.link_code = None

        if self.diff_engine.primed:
            return

        try:
            records = await self.transport.fetch_registry_config()
        except AgentError as e:
            logger.error(f"Could not fetch registry: {e.message}")
            self.device_manager.log(f"Could not fetch registry: {e.message}", LogLevel.ERROR)
            return

        # A snapshot may have been applied while the fetch was suspended
        if not self.diff_engine.primed:
            self.load_initial(records)

    async def _link_workspace(self, code: str) -> None:
        try:
            result = await self.transport.link_workspace(code)
        except AgentError as e:
            logger.error(f"Workspace link with code {code} failed: {e.message}")
            self.device_manager.log(f"Workspace link failed: {e.message}", LogLevel.ERROR)
            return
        if result is None:
            self.device_manager.log(f"Link code {code} sent")
        elif wire.is_success(result):
            self.device_manager.log(f"Linked with code {code}", LogLevel.SUCCESS)
        else:
            message = wire.error_message(result, "rejected")
            self.device_manager.log(f"Workspace link failed: {message}", LogLevel.ERROR)

    def _on_disconnected(self, event: Disconnected) -> None:
        self.device_manager.log(f"Disconnected: {event.reason}", LogLevel.WARNING)
        self.scheduler.stop_all()
        self.diff_engine.reset()
        self.registry.clear()

    # --- Registry ---

    def load_initial(self, records: list[dict[str, Any]]) -> ConfigDiff:
        """Seed the baseline and start every active device"""
        registers, _ = self.validator.validate(records)

        self.registry.replace(registers)
        self.device_manager.sync_devices(registers)
        result = self.diff_engine.seed(registers)

        for register in registers:
            if register.active:
                self.scheduler.start_device(register.id)
        self.scheduler.start_ticker()

        active = len(self.registry.active_ids())
        logger.info(f"Registry loaded: {len(registers)} registers, {active} active")
        self.device_manager.log(
            f"{len(registers)} registers loaded ({active} active)", LogLevel.SUCCESS
        )
        return result

    def apply_snapshot(self, records: list[dict[str, Any]]) -> ConfigDiff:
        """
        Classify a registry snapshot and apply the resulting instructions.

        Without a baseline the snapshot is loaded as the initial registry.
        """
        if not self.diff_engine.primed:
            return self.load_initial(records)

        registers, _ = self.validator.validate(records)
        result = self.diff_engine.diff(registers)

        if result.kind == ChangeKind.NONE:
            return result

        self.registry.replace(registers)
        self.device_manager.sync_devices(registers)

        if result.kind == ChangeKind.COSMETIC:
            logger.info(
                f"Registry updated in place ({len(result.instructions)} registers changed)"
            )
            self.device_manager.log("Configuration updated (minor change)")
            return result

        for device_id in result.device_ids(Action.STOP):
            self.scheduler.stop_device(device_id)
        for device_id in result.device_ids(Action.START):
            self.scheduler.start_device(device_id)
        self.scheduler.start_ticker()

        if result.also:
            logger.warning(
                f"Registry change '{result.reason}' also included: {', '.join(result.also)}"
            )
        logger.info(
            f"Registry change: {result.reason}",
            extra={
                "started": result.device_ids(Action.START),
                "stopped": result.device_ids(Action.STOP),
            },
        )
        self.device_manager.log(f"Configuration changed: {result.reason}", LogLevel.WARNING)
        return result

    # --- Upstream reports ---

    async def _report_reading(self, record: ReadingRecord) -> None:
        try:
            await self.transport.report_readings([record])
            self.readings_reported += 1
        except ReportingError as e:
            self.reporting_failures += 1
            logger.warning(
                f"Reading of {record.device_id} not delivered: {e.message}",
                extra={"device_id": record.device_id},
            )
        except AgentError as e:
            self.reporting_failures += 1
            logger.error(f"Reading of {record.device_id} not delivered: {e.message}")

    # --- Lifecycle ---

    async def run(self) -> None:
        """
        Start the transport and consume its events until shutdown.

        Raises:
            AuthenticationError: the backend rejected the secret
        """
        await self.transport.start()

        events = self.transport.events()
        consumer = asyncio.create_task(self._consume(events))
        stopper = asyncio.create_task(self._shutdown_event.wait())
        try:
            await asyncio.wait({consumer, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (consumer, stopper):
                if not task.done():
                    task.cancel()
            await asyncio.gather(consumer, stopper, return_exceptions=True)
            await self.shutdown()

    async def _consume(self, events) -> None:
        async for event in events:
            try:
                await self.dispatch(event)
            except Exception as e:
                logger.error(f"Error handling {type(event).__name__}: {e}")

    def request_shutdown(self) -> None:
        """Signal-safe shutdown trigger"""
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Cancel every timer and pending test, then close the transport"""
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down agent session")

        self.scheduler.stop_all()
        await self.heartbeat.stop()

        for task in list(self._test_tasks):
            task.cancel()
        if self._test_tasks:
            await asyncio.gather(*self._test_tasks, return_exceptions=True)

        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"Error closing transport: {e}")

        logger.info("Agent session stopped")
