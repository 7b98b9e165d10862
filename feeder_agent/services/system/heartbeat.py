"""
Heartbeat Module

Sends a keep-alive to the backend every heartbeat_interval_s seconds
through the active transport. Failures are counted and logged, never
fatal.
"""

import asyncio

from ...common.logging_setup import get_service_logger
from ..transport.base import BackendTransport

logger = get_service_logger("system.heartbeat")


class HeartbeatSender:
    """Sends heartbeat signals to the backend"""

    def __init__(self, transport: BackendTransport, interval_seconds: float = 30):
        self.transport = transport
        self.interval_seconds = interval_seconds

        self._running = False
        self._task: asyncio.Task | None = None

        self._consecutive_failures = 0
        self._max_consecutive_failures = 5

    @property
    def running(self) -> bool:
        return self._running

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    async def start(self) -> None:
        """Start sending heartbeats (no-op if already running)"""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Heartbeat sender started (interval: {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Stop sending heartbeats"""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Heartbeat sender stopped")

    async def _heartbeat_loop(self) -> None:
        """Main heartbeat loop"""
        while self._running:
            await self.send_once()
            await asyncio.sleep(self.interval_seconds)

    async def send_once(self) -> bool:
        """Send a single heartbeat, returning whether it was accepted"""
        try:
            await self.transport.send_heartbeat()
        except Exception as e:
            self._consecutive_failures += 1
            logger.error(
                f"Heartbeat failed ({self._consecutive_failures}): {e}",
                extra={"consecutive_failures": self._consecutive_failures},
            )
            if self._consecutive_failures >= self._max_consecutive_failures:
                logger.critical(
                    f"Heartbeat failed {self._consecutive_failures} consecutive times"
                )
            return False

        self._consecutive_failures = 0
        logger.debug("Heartbeat sent")
        return True
