"""
Per-Device Poll Scheduler

Owns one recurring timer per active device register.

Per-device lifecycle:
    inactive -> scheduled   start_device(): timer armed, immediate read
    scheduled -> reading    interval elapsed, read the *current* descriptor
    reading -> scheduled    outcome recorded and forwarded upstream
    any -> removed          stop_device(): no further firings

Timers are one-shot clock entries re-armed on every firing using the
live poll interval, so an interval edit takes effect when the armed
firing re-arms, with the same PollTimer.

A single shared ticker refreshes every active device's countdown once
per second for the presentation layer.

Usage:
    scheduler = PollScheduler(executor, registry, on_reading=report)
    scheduler.start_ticker()
    scheduler.start_device("reg-1")
    ...
    scheduler.stop_all()
"""

import asyncio
import math
from dataclasses import dataclass
from functools import partial
from typing import Awaitable, Callable

from ...common.clock import Clock, LoopClock, TimerHandle
from ...common.events import DeviceState, ReadingRecord
from ...common.logging_setup import get_service_logger, log_device_read
from ..config.registry import RegistryState
from .device_manager import DeviceManager
from .executor import ReadExecutor

logger = get_service_logger("device.scheduler")

ReadingSink = Callable[[ReadingRecord], Awaitable[None]]


@dataclass
class PollTimer:
    """Live schedule entry for one active device"""
    device_id: str
    interval_seconds: float
    next_fire_at: float
    handle: TimerHandle | None = None
    state: DeviceState = DeviceState.SCHEDULED

    def remaining(self, now: float) -> int:
        """Whole seconds until the next read"""
        return max(0, math.ceil(round(self.next_fire_at - now, 6)))


class PollScheduler:
    """
    Per-device poll scheduler.

    Attributes:
        timers_created: PollTimers created so far (re-arming is not creation)
        reads_issued: Reads handed to the executor so far
    """

    TICK_SECONDS = 1.0

    def __init__(
        self,
        executor: ReadExecutor,
        registry: RegistryState,
        on_reading: ReadingSink,
        device_manager: DeviceManager | None = None,
        clock: Clock | None = None,
    ):
        self.executor = executor
        self.registry = registry
        self.on_reading = on_reading
        self.device_manager = device_manager or DeviceManager()
        self.clock = clock or LoopClock()

        self._timers: dict[str, PollTimer] = {}
        self._in_flight: dict[str, tuple[PollTimer, asyncio.Task]] = {}
        self._reads: set[asyncio.Task] = set()
        self._ticker: TimerHandle | None = None

        self.timers_created = 0
        self.reads_issued = 0

    # --- Queries ---

    @property
    def timer_count(self) -> int:
        return len(self._timers)

    @property
    def ticker_running(self) -> bool:
        return self._ticker is not None

    def timer(self, device_id: str) -> PollTimer | None:
        return self._timers.get(device_id)

    def scheduled_ids(self) -> set[str]:
        return set(self._timers)

    def remaining_seconds(self, device_id: str) -> int | None:
        timer = self._timers.get(device_id)
        if timer is None:
            return None
        return timer.remaining(self.clock.now())

    # --- Timer lifecycle ---

    def start_device(self, device_id: str) -> bool:
        """
        Create the device's PollTimer and issue the immediate first read.

        Returns:
            True if a timer was created, False if the device is unknown,
            inactive or already scheduled
        """
        device = self.registry.get(device_id)
        if device is None or not device.active:
            logger.debug(f"Not scheduling {device_id}: unknown or inactive")
            return False
        if device_id in self._timers:
            return False

        timer = PollTimer(
            device_id=device_id,
            interval_seconds=device.poll_interval_seconds,
            next_fire_at=self.clock.now(),
        )
        self._timers[device_id] = timer
        self.timers_created += 1
        self._arm(timer)

        logger.info(
            f"Polling {device.name or device_id} every {device.poll_interval_seconds:g}s",
            extra={"device_id": device_id},
        )
        self._launch_read(timer)
        return True

    def stop_device(self, device_id: str) -> bool:
        """
        Cancel future firings and clear the countdown.

        A read already in progress is not aborted; its result is dropped.
        """
        timer = self._timers.pop(device_id, None)
        if timer is None:
            return False

        if timer.handle is not None:
            timer.handle.cancel()
            timer.handle = None

        self.device_manager.set_state(device_id, DeviceState.INACTIVE)
        logger.info(f"Stopped polling {device_id}", extra={"device_id": device_id})
        return True

    def stop_all(self) -> None:
        """Stop every device timer and the ticker"""
        for device_id in list(self._timers):
            self.stop_device(device_id)
        self.stop_ticker()

    def _arm(self, timer: PollTimer) -> None:
        """Schedule the next firing from the live interval"""
        device = self.registry.get(timer.device_id)
        if device is not None:
            timer.interval_seconds = device.poll_interval_seconds
        timer.next_fire_at = self.clock.now() + timer.interval_seconds
        timer.handle = self.clock.call_later(timer.interval_seconds, partial(self._fire, timer))

    def _fire(self, timer: PollTimer) -> None:
        if self._timers.get(timer.device_id) is not timer:
            return
        self._arm(timer)
        self._launch_read(timer)

    # --- Reads ---

    def _launch_read(self, timer: PollTimer) -> None:
        device_id = timer.device_id
        previous = self._in_flight.get(device_id)
        # A read left over from a stopped timer does not block the new one
        if previous is not None and previous[0] is timer and not previous[1].done():
            logger.warning(
                f"Skipping read of {device_id}: previous read still in progress",
                extra={"device_id": device_id},
            )
            return

        task = asyncio.create_task(self._read_device(timer))
        self._reads.add(task)
        self._in_flight[device_id] = (timer, task)
        task.add_done_callback(partial(self._read_done, device_id))

    def _read_done(self, device_id: str, task: asyncio.Task) -> None:
        self._reads.discard(task)
        entry = self._in_flight.get(device_id)
        if entry is not None and entry[1] is task:
            del self._in_flight[device_id]

    async def _read_device(self, timer: PollTimer) -> None:
        device_id = timer.device_id
        try:
            device = self.registry.get(device_id)
            if device is None or not device.active:
                return

            timer.state = DeviceState.READING
            self.device_manager.set_state(device_id, DeviceState.READING, timer.remaining(self.clock.now()))
            self.reads_issued += 1

            outcome = await self.executor.read(device)

            # State may have changed while the read was suspended
            if self._timers.get(device_id) is not timer or self.registry.get(device_id) is None:
                logger.debug(
                    f"Dropping result for {device_id}: no longer scheduled",
                    extra={"device_id": device_id},
                )
                return

            device = self.registry.get(device_id)
            log_device_read(
                logger,
                device.name or device_id,
                device.register_count,
                outcome.elapsed_ms,
                success=outcome.success,
                error=outcome.error,
            )
            self.device_manager.record_read(
                device_id,
                outcome.success,
                values=outcome.values,
                elapsed_ms=outcome.elapsed_ms,
                error=outcome.error,
            )

            timer.state = DeviceState.SCHEDULED if outcome.success else DeviceState.ERROR
            self.device_manager.set_state(device_id, timer.state, timer.remaining(self.clock.now()))

            record = ReadingRecord(
                device_id=device_id,
                success=outcome.success,
                elapsed_ms=outcome.elapsed_ms,
                values=outcome.values,
                error=outcome.error,
                error_kind=outcome.error_kind,
            )
            await self.on_reading(record)

        except Exception as e:
            logger.error(
                f"Poll of {device_id} failed: {e}",
                extra={"device_id": device_id},
            )

    async def wait_idle(self) -> None:
        """Wait for every in-flight read to finish"""
        pending = [t for t in self._reads if not t.done()]
        while pending:
            await asyncio.gather(*pending, return_exceptions=True)
            pending = [t for t in self._reads if not t.done()]

    # --- Countdown ticker ---

    def start_ticker(self) -> None:
        """Start the shared countdown ticker (no-op if running)"""
        if self._ticker is not None:
            return
        self._ticker = self.clock.call_later(self.TICK_SECONDS, self._tick)

    def stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def _tick(self) -> None:
        if self._ticker is None:
            return
        self._ticker = self.clock.call_later(self.TICK_SECONDS, self._tick)

        now = self.clock.now()
        for device_id, timer in list(self._timers.items()):
            self.device_manager.set_state(device_id, timer.state, timer.remaining(now))
