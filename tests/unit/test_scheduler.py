# tests/unit/test_scheduler.py
"""
Unit tests for PollScheduler on a virtual clock.

Covers cadence, live interval pickup, stop semantics, failure handling
and the shared countdown ticker.
"""

import pytest

from feeder_agent.common.config import DeviceRegister
from feeder_agent.common.events import DeviceState, DeviceStateChanged
from feeder_agent.services.config import RegistryState
from feeder_agent.services.device import DeviceManager, PollScheduler, ReadExecutor


def reg(device_id: str, interval: float = 5, active: bool = True, **kwargs) -> DeviceRegister:
    return DeviceRegister(
        id=device_id,
        name=f"Feeder {device_id}",
        ip=kwargs.pop("ip", f"10.0.0.{device_id}"),
        poll_interval_seconds=interval,
        active=active,
        register_count=2,
        **kwargs,
    )


@pytest.fixture
def registry():
    return RegistryState()


@pytest.fixture
def readings():
    return []


@pytest.fixture
def device_manager():
    return DeviceManager()


@pytest.fixture
def scheduler(fake_reader, registry, readings, device_manager, clock):
    async def on_reading(record):
        readings.append(record)

    return PollScheduler(
        ReadExecutor(fake_reader),
        registry,
        on_reading=on_reading,
        device_manager=device_manager,
        clock=clock,
    )


def load(registry, device_manager, *registers):
    registry.replace(list(registers))
    device_manager.sync_devices(list(registers))


# ================================================================
# CADENCE
# ================================================================
class TestCadence:
    """Test read cadence."""

    @pytest.mark.asyncio
    async def test_immediate_read_then_interval(self, scheduler, registry, device_manager, fake_reader, clock):
        """Test one immediate read plus one per elapsed interval."""
        load(registry, device_manager, reg("1", interval=5))

        assert scheduler.start_device("1") is True
        await clock.advance(12)

        assert fake_reader.reads_for("10.0.0.1") == 3
        assert scheduler.reads_issued == 3

    @pytest.mark.asyncio
    async def test_results_forwarded(self, scheduler, registry, device_manager, readings, clock):
        """Test each read produces a reading record."""
        load(registry, device_manager, reg("1", interval=5))

        scheduler.start_device("1")
        await clock.advance(5)

        assert len(readings) == 2
        assert all(r.success and r.device_id == "1" for r in readings)
        assert readings[0].values == [0, 1]

    @pytest.mark.asyncio
    async def test_devices_independent(self, scheduler, registry, device_manager, fake_reader, clock):
        """Test a blocked device does not delay another device."""
        load(registry, device_manager, reg("1", interval=5), reg("2", interval=2))
        fake_reader.hold("10.0.0.1")

        scheduler.start_device("1")
        scheduler.start_device("2")
        await clock.advance(4)

        # Device 1 is stuck in its first read; device 2 keeps its cadence
        assert fake_reader.reads_for("10.0.0.2") == 3
        assert fake_reader.reads_for("10.0.0.1") == 1
        fake_reader.release("10.0.0.1")
        await scheduler.wait_idle()

    @pytest.mark.asyncio
    async def test_overlapping_firing_skipped(self, scheduler, registry, device_manager, fake_reader, clock):
        """Test a firing is skipped while the previous read is in flight."""
        load(registry, device_manager, reg("1", interval=1))
        fake_reader.hold("10.0.0.1")

        scheduler.start_device("1")
        await clock.advance(3)

        assert fake_reader.reads_for("10.0.0.1") == 1
        fake_reader.release("10.0.0.1")
        await scheduler.wait_idle()

        await clock.advance(1)
        assert fake_reader.reads_for("10.0.0.1") == 2


# ================================================================
# TIMER LIFECYCLE
# ================================================================
class TestTimerLifecycle:
    """Test starting and stopping device timers."""

    @pytest.mark.asyncio
    async def test_start_rejects_inactive_and_unknown(self, scheduler, registry, device_manager):
        """Test only known active devices get a timer."""
        load(registry, device_manager, reg("1", active=False))

        assert scheduler.start_device("1") is False
        assert scheduler.start_device("missing") is False
        assert scheduler.timer_count == 0

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, scheduler, registry, device_manager, clock):
        """Test starting a scheduled device creates no second timer."""
        load(registry, device_manager, reg("1"))

        assert scheduler.start_device("1") is True
        assert scheduler.start_device("1") is False
        assert scheduler.timer_count == 1
        assert scheduler.timers_created == 1
        await clock.settle()

    @pytest.mark.asyncio
    async def test_stop_prevents_future_reads(self, scheduler, registry, device_manager, fake_reader, clock):
        """Test no read is issued after stop and the state is inactive."""
        load(registry, device_manager, reg("1", interval=5))
        scheduler.start_device("1")
        await clock.advance(1)

        assert scheduler.stop_device("1") is True
        await clock.advance(30)

        assert fake_reader.reads_for("10.0.0.1") == 1
        status = device_manager.get_status("1")
        assert status.state == DeviceState.INACTIVE
        assert status.remaining_seconds is None
        assert scheduler.remaining_seconds("1") is None

    @pytest.mark.asyncio
    async def test_stop_unknown(self, scheduler):
        """Test stopping an unscheduled device is a no-op."""
        assert scheduler.stop_device("nope") is False

    @pytest.mark.asyncio
    async def test_stop_all(self, scheduler, registry, device_manager, clock):
        """Test stop_all clears every timer and the ticker."""
        load(registry, device_manager, reg("1"), reg("2"))
        scheduler.start_device("1")
        scheduler.start_device("2")
        scheduler.start_ticker()
        await clock.settle()

        scheduler.stop_all()

        assert scheduler.timer_count == 0
        assert not scheduler.ticker_running
        assert clock.pending == 0

    @pytest.mark.asyncio
    async def test_in_flight_result_dropped_after_removal(
        self, scheduler, registry, device_manager, fake_reader, readings, clock
    ):
        """Test a read finishing after removal is not applied."""
        load(registry, device_manager, reg("1"))
        fake_reader.hold("10.0.0.1")
        scheduler.start_device("1")
        await clock.settle()

        scheduler.stop_device("1")
        registry.replace([])
        fake_reader.release("10.0.0.1")
        await scheduler.wait_idle()

        assert readings == []

    @pytest.mark.asyncio
    async def test_restart_reads_immediately_during_stale_read(
        self, scheduler, registry, device_manager, fake_reader, readings, clock
    ):
        """Test a restarted device reads at once while its old read is still held."""
        load(registry, device_manager, reg("1", interval=60))
        fake_reader.hold("10.0.0.1")
        scheduler.start_device("1")
        await clock.settle()

        scheduler.stop_device("1")
        assert scheduler.start_device("1") is True
        await clock.settle()

        assert fake_reader.reads_for("10.0.0.1") == 2
        fake_reader.release("10.0.0.1")
        await scheduler.wait_idle()
        await clock.advance(59)

        assert len(readings) == 1
        assert readings[0].device_id == "1"
        assert readings[0].success
        assert fake_reader.reads_for("10.0.0.1") == 2


# ================================================================
# LIVE CONFIGURATION
# ================================================================
class TestLiveConfiguration:
    """Test that firings consult the current descriptor."""

    @pytest.mark.asyncio
    async def test_interval_change_without_new_timer(self, scheduler, registry, device_manager, fake_reader, clock):
        """Test 60s -> 10s applies at the next firing on the same timer."""
        load(registry, device_manager, reg("1", interval=60))
        scheduler.start_device("1")
        timer = scheduler.timer("1")
        created = scheduler.timers_created

        registry.replace([reg("1", interval=10)])
        await clock.advance(60)
        assert fake_reader.reads_for("10.0.0.1") == 2

        await clock.advance(10)
        assert fake_reader.reads_for("10.0.0.1") == 3
        await clock.advance(10)
        assert fake_reader.reads_for("10.0.0.1") == 4

        assert scheduler.timer("1") is timer
        assert scheduler.timers_created - created == 0
        assert timer.interval_seconds == 10

    @pytest.mark.asyncio
    async def test_read_uses_current_address(self, scheduler, registry, device_manager, fake_reader, clock):
        """Test an edited ip is used by the next firing."""
        load(registry, device_manager, reg("1", interval=5))
        scheduler.start_device("1")
        registry.replace([reg("1", interval=5, ip="10.9.9.9")])

        await clock.advance(5)

        assert fake_reader.calls[-1]["ip"] == "10.9.9.9"


# ================================================================
# FAILURES
# ================================================================
class TestFailures:
    """Test failed reads."""

    @pytest.mark.asyncio
    async def test_failure_keeps_timer(self, scheduler, registry, device_manager, fake_reader, readings, clock):
        """Test a failing device keeps its natural cadence."""
        load(registry, device_manager, reg("1", interval=5))
        fake_reader.failing.add("10.0.0.1")

        scheduler.start_device("1")
        await clock.advance(10)

        assert fake_reader.reads_for("10.0.0.1") == 3
        assert scheduler.timer_count == 1
        assert len(readings) == 3
        assert not any(r.success for r in readings)
        status = device_manager.get_status("1")
        assert status.state == DeviceState.ERROR
        assert status.failure_count == 3

    @pytest.mark.asyncio
    async def test_sink_failure_does_not_stop_timer(self, fake_reader, registry, device_manager, clock):
        """Test an exception in the reading sink is contained."""

        async def broken_sink(record):
            raise RuntimeError("sink down")

        scheduler = PollScheduler(
            ReadExecutor(fake_reader), registry, broken_sink, device_manager, clock
        )
        load(registry, device_manager, reg("1", interval=5))

        scheduler.start_device("1")
        await clock.advance(5)

        assert fake_reader.reads_for("10.0.0.1") == 2
        assert scheduler.timer_count == 1


# ================================================================
# COUNTDOWN TICKER
# ================================================================
class TestTicker:
    """Test the shared countdown ticker."""

    @pytest.mark.asyncio
    async def test_ticker_idempotent(self, scheduler, clock):
        """Test starting the ticker twice arms one timer."""
        scheduler.start_ticker()
        scheduler.start_ticker()

        assert scheduler.ticker_running
        assert clock.pending == 1

    @pytest.mark.asyncio
    async def test_countdown_pushed_every_second(self, scheduler, registry, device_manager, clock):
        """Test remaining seconds decrease once per tick."""
        events = []
        device_manager.subscribe(
            lambda e: events.append(e) if isinstance(e, DeviceStateChanged) else None
        )
        load(registry, device_manager, reg("1", interval=5))
        scheduler.start_device("1")
        scheduler.start_ticker()
        await clock.settle()
        events.clear()

        await clock.advance(3)

        countdown = [e.remaining_seconds for e in events if e.device_id == "1"]
        assert countdown == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_ticker_skips_stopped_devices(self, scheduler, registry, device_manager, clock):
        """Test inactive devices receive no countdown updates."""
        events = []
        device_manager.subscribe(
            lambda e: events.append(e) if isinstance(e, DeviceStateChanged) else None
        )
        load(registry, device_manager, reg("1"), reg("2"))
        scheduler.start_device("1")
        scheduler.start_device("2")
        scheduler.start_ticker()
        await clock.settle()
        scheduler.stop_device("2")
        events.clear()

        await clock.advance(2)

        assert {e.device_id for e in events} == {"1"}
