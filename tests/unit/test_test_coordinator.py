# tests/unit/test_test_coordinator.py
"""
Unit tests for ConnectionTestCoordinator.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from feeder_agent.common.config import ConnectionTestRequest
from feeder_agent.common.events import LogLevel
from feeder_agent.common.exceptions import ReportingError
from feeder_agent.services.device import ConnectionTestCoordinator, DeviceManager, ReadExecutor


def request(test_id: str, ip: str = "10.0.0.9") -> ConnectionTestRequest:
    return ConnectionTestRequest(test_id=test_id, ip=ip, port=502, start_index=0, register_count=2)


@pytest.fixture
def report():
    return AsyncMock()


@pytest.fixture
def device_manager():
    return DeviceManager()


@pytest.fixture
def coordinator(fake_reader, report, device_manager):
    return ConnectionTestCoordinator(ReadExecutor(fake_reader), report, device_manager)


class TestDeduplication:
    """Test duplicate test id suppression."""

    @pytest.mark.asyncio
    async def test_duplicate_runs_once(self, coordinator, fake_reader, report):
        """Test a redelivered id runs and reports exactly once."""
        fake_reader.hold("10.0.0.9")

        first = asyncio.create_task(coordinator.handle_test_request(request("t1")))
        await asyncio.sleep(0)
        second = await coordinator.handle_test_request(request("t1"))

        assert second is None
        assert coordinator.is_in_flight("t1")

        fake_reader.release("10.0.0.9")
        outcome = await first

        assert outcome.success is True
        assert len(fake_reader.calls) == 1
        report.assert_awaited_once()
        assert report.await_args.args[0] == "t1"
        assert not coordinator.is_in_flight("t1")

    @pytest.mark.asyncio
    async def test_id_reusable_after_completion(self, coordinator, fake_reader, report):
        """Test the same id runs again once the first run finished."""
        await coordinator.handle_test_request(request("t1"))
        await coordinator.handle_test_request(request("t1"))

        assert len(fake_reader.calls) == 2
        assert report.await_count == 2

    @pytest.mark.asyncio
    async def test_distinct_ids_concurrent(self, coordinator, fake_reader, report):
        """Test different ids do not wait for each other."""
        fake_reader.hold("10.0.0.1")

        slow = asyncio.create_task(coordinator.handle_test_request(request("a", ip="10.0.0.1")))
        await asyncio.sleep(0)
        fast = await coordinator.handle_test_request(request("b", ip="10.0.0.2"))

        assert fast.success is True
        assert not slow.done()
        assert coordinator.in_flight == frozenset({"a"})

        fake_reader.release("10.0.0.1")
        await slow
        assert report.await_count == 2


class TestFailureHandling:
    """Test the in-flight marker never leaks."""

    @pytest.mark.asyncio
    async def test_failed_read_reported(self, coordinator, fake_reader, report):
        """Test a failed test is reported with its error."""
        fake_reader.failing.add("10.0.0.9")

        outcome = await coordinator.handle_test_request(request("t1"))

        assert outcome.success is False
        reported = report.await_args.args[1]
        assert reported.success is False
        assert reported.error

    @pytest.mark.asyncio
    async def test_report_failure_clears_marker(self, fake_reader, device_manager):
        """Test a failing upstream report is logged and the id released."""
        report = AsyncMock(side_effect=ReportingError("503", "report_test_outcome", 503))
        coordinator = ConnectionTestCoordinator(ReadExecutor(fake_reader), report, device_manager)

        outcome = await coordinator.handle_test_request(request("t1"))

        assert outcome.success is True
        assert not coordinator.is_in_flight("t1")
        assert device_manager.recent_log()[-1].level == LogLevel.WARNING

    @pytest.mark.asyncio
    async def test_executor_exception_clears_marker(self, report, device_manager):
        """Test an executor crash still produces a failed report."""
        executor = MagicMock()
        executor.test = AsyncMock(side_effect=RuntimeError("boom"))
        coordinator = ConnectionTestCoordinator(executor, report, device_manager)

        outcome = await coordinator.handle_test_request(request("t1"))

        assert outcome.success is False
        assert outcome.error == "boom"
        report.assert_awaited_once()
        assert not coordinator.is_in_flight("t1")
