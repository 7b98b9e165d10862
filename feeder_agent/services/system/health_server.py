"""
Local Health / Diagnostic Server

Small aiohttp app bound to the agent host for local tooling:

    GET  /health            liveness, uptime, device and timer counts
    GET  /status            per-device status, counters, recent log events
    POST /test-connection   one-off Modbus read {ip, port, unitId, startIndex, registerCount}
"""

import itertools
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from aiohttp import web

from ...common.config import load_test_request
from ...common.exceptions import ConfigError
from ...common.logging_setup import get_service_logger
from ..transport.wire import outcome_to_wire

if TYPE_CHECKING:
    from ...session import AgentSession

logger = get_service_logger("system.health")


class HealthServer:
    """HTTP health endpoint for the agent session"""

    def __init__(self, session: "AgentSession", host: str = "127.0.0.1", port: int = 3002):
        self.session = session
        self.host = host
        self.port = port

        self._runner: web.AppRunner | None = None
        self._local_test_ids = itertools.count(1)

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)
        app.router.add_post("/test-connection", self._test_connection_handler)
        return app

    async def start(self) -> None:
        """Start the health check HTTP server"""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        logger.info(f"Health server started on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the health check HTTP server"""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        session = self.session
        return web.json_response({
            "status": "healthy" if session.transport.connected else "degraded",
            "service": "feeder-agent",
            "version": session.config.version,
            "agent": session.agent_name,
            "uptime": session.uptime_seconds,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "devices": len(session.registry),
            "timers": session.scheduler.timer_count,
            "transport": session.transport.name,
            "modbus_mode": session.config.modbus_mode.value,
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        session = self.session
        manager = session.device_manager
        return web.json_response({
            "devices": {
                device_id: status.to_dict()
                for device_id, status in manager.get_all_status().items()
            },
            "counts": manager.get_device_count(),
            "counters": manager.get_counters(),
            "reads_issued": session.scheduler.reads_issued,
            "readings_reported": session.readings_reported,
            "reporting_failures": session.reporting_failures,
            "tests_in_flight": sorted(session.tests.in_flight),
            "log": [
                {
                    "message": event.message,
                    "level": event.level.value,
                    "timestamp": event.timestamp.isoformat(),
                }
                for event in manager.recent_log()
            ],
        })

    async def _test_connection_handler(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"success": False, "error": "Invalid JSON body"}, status=400)

        if not isinstance(body, dict) or not body.get("ip") or not body.get("port"):
            return web.json_response(
                {"success": False, "error": "ip and port are required"}, status=400
            )

        body = {**body, "testId": f"local-{next(self._local_test_ids)}"}
        try:
            test = load_test_request(body, self.session.config.default_timeout_ms)
        except ConfigError as e:
            return web.json_response({"success": False, "error": e.message}, status=400)

        logger.info(f"Local connection test: {test.ip}:{test.port}")
        outcome = await self.session.executor.test(test)
        return web.json_response(outcome_to_wire(outcome))
