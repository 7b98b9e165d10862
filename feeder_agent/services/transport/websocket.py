"""
WebSocket Transport

Persistent connection to the backend with JSON envelopes
{"event": <name>, "data": <payload>}.

Outgoing:
    agent:authenticate    {"secret"}                  first frame on every connection
    registry:request      {}                          ask for a registry:snapshot
    readings:report       {"readings": [...]}
    modbus:test:response  {"testId", "result"}
    agent:ping            {"version"}
    agent:link            {"code"}

Incoming:
    agent:authenticated   {"success", "agent", "workspaces", "warning" | "error"}
    registry:snapshot     {"registers": [...]}        full registry
    registry:update       {"agentId", "registerId", "active"}
    modbus:test:request   {"testId", "ip", "port", ...}
    agent:linked          {"success", "workspace" | "error"}
    agent:pong

A dropped connection is retried with backoff and re-authenticated on
every reconnect.
"""

import asyncio
import json
from typing import Any

import aiohttp

from ...common.config import AgentConfig
from ...common.events import Authenticated, ReadingRecord, RegistryChanged, TestRequested
from ...common.exceptions import (
    AuthenticationError,
    ConfigError,
    ReportingError,
    TransportError,
)
from ...common.logging_setup import get_service_logger
from ..device.executor import ReadOutcome
from . import wire
from .base import BackendTransport

logger = get_service_logger("transport.websocket")

WS_PATH = "/ws/agent"


class WebSocketTransport(BackendTransport):
    """Push transport over a single WebSocket"""

    name = "websocket"

    RECONNECT_BACKOFF = [1, 2, 4, 8, 16]

    def __init__(self, config: AgentConfig, session: aiohttp.ClientSession | None = None):
        super().__init__(config)
        self._session = session
        self._owns_session = session is None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._snapshot: list[dict[str, Any]] | None = None
        self._pending_snapshot: asyncio.Future | None = None
        self._reconnect_attempt = 0
        self.warning: str | None = None

    @property
    def ws_url(self) -> str:
        base = self.config.backend_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        return f"{base}{WS_PATH}"

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    # --- Connection ---

    async def start(self) -> None:
        await self._connect()
        self._reader_task = asyncio.create_task(self._run())

    async def _connect(self) -> None:
        """
        Open the socket and authenticate.

        Raises:
            ConfigError: no secret configured
            AuthenticationError: secret rejected
            TransportError: backend unreachable or no answer
        """
        if not self.config.secret:
            raise ConfigError("Agent secret is not configured")

        try:
            self._ws = await self._get_session().ws_connect(self.ws_url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransportError(f"Cannot connect to {self.ws_url}: {e}") from e

        self._mark_connected()
        try:
            await self._send("agent:authenticate", {"secret": self.config.secret})
            data = await self._await_authenticated()
            if not wire.is_success(data):
                raise AuthenticationError(wire.error_message(data))
        except (AuthenticationError, TransportError) as e:
            await self._ws.close()
            self._mark_disconnected(e.message)
            raise

        self.agent = wire.parse_agent(data.get("agent") or data.get("agente"))
        self.workspaces = wire.parse_workspaces(data)
        self.warning = wire.warning_message(data)
        if self.warning:
            logger.warning(self.warning)

        logger.info(
            f"Authenticated as {self.agent.name or self.agent.id}",
            extra={"agent_id": self.agent.id, "workspaces": len(self.workspaces)},
        )
        self.emit(Authenticated(self.agent, list(self.workspaces), self.warning))

    async def _await_authenticated(self) -> dict[str, Any]:
        """Read frames until the authentication answer arrives"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.request_timeout_s
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise TransportError("No authentication answer from backend")
            try:
                msg = await self._ws.receive(timeout=remaining)
            except asyncio.TimeoutError as e:
                raise TransportError("No authentication answer from backend") from e

            if msg.type != aiohttp.WSMsgType.TEXT:
                raise TransportError(f"Connection closed during authentication ({msg.type.name})")

            envelope = self._decode(msg.data)
            if envelope is None:
                continue
            if envelope.get("event") == "agent:authenticated":
                return envelope.get("data") or {}
            # Anything sent before the handshake completes is handled normally
            self._handle_message(envelope)

    async def _run(self) -> None:
        """Read frames; reconnect with backoff when the socket drops"""
        while not self._closed:
            reason = "connection closed"
            try:
                await self._receive_loop()
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                reason = f"{type(e).__name__}: {e}"

            if self._closed:
                break
            self._fail_pending_snapshot(reason)
            self._mark_disconnected(reason)
            await self._reconnect()

    async def _receive_loop(self) -> None:
        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                envelope = self._decode(msg.data)
                if envelope is not None:
                    self._handle_message(envelope)
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break

    async def _reconnect(self) -> None:
        while not self._closed:
            delay = self.RECONNECT_BACKOFF[
                min(self._reconnect_attempt, len(self.RECONNECT_BACKOFF) - 1)
            ]
            self._reconnect_attempt += 1
            logger.info(f"Reconnecting in {delay}s (attempt {self._reconnect_attempt})")
            await asyncio.sleep(delay)

            try:
                await self._connect()
                self._reconnect_attempt = 0
                return
            except AuthenticationError as e:
                logger.error(f"Reconnect rejected: {e.message}")
            except TransportError as e:
                logger.warning(f"Reconnect failed: {e.message}")

    @staticmethod
    def _decode(raw: str) -> dict[str, Any] | None:
        try:
            envelope = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding non-JSON frame: {raw[:80]!r}")
            return None
        if not isinstance(envelope, dict):
            return None
        return envelope

    # --- Incoming events ---

    def _handle_message(self, envelope: dict[str, Any]) -> None:
        event = envelope.get("event")
        data = envelope.get("data") or {}

        if event == "registry:snapshot":
            records = wire.registry_records(data)
            self._snapshot = records
            if self._pending_snapshot is not None and not self._pending_snapshot.done():
                self._pending_snapshot.set_result(records)
            else:
                self.emit(RegistryChanged(list(records)))

        elif event == "registry:update":
            self._apply_update(data)

        elif event == "modbus:test:request":
            for request in wire.parse_test_requests([data], self.config.default_timeout_ms):
                self.emit(TestRequested(request))

        elif event == "agent:linked":
            if wire.is_success(data) and data.get("workspace"):
                self.workspaces.append(data["workspace"])
                logger.info(f"Linked to workspace {wire.workspace_name(data['workspace'])}")
            else:
                logger.error(f"Workspace link failed: {wire.error_message(data)}")

        elif event == "agent:pong":
            logger.debug("Pong")

        else:
            logger.debug(f"Ignoring event {event!r}")

    def _apply_update(self, data: dict[str, Any]) -> None:
        """Merge a single-register toggle into the last snapshot"""
        agent_id, register_id, active = wire.registry_toggle(data)
        if agent_id and self.agent is not None and agent_id != self.agent.id:
            return
        if register_id is None or active is None:
            logger.warning(f"Malformed registry update: {data!r}")
            return
        if self._snapshot is None:
            logger.debug("Registry update before first snapshot, ignoring")
            return

        merged = []
        found = False
        for record in self._snapshot:
            if str(record.get("id")) == register_id:
                record = {**record, "active": active}
                record.pop("activo", None)
                found = True
            merged.append(record)
        if not found:
            logger.warning(f"Registry update for unknown register {register_id}")
            return

        self._snapshot = merged
        self.emit(RegistryChanged(list(merged)))

    def _fail_pending_snapshot(self, reason: str) -> None:
        if self._pending_snapshot is not None and not self._pending_snapshot.done():
            self._pending_snapshot.set_exception(TransportError(reason))

    # --- Backend operations ---

    async def _send(self, event: str, data: dict[str, Any]) -> None:
        if self._ws is None or self._ws.closed:
            raise TransportError("WebSocket not connected")
        try:
            await self._ws.send_json({"event": event, "data": data})
        except (aiohttp.ClientError, ConnectionResetError) as e:
            raise TransportError(f"Send of {event} failed: {e}") from e

    async def fetch_registry_config(self) -> list[dict[str, Any]]:
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._pending_snapshot = future
        try:
            await self._send("registry:request", {})
            return await asyncio.wait_for(future, timeout=self.config.request_timeout_s)
        except asyncio.TimeoutError as e:
            raise TransportError("Timed out waiting for registry snapshot") from e
        finally:
            if self._pending_snapshot is future:
                self._pending_snapshot = None

    async def report_readings(self, readings: list[ReadingRecord]) -> None:
        if not readings:
            return
        try:
            await self._send(
                "readings:report", {"readings": [wire.reading_to_wire(r) for r in readings]}
            )
        except TransportError as e:
            raise ReportingError(e.detail, "report_readings") from e

    async def report_test_outcome(self, test_id: str, outcome: ReadOutcome) -> None:
        try:
            await self._send(
                "modbus:test:response",
                {"testId": test_id, "result": wire.outcome_to_wire(outcome)},
            )
        except TransportError as e:
            raise ReportingError(e.detail, "report_test_outcome") from e

    async def send_heartbeat(self) -> None:
        await self._send("agent:ping", {"version": self.config.version})

    async def link_workspace(self, code: str) -> dict[str, Any] | None:
        # The answer arrives asynchronously as agent:linked
        await self._send("agent:link", {"code": code})
        return None

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._fail_pending_snapshot("transport closed")

        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._session is not None and self._owns_session:
            await self._session.close()

        self._connected = False
        self._finish_events()
        logger.info("WebSocket transport closed")
